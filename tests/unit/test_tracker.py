"""
Tests for the per-item deduplication state machine.
"""

import asyncio

import pytest

from slopedin.config import FeedConfig
from slopedin.feed import ItemTracker
from slopedin.protocols import Label, ProcessingState
from tests.helpers.fakes import FakeClassifier, FakeExtractor, FakeSource, RecordingRenderer


def make_tracker(texts, classifier=None, renderer=None, broken=(), config=None):
    source = FakeSource(texts.keys())
    extractor = FakeExtractor(texts, broken=broken)
    tracker = ItemTracker(
        source,
        extractor,
        classifier or FakeClassifier(),
        renderer or RecordingRenderer(),
        config or FeedConfig(min_text_length=50, eviction_scans=3),
    )
    return tracker, source, extractor


class TestScan:
    @pytest.mark.asyncio
    async def test_classifies_and_renders_long_post(self, long_post):
        renderer = RecordingRenderer()
        tracker, _, _ = make_tracker({"post-1": long_post}, renderer=renderer)

        assert tracker.scan() == 1
        await tracker.wait_idle()

        assert tracker.state_of("post-1") is ProcessingState.DONE
        assert tracker.get("post-1").result.label is Label.AI
        handle, result = renderer.rendered[0]
        assert handle == "post-1"
        assert result.score == pytest.approx(0.87)

    @pytest.mark.asyncio
    async def test_overlapping_scans_send_one_request(self, long_post):
        gate = asyncio.Event()
        classifier = FakeClassifier(gate=gate)
        renderer = RecordingRenderer()
        tracker, _, extractor = make_tracker({"post-1": long_post}, classifier=classifier, renderer=renderer)

        tracker.scan()
        tracker.scan()
        assert tracker.scan() == 0
        gate.set()
        await tracker.wait_idle()
        tracker.scan()

        assert classifier.texts == [long_post]
        assert extractor.calls == ["post-1"]
        assert len(renderer.rendered) == 1

    @pytest.mark.asyncio
    async def test_item_is_pending_before_request_completes(self, long_post):
        gate = asyncio.Event()
        tracker, _, _ = make_tracker({"post-1": long_post}, classifier=FakeClassifier(gate=gate))

        task = tracker.consider("post-1")

        assert task is not None
        assert tracker.state_of("post-1") is ProcessingState.PENDING
        assert tracker.consider("post-1") is None
        gate.set()
        await task
        assert tracker.state_of("post-1") is ProcessingState.DONE

    @pytest.mark.asyncio
    async def test_length_boundary(self):
        texts = {"short": "x" * 49, "exact": "y" * 50}
        classifier = FakeClassifier()
        tracker, _, _ = make_tracker(texts, classifier=classifier)

        assert tracker.scan() == 2
        await tracker.wait_idle()

        assert tracker.state_of("short") is ProcessingState.SKIPPED
        assert tracker.state_of("exact") is ProcessingState.DONE
        assert classifier.texts == ["y" * 50]

    @pytest.mark.asyncio
    async def test_extraction_error_settles_as_error(self, long_post):
        classifier = FakeClassifier()
        tracker, _, _ = make_tracker({"bad": long_post}, classifier=classifier, broken={"bad"})

        tracker.scan()

        assert tracker.state_of("bad") is ProcessingState.ERROR
        assert "extraction failed" in tracker.get("bad").error
        assert classifier.texts == []

    @pytest.mark.asyncio
    async def test_classification_failure_is_terminal(self, long_post):
        renderer = RecordingRenderer()
        classifier = FakeClassifier(fail_on={long_post})
        tracker, _, _ = make_tracker({"post-1": long_post}, classifier=classifier, renderer=renderer)

        tracker.scan()
        await tracker.wait_idle()
        tracker.scan()
        await tracker.wait_idle()

        assert tracker.state_of("post-1") is ProcessingState.ERROR
        assert tracker.get("post-1").error == "engine exploded"
        assert len(classifier.texts) == 1
        assert renderer.rendered == []

    @pytest.mark.asyncio
    async def test_renderer_failure_keeps_done(self, long_post):
        tracker, _, _ = make_tracker({"post-1": long_post}, renderer=RecordingRenderer(fail=True))

        tracker.scan()
        await tracker.wait_idle()

        assert tracker.state_of("post-1") is ProcessingState.DONE

    @pytest.mark.asyncio
    async def test_counts(self, long_post):
        tracker, _, _ = make_tracker({"a": long_post, "b": "tiny"})
        tracker.scan()
        await tracker.wait_idle()

        assert tracker.counts() == {"pending": 0, "done": 1, "skipped": 1, "error": 0}


class TestEnabled:
    @pytest.mark.asyncio
    async def test_disabled_tracker_refuses_items(self, long_post):
        classifier = FakeClassifier()
        tracker, _, _ = make_tracker({"post-1": long_post}, classifier=classifier)
        tracker.set_enabled(False)

        assert tracker.scan() == 0
        assert tracker.consider("post-1") is None
        assert tracker.state_of("post-1") is ProcessingState.UNSEEN
        assert classifier.texts == []

        tracker.set_enabled(True)
        assert tracker.scan() == 1
        await tracker.wait_idle()
        assert tracker.state_of("post-1") is ProcessingState.DONE

    @pytest.mark.asyncio
    async def test_disable_mid_flight_lets_request_finish(self, long_post):
        gate = asyncio.Event()
        tracker, source, _ = make_tracker({"a": long_post}, classifier=FakeClassifier(gate=gate))
        tracker.scan()

        tracker.set_enabled(False)
        source.handles.append("b")
        tracker.scan()
        gate.set()
        await tracker.wait_idle()

        assert tracker.state_of("a") is ProcessingState.DONE
        assert tracker.state_of("b") is ProcessingState.UNSEEN


class TestReconciliation:
    @pytest.mark.asyncio
    async def test_settled_item_evicted_after_missed_scans(self):
        tracker, source, _ = make_tracker({"gone": "short", "stays": "also short"})
        tracker.scan()
        source.handles.remove("gone")

        tracker.scan()
        tracker.scan()
        assert tracker.get("gone") is not None
        tracker.scan()

        assert tracker.get("gone") is None
        assert tracker.evicted == 1
        assert tracker.state_of("stays") is ProcessingState.SKIPPED

    @pytest.mark.asyncio
    async def test_reappearing_item_resets_counter(self):
        tracker, source, _ = make_tracker({"flaky": "short"})
        tracker.scan()
        source.handles.remove("flaky")
        tracker.scan()
        tracker.scan()
        source.handles.append("flaky")
        tracker.scan()

        assert tracker.get("flaky").missed_scans == 0
        assert tracker.state_of("flaky") is ProcessingState.SKIPPED

    @pytest.mark.asyncio
    async def test_item_back_after_eviction_is_considered_again(self, long_post):
        classifier = FakeClassifier()
        tracker, source, extractor = make_tracker({"post-1": long_post}, classifier=classifier)
        tracker.scan()
        await tracker.wait_idle()
        source.handles.remove("post-1")
        for _ in range(3):
            tracker.scan()
        assert tracker.get("post-1") is None

        source.handles.append("post-1")
        tracker.scan()
        await tracker.wait_idle()

        assert extractor.calls == ["post-1", "post-1"]
        assert classifier.texts == [long_post, long_post]
        assert tracker.state_of("post-1") is ProcessingState.DONE

    @pytest.mark.asyncio
    async def test_pending_item_is_never_evicted(self, long_post):
        gate = asyncio.Event()
        tracker, source, _ = make_tracker({"slow": long_post}, classifier=FakeClassifier(gate=gate))
        tracker.scan()
        source.handles.remove("slow")

        for _ in range(5):
            tracker.scan()

        assert tracker.state_of("slow") is ProcessingState.PENDING
        gate.set()
        await tracker.wait_idle()
