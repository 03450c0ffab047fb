"""
Per-item deduplication state machine.

Every handle the source reports moves ``UNSEEN -> PENDING`` at most once and
then settles in exactly one terminal state. Overlapping scans, mutation
bursts and re-renders therefore never produce a second request or a second
badge for the same item.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Dict, Hashable, Optional, Protocol, Set

import structlog

from slopedin.config import FeedConfig
from slopedin.errors import ClassificationError
from slopedin.observability import increment
from slopedin.protocols import (
    BadgeRenderer,
    ClassificationResult,
    MutationSource,
    ProcessingState,
    TextExtractor,
    TrackedItem,
)

logger = structlog.get_logger(__name__)


class Classifier(Protocol):
    """Anything that turns text into a verdict; the relay in production."""

    def send(self, text: str) -> Awaitable[ClassificationResult]: ...


class ItemTracker:
    """Decides which discovered items get classified, and records the outcome."""

    def __init__(
        self,
        source: MutationSource,
        extractor: TextExtractor,
        classifier: Classifier,
        renderer: BadgeRenderer,
        config: Optional[FeedConfig] = None,
    ) -> None:
        self.source = source
        self.extractor = extractor
        self.classifier = classifier
        self.renderer = renderer
        self.config = config or FeedConfig()

        self._items: Dict[Hashable, TrackedItem] = {}
        self._tasks: Set[asyncio.Task[None]] = set()
        self._enabled = True
        self.scans = 0
        self.evicted = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        """Disabling stops new work; classifications already running complete."""
        self._enabled = bool(enabled)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def scan(self) -> int:
        """
        Walk the source's live items and consider every one not seen before.

        Returns the number of items that left ``UNSEEN`` during this scan,
        whether they were dispatched for classification or settled directly.
        """
        if not self._enabled:
            return 0

        self.scans += 1
        increment("scans")
        live = list(self.source.items())
        moved = 0
        for handle in live:
            item = self._items.get(handle)
            if item is not None:
                item.missed_scans = 0
                continue
            self.consider(handle)
            if self.state_of(handle) is not ProcessingState.UNSEEN:
                moved += 1

        self._reconcile(set(live))
        if moved:
            logger.debug("Scan considered new items", new_items=moved, tracked=len(self._items))
        return moved

    def consider(self, handle: Hashable) -> Optional[asyncio.Task[None]]:
        """
        Move one item out of ``UNSEEN``.

        Returns the classification task when a request was dispatched, and
        None when the item was refused, already known, or settled at once.
        """
        if not self._enabled:
            return None
        if handle in self._items and self._items[handle].state is not ProcessingState.UNSEEN:
            return None

        # Marked before extraction so a re-entrant scan cannot dispatch twice.
        item = self._items.setdefault(handle, TrackedItem(handle=handle))
        self._transition(item, ProcessingState.PENDING)
        increment("items_discovered")

        try:
            text = self.extractor.extract(handle)
        except Exception as exc:
            item.error = f"extraction failed: {exc}"
            self._transition(item, ProcessingState.ERROR)
            logger.warning("Text extraction failed", handle=str(handle), error=str(exc))
            return None

        text = text or ""
        if len(text) < self.config.min_text_length:
            self._transition(item, ProcessingState.SKIPPED)
            logger.debug("Item too short to classify", handle=str(handle), length=len(text))
            return None

        item.text = text
        task = asyncio.get_running_loop().create_task(self._classify(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _classify(self, item: TrackedItem) -> None:
        assert item.text is not None
        try:
            result = await self.classifier.send(item.text)
        except ClassificationError as exc:
            item.error = str(exc)
            self._transition(item, ProcessingState.ERROR)
            logger.warning("Classification failed", handle=str(item.handle), kind=exc.kind, error=str(exc))
            return
        except asyncio.CancelledError:
            item.error = "cancelled"
            self._transition(item, ProcessingState.ERROR)
            raise
        except Exception as exc:
            item.error = str(exc)
            self._transition(item, ProcessingState.ERROR)
            logger.exception("Unexpected classification error", handle=str(item.handle))
            return

        item.result = result
        self._transition(item, ProcessingState.DONE)
        logger.info(
            "Item classified",
            handle=str(item.handle),
            label=result.label.value,
            score=round(result.score, 4),
        )

        try:
            self.renderer.render(item.handle, result)
        except Exception as exc:
            logger.error("Badge rendering failed", handle=str(item.handle), error=str(exc))

    def _transition(self, item: TrackedItem, state: ProcessingState) -> None:
        if item.state.is_terminal:
            raise RuntimeError(f"{item.handle!r} is already settled as {item.state.value}")
        item.state = state
        increment("item_transitions", labels={"state": state.value})

    def _reconcile(self, live: Set[Hashable]) -> None:
        """
        Forget settled items that have been missing for several scans.

        A handle that shows up again after eviction is a new item and is
        considered from scratch.
        """
        stale = []
        for handle, item in self._items.items():
            if handle in live:
                continue
            item.missed_scans += 1
            if item.state.is_terminal and item.missed_scans >= self.config.eviction_scans:
                stale.append(handle)
        for handle in stale:
            del self._items[handle]
        if stale:
            self.evicted += len(stale)
            increment("items_evicted", len(stale))
            logger.debug("Evicted settled items", count=len(stale))

    async def wait_idle(self) -> None:
        """Wait until every dispatched classification has settled."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_idle()

    def state_of(self, handle: Hashable) -> ProcessingState:
        item = self._items.get(handle)
        return item.state if item is not None else ProcessingState.UNSEEN

    def get(self, handle: Hashable) -> Optional[TrackedItem]:
        return self._items.get(handle)

    def counts(self) -> Dict[str, int]:
        totals = {state.value: 0 for state in ProcessingState if state is not ProcessingState.UNSEEN}
        for item in self._items.values():
            totals[item.state.value] += 1
        return totals
