"""
In-memory stand-ins for the collaborators at the edges of the pipeline.
"""

import asyncio
import threading
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence

from slopedin.errors import InferenceFailed, TransportFailed
from slopedin.protocols import ClassificationResult, Mutation, RankedLabel


def ai_ranking(score: float = 0.87) -> List[RankedLabel]:
    ranking = [RankedLabel("Fake", score), RankedLabel("Real", round(1.0 - score, 6))]
    return sorted(ranking, key=lambda entry: entry.score, reverse=True)


def score_by_length(text: str) -> float:
    """A text-dependent score, so each reply can be matched to its request."""
    return len(text) % 100 / 100


class FakeHandle:
    def __init__(
        self,
        ranking: Sequence[RankedLabel],
        error: Optional[Exception] = None,
        scorer: Optional[Callable[[str], float]] = None,
    ) -> None:
        self.ranking = list(ranking)
        self.error = error
        self.scorer = scorer
        self.texts: List[str] = []

    async def run(self, text: str, top_k: int = 2) -> List[RankedLabel]:
        self.texts.append(text)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.scorer is not None:
            return ai_ranking(self.scorer(text))[:top_k]
        return self.ranking[:top_k]


class FakeEngine:
    """
    Engine whose initialization can be held open, made to fail, or slowed.

    ``gate`` must belong to the loop the engine runs on; leave it unset when
    the engine lives in an inference context thread.
    """

    def __init__(
        self,
        ranking: Optional[Sequence[RankedLabel]] = None,
        fail_times: int = 0,
        delay: float = 0.0,
        run_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        scorer: Optional[Callable[[str], float]] = None,
    ) -> None:
        self.ranking = list(ranking) if ranking is not None else ai_ranking()
        self.scorer = scorer
        self.fail_times = fail_times
        self.delay = delay
        self.run_error = run_error
        self.gate = gate
        self.init_calls = 0
        self.handle: Optional[FakeHandle] = None
        self._lock = threading.Lock()

    async def initialize(self) -> FakeHandle:
        with self._lock:
            self.init_calls += 1
            attempt = self.init_calls
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if attempt <= self.fail_times:
            raise RuntimeError(f"weights download failed (attempt {attempt})")
        self.handle = FakeHandle(self.ranking, self.run_error, self.scorer)
        return self.handle


class FakeSource:
    """In-memory MutationSource."""

    def __init__(self, handles: Iterable[Hashable] = ()) -> None:
        self.handles: List[Hashable] = list(handles)
        self.callbacks: List[Any] = []

    def items(self) -> Iterable[Hashable]:
        return list(self.handles)

    def subscribe(self, callback):
        self.callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self.callbacks:
                self.callbacks.remove(callback)

        return unsubscribe

    def emit(self, batch: Sequence[Mutation]) -> None:
        for callback in list(self.callbacks):
            callback(batch)

    def add(self, *handles: Hashable) -> None:
        self.handles.extend(handles)
        self.emit([Mutation(added=tuple(handles))])

    def remove(self, *handles: Hashable) -> None:
        for handle in handles:
            self.handles.remove(handle)
        self.emit([Mutation(removed=tuple(handles))])


class FakeExtractor:
    def __init__(self, texts: Optional[Dict[Hashable, str]] = None, broken: Iterable[Hashable] = ()) -> None:
        self.texts: Dict[Hashable, str] = dict(texts or {})
        self.broken = set(broken)
        self.calls: List[Hashable] = []

    def extract(self, handle: Hashable) -> str:
        self.calls.append(handle)
        if handle in self.broken:
            raise OSError(f"cannot read {handle}")
        return self.texts.get(handle, "")


class RecordingRenderer:
    def __init__(self, fail: bool = False) -> None:
        self.rendered: List[tuple] = []
        self.fail = fail

    def render(self, handle: Hashable, result: ClassificationResult) -> None:
        if self.fail:
            raise RuntimeError("badge slot vanished")
        self.rendered.append((handle, result))


class FakeClassifier:
    """Stands in for the relay on the discovery side."""

    def __init__(self, score: float = 0.87, fail_on: Iterable[str] = (), gate: Optional[asyncio.Event] = None) -> None:
        self.score = score
        self.fail_on = set(fail_on)
        self.gate = gate
        self.texts: List[str] = []

    async def send(self, text: str) -> ClassificationResult:
        self.texts.append(text)
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        if text in self.fail_on:
            raise InferenceFailed("engine exploded")
        return ClassificationResult.from_ranking(ai_ranking(self.score), fake_label="fake")


class MemoryPreferenceStore:
    def __init__(self, **values: Any) -> None:
        self.values: Dict[str, Any] = dict(values)
        self.listeners: List[Any] = []

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        changed = self.values.get(key) != value
        self.values[key] = value
        if changed:
            for listener in list(self.listeners):
                listener(key, value)

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener) if listener in self.listeners else None



class FakeChannel:
    """Channel answering in-process through ``respond(request)``."""

    def __init__(self, respond) -> None:
        self.respond = respond
        self.closed = False
        self.requests: List[Any] = []

    async def request(self, message):
        if self.closed:
            raise TransportFailed("closed")
        self.requests.append(message)
        await asyncio.sleep(0)
        return self.respond(message)

    async def close(self) -> None:
        self.closed = True


class FakeContextFactory:
    def __init__(self, respond, fail_times: int = 0, gate: Optional[asyncio.Event] = None) -> None:
        self.respond = respond
        self.fail_times = fail_times
        self.gate = gate
        self.create_calls = 0
        self.channels: List[FakeChannel] = []

    async def create(self) -> FakeChannel:
        self.create_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.create_calls <= self.fail_times:
            raise RuntimeError("offscreen document could not be created")
        channel = FakeChannel(self.respond)
        self.channels.append(channel)
        return channel


class ReplyingEndpoint:
    """Endpoint that answers synchronously, or never when ``reply`` returns None."""

    def __init__(self, reply, address: str = "inference") -> None:
        self.reply = reply
        self.address = address
        self.closed = False
        self.stopped = False
        self.deliveries: List[Any] = []

    def post(self, payload: Dict[str, Any], delivery) -> bool:
        if payload.get("target") != self.address or self.closed:
            return False
        self.deliveries.append(delivery)
        answer = self.reply(payload)
        if answer is not None:
            delivery.resolve(answer)
        return True

    def stop(self) -> None:
        self.stopped = True
        self.closed = True
