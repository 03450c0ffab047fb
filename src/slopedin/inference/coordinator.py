"""
Single-flight engine loading and request dispatch for the inference context.

ModelLoader owns the lazily-initialized engine handle and guarantees that at
most one initialization runs at a time. Callers that arrive while a load is in
flight wait on their own future, which is resolved directly when the loader
changes state.

InferenceCoordinator accepts classify calls in any loader state. Calls made
before the engine is ready are held in an ordered pending queue that is drained
(or failed out) at the moment the load settles.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Callable, Deque, List, Mapping, Optional, Sequence, Set
from uuid import uuid4

import structlog

from slopedin.config import InferenceConfig
from slopedin.errors import ClassificationError, InferenceFailed, ModelLoadFailed
from slopedin.observability import gauge, increment
from slopedin.protocols import (
    ClassificationResult,
    EngineHandle,
    InferenceEngine,
    LoaderState,
    PendingRequest,
    RankedLabel,
)

logger = structlog.get_logger(__name__)

SettledCallback = Callable[[Optional[EngineHandle], Optional[BaseException]], None]


def _model_load_failed(cause: BaseException) -> ModelLoadFailed:
    error = ModelLoadFailed(f"Model failed to load: {cause}")
    error.__cause__ = cause
    return error


class ModelLoader:
    """
    Lazily initializes an inference engine, one attempt at a time.

    State machine: UNLOADED -> LOADING -> READY | FAILED, and FAILED -> LOADING
    when a later caller asks again. A failed attempt is never retried on its
    own.
    """

    def __init__(self, engine: InferenceEngine) -> None:
        self._engine = engine
        self._state = LoaderState.UNLOADED
        self._handle: Optional[EngineHandle] = None
        self._waiters: List[asyncio.Future[EngineHandle]] = []
        self._listeners: List[SettledCallback] = []
        self._load_task: Optional[asyncio.Task[None]] = None
        self.load_attempts = 0
        self.last_error: Optional[BaseException] = None
        self._publish_state()

    @property
    def state(self) -> LoaderState:
        return self._state

    @property
    def handle(self) -> Optional[EngineHandle]:
        return self._handle

    def add_listener(self, callback: SettledCallback) -> None:
        """Call ``callback(handle, error)`` synchronously whenever a load settles."""
        self._listeners.append(callback)

    def begin(self) -> None:
        """Start a load unless one is running or the engine is already ready."""
        if self._state in (LoaderState.LOADING, LoaderState.READY):
            return
        self._set_state(LoaderState.LOADING)
        self.load_attempts += 1
        self._load_task = asyncio.get_running_loop().create_task(self._load(), name="slopedin-model-load")

    async def ensure_ready(self) -> EngineHandle:
        """Return the engine handle, loading it first if needed."""
        if self._state is LoaderState.READY and self._handle is not None:
            return self._handle

        waiter: asyncio.Future[EngineHandle] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self.begin()
        return await waiter

    async def close(self) -> None:
        """Abort an in-flight load; its waiters are failed out."""
        task = self._load_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _load(self) -> None:
        started = time.perf_counter()
        logger.info("Loading inference engine", attempt=self.load_attempts)
        try:
            handle = await self._engine.initialize()
        except asyncio.CancelledError as exc:
            self._fail(exc)
            raise
        except Exception as exc:
            self._fail(exc)
            return

        self._handle = handle
        self.last_error = None
        self._set_state(LoaderState.READY)
        increment("model_loads", labels={"outcome": "success"})
        logger.info("Inference engine ready", duration=round(time.perf_counter() - started, 3))

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(handle)
        self._notify(handle, None)

    def _fail(self, cause: BaseException) -> None:
        self.last_error = cause
        self._set_state(LoaderState.FAILED)
        increment("model_loads", labels={"outcome": "failure"})
        logger.error("Inference engine failed to load", error=str(cause) or type(cause).__name__)

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(_model_load_failed(cause))
        self._notify(None, cause)

    def _notify(self, handle: Optional[EngineHandle], error: Optional[BaseException]) -> None:
        for callback in list(self._listeners):
            callback(handle, error)

    def _set_state(self, state: LoaderState) -> None:
        self._state = state
        self._publish_state()

    def _publish_state(self) -> None:
        for candidate in LoaderState:
            gauge("model_state", 1.0 if candidate is self._state else 0.0, labels={"state": candidate.value})


def _coerce_ranking(raw: Sequence[Any]) -> List[RankedLabel]:
    ranking: List[RankedLabel] = []
    for entry in raw:
        if isinstance(entry, RankedLabel):
            ranking.append(entry)
        elif isinstance(entry, Mapping):
            ranking.append(RankedLabel(label=str(entry["label"]), score=float(entry["score"])))
        else:
            raise TypeError(f"Unexpected ranking entry: {entry!r}")
    return ranking


class InferenceCoordinator:
    """
    Dispatches classify calls against the single engine of this context.
    """

    def __init__(self, engine: InferenceEngine, config: Optional[InferenceConfig] = None) -> None:
        self.config = config or InferenceConfig()
        self.loader = ModelLoader(engine)
        self.loader.add_listener(self._on_loader_settled)
        self._pending: Deque[PendingRequest] = deque()
        self._in_flight: Set[asyncio.Task[None]] = set()

    @property
    def state(self) -> LoaderState:
        return self.loader.state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def preload(self) -> None:
        """Kick off the model load without waiting for it."""
        self.loader.begin()

    async def ensure_ready(self) -> EngineHandle:
        return await self.loader.ensure_ready()

    async def classify(self, text: str, correlation_id: Optional[str] = None) -> ClassificationResult:
        """
        Classify ``text``, queueing the call until the engine is ready.

        Raises:
            ModelLoadFailed: the load this call waited on failed.
            InferenceFailed: the engine raised while classifying.
        """
        correlation_id = correlation_id or uuid4().hex
        handle = self.loader.handle
        if self.loader.state is LoaderState.READY and handle is not None:
            return await self._run(correlation_id, text, handle)

        future: asyncio.Future[ClassificationResult] = asyncio.get_running_loop().create_future()
        self._pending.append(PendingRequest(correlation_id=correlation_id, text=text, future=future))
        gauge("pending_queue_depth", len(self._pending))
        logger.debug("Queued request until engine is ready", correlation_id=correlation_id, queued=len(self._pending))
        self.loader.begin()
        return await future

    async def close(self) -> None:
        await self.loader.close()
        tasks = list(self._in_flight)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_loader_settled(self, handle: Optional[EngineHandle], error: Optional[BaseException]) -> None:
        queued = list(self._pending)
        self._pending.clear()
        gauge("pending_queue_depth", 0)
        if not queued:
            return

        if handle is None:
            cause = error or RuntimeError("engine unavailable")
            for request in queued:
                if not request.future.done():
                    request.future.set_exception(_model_load_failed(cause))
            logger.warning("Rejected queued requests after failed load", count=len(queued))
            return

        logger.info("Draining queued requests", count=len(queued))
        loop = asyncio.get_running_loop()
        for request in queued:
            if request.future.done():
                continue
            task = loop.create_task(self._complete(request, handle))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _complete(self, request: PendingRequest, handle: EngineHandle) -> None:
        try:
            result = await self._run(request.correlation_id, request.text, handle)
        except ClassificationError as exc:
            if not request.future.done():
                request.future.set_exception(exc)
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        else:
            if not request.future.done():
                request.future.set_result(result)

    async def _run(self, correlation_id: str, text: str, handle: EngineHandle) -> ClassificationResult:
        truncated = text[: self.config.max_text_length]
        try:
            raw = await handle.run(truncated, top_k=self.config.top_k)
            ranking = _coerce_ranking(raw)
            result = ClassificationResult.from_ranking(
                ranking, fake_label=self.config.fake_label, threshold=self.config.ai_threshold
            )
        except Exception as exc:
            logger.warning("Inference failed", correlation_id=correlation_id, error=str(exc))
            raise InferenceFailed(f"Inference failed: {exc}") from exc

        if not any(entry.label.lower() == self.config.fake_label.lower() for entry in ranking):
            logger.debug("Ranking has no synthetic label, defaulting score to 0", correlation_id=correlation_id)

        logger.debug(
            "Classified text",
            correlation_id=correlation_id,
            label=result.label.value,
            score=round(result.score, 4),
            chars=len(truncated),
        )
        return result
