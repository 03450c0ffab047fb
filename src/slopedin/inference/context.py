"""
The inference context: an actor owning its own event loop thread.

Everything the discovery side knows about inference goes through ``post``,
which only accepts JSON-compatible envelopes addressed to this context. The
coordinator, the engine and the model weights never leave the context thread.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, Optional, Set

import structlog
from pydantic import ValidationError

from slopedin.config import InferenceConfig, RelayConfig
from slopedin.errors import ClassificationError, ContextUnavailable, TransportFailed
from slopedin.protocols import InferenceEngine
from slopedin.relay.channel import Channel, ContextChannel, Delivery
from slopedin.relay.messages import ClassifyResponse, ErrorResponse, parse_request

from .coordinator import InferenceCoordinator

logger = structlog.get_logger(__name__)


class InferenceContext:
    """Hosts an InferenceCoordinator on a private event loop thread."""

    def __init__(
        self,
        coordinator_factory: Callable[[], InferenceCoordinator],
        address: str = "inference",
        name: str = "slopedin-inference",
        preload: bool = True,
    ) -> None:
        self.address = address
        self.name = name
        self._coordinator_factory = coordinator_factory
        self._preload = preload
        self.coordinator: Optional[InferenceCoordinator] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._closed = False
        self._startup_error: Optional[BaseException] = None
        self._outstanding: Set[Delivery] = set()
        self._handlers: Set[asyncio.Task[None]] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._closed

    def start(self, timeout: Optional[float] = 30.0) -> None:
        """Start the context thread and wait until it accepts messages."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout):
            self.stop()
            raise ContextUnavailable(f"Inference context '{self.name}' did not start within {timeout}s")
        if self._startup_error is not None:
            self._closed = True
            raise ContextUnavailable(f"Inference context failed to start: {self._startup_error}") from self._startup_error

    def post(self, payload: Dict[str, Any], delivery: Delivery) -> bool:
        """Accept an envelope for this context; thread-safe."""
        if payload.get("target") != self.address:
            logger.debug("Ignoring message addressed elsewhere", target=payload.get("target"))
            return False

        with self._lock:
            if self._closed or self._loop is None:
                return False
            self._outstanding.add(delivery)
            self._loop.call_soon_threadsafe(self._dispatch, payload, delivery)
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Stop the loop; requests still outstanding fail with TransportFailed."""
        with self._lock:
            if self._closed and (self._thread is None or not self._thread.is_alive()):
                return
            self._closed = True
            loop = self._loop

        if loop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                pass
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._fail_outstanding()
        logger.info("Inference context stopped", name=self.name)

    # -- context thread -------------------------------------------------------

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            self.coordinator = self._coordinator_factory()
        except Exception as exc:
            logger.error("Could not build inference coordinator", error=str(exc))
            self._startup_error = exc
            self._ready.set()
            loop.close()
            return

        if self._preload:
            loop.call_soon(self.coordinator.preload)
        self._ready.set()
        logger.info("Inference context started", name=self.name, address=self.address)

        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(self._shutdown())
            loop.close()

    def _dispatch(self, payload: Dict[str, Any], delivery: Delivery) -> None:
        if self._closed:
            self._release(delivery)
            delivery.fail(TransportFailed("Inference context closed"))
            return
        task = asyncio.get_running_loop().create_task(self._handle(payload, delivery))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)

    async def _handle(self, payload: Dict[str, Any], delivery: Delivery) -> None:
        assert self.coordinator is not None
        correlation_id = str(payload.get("correlation_id") or "")
        reply: ClassifyResponse | ErrorResponse
        try:
            request = parse_request(payload)
            result = await self.coordinator.classify(request.text, request.correlation_id)
            reply = ClassifyResponse.from_result(request.correlation_id, result)
        except ValidationError as exc:
            reply = ErrorResponse.from_exception(correlation_id, TransportFailed(f"Malformed request: {exc}"))
        except ClassificationError as exc:
            reply = ErrorResponse.from_exception(correlation_id, exc)
        except Exception as exc:
            logger.exception("Unexpected error while classifying", correlation_id=correlation_id)
            reply = ErrorResponse.from_exception(correlation_id, exc)

        self._release(delivery)
        delivery.resolve(reply.model_dump())

    async def _shutdown(self) -> None:
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        if handlers:
            await asyncio.gather(*handlers, return_exceptions=True)
        if self.coordinator is not None:
            await self.coordinator.close()
        self._fail_outstanding()

    def _release(self, delivery: Delivery) -> None:
        with self._lock:
            self._outstanding.discard(delivery)

    def _fail_outstanding(self) -> None:
        with self._lock:
            outstanding, self._outstanding = self._outstanding, set()
        for delivery in outstanding:
            delivery.fail(TransportFailed("Inference context closed before replying"))


class ThreadContextFactory:
    """Creates an InferenceContext thread for the relay."""

    def __init__(
        self,
        engine_factory: Callable[[], InferenceEngine],
        inference: Optional[InferenceConfig] = None,
        relay: Optional[RelayConfig] = None,
    ) -> None:
        self._engine_factory = engine_factory
        self.inference = inference or InferenceConfig()
        self.relay = relay or RelayConfig()
        self.contexts: list[InferenceContext] = []

    def _build_coordinator(self) -> InferenceCoordinator:
        return InferenceCoordinator(self._engine_factory(), self.inference)

    async def create(self) -> Channel:
        context = InferenceContext(
            self._build_coordinator,
            address=self.relay.target,
            name=self.relay.context_name,
            preload=self.inference.preload,
        )
        starting = asyncio.ensure_future(asyncio.to_thread(context.start))
        try:
            await asyncio.shield(starting)
        except asyncio.CancelledError:
            # start() runs to completion in its worker thread; stop what it started.
            await asyncio.gather(starting, return_exceptions=True)
            await asyncio.to_thread(context.stop)
            logger.info("Inference context creation cancelled", name=context.name)
            raise
        self.contexts.append(context)
        return ContextChannel(context)
