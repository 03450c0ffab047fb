"""
Typed request/response channel between two execution contexts.

A context is anything that owns its own event loop and can only be reached by
posting a JSON-compatible dictionary to it. The channel turns that one-way post
into an awaitable request whose reply is delivered back onto the caller's
loop exactly once.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, Protocol, Union, runtime_checkable

import structlog
from pydantic import ValidationError

from slopedin.errors import TransportFailed

from .messages import ClassifyRequest, ClassifyResponse, ErrorResponse, parse_response

logger = structlog.get_logger(__name__)

Response = Union[ClassifyResponse, ErrorResponse]


class Delivery:
    """
    One-shot reply slot bound to the requesting event loop.

    ``resolve`` and ``fail`` may be called from any thread; only the first call
    has an effect.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, future: asyncio.Future[Dict[str, Any]]) -> None:
        self._loop = loop
        self._future = future
        self._lock = threading.Lock()
        self._settled = False

    @property
    def settled(self) -> bool:
        return self._settled

    def resolve(self, payload: Dict[str, Any]) -> bool:
        return self._settle(lambda: self._future.set_result(payload))

    def fail(self, exc: BaseException) -> bool:
        return self._settle(lambda: self._future.set_exception(exc))

    def _settle(self, apply: Callable[[], None]) -> bool:
        with self._lock:
            if self._settled:
                logger.warning("Dropped duplicate reply")
                return False
            self._settled = True

        def _apply() -> None:
            if not self._future.done():
                apply()

        try:
            self._loop.call_soon_threadsafe(_apply)
        except RuntimeError:
            # The requesting loop is gone; nobody is left to receive the reply.
            return False
        return True


@runtime_checkable
class Endpoint(Protocol):
    """The receiving side of a context: accepts posted envelopes."""

    @property
    def closed(self) -> bool: ...

    def post(self, payload: Dict[str, Any], delivery: Delivery) -> bool:
        """Queue ``payload`` for handling; False when nobody will answer it."""
        ...

    def stop(self) -> None: ...


@runtime_checkable
class Channel(Protocol):
    @property
    def closed(self) -> bool: ...

    async def request(self, message: ClassifyRequest) -> Response: ...

    async def close(self) -> None: ...


class ContextChannel:
    """Channel to an Endpoint living in another context."""

    def __init__(self, endpoint: Endpoint, owns_endpoint: bool = True) -> None:
        self._endpoint = endpoint
        self._owns_endpoint = owns_endpoint
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._endpoint.closed

    async def request(self, message: ClassifyRequest) -> Response:
        """Send ``message`` and wait for its single reply."""
        if self.closed:
            raise TransportFailed("Channel to inference context is closed")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Dict[str, Any]] = loop.create_future()
        delivery = Delivery(loop, future)

        try:
            accepted = self._endpoint.post(message.model_dump(), delivery)
        except Exception as exc:
            raise TransportFailed(f"Could not deliver request: {exc}") from exc
        if not accepted:
            raise TransportFailed(f"No receiver accepted message for target '{message.target}'")

        payload = await future
        try:
            response = parse_response(payload)
        except ValidationError as exc:
            raise TransportFailed(f"Malformed response from inference context: {exc}") from exc

        if response.correlation_id != message.correlation_id:
            raise TransportFailed(
                f"Response correlation id {response.correlation_id!r} does not match {message.correlation_id!r}"
            )
        return response

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_endpoint:
            await asyncio.to_thread(self._endpoint.stop)


class ContextFactory(Protocol):
    """Creates (and starts) the inference context, returning a channel to it."""

    async def create(self) -> Channel: ...


__all__ = ["Channel", "ContextChannel", "ContextFactory", "Delivery", "Endpoint", "Response"]
