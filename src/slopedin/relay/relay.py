"""
Discovery-side relay into the inference context.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from structlog.contextvars import bound_contextvars

from slopedin.config import RelayConfig
from slopedin.errors import ClassificationError, ContextUnavailable, TransportFailed
from slopedin.observability import histogram, increment
from slopedin.protocols import ClassificationResult

from .channel import Channel, ContextFactory
from .messages import ClassifyRequest, ErrorResponse

logger = structlog.get_logger(__name__)


class Relay:
    """
    Moves classification requests into the inference context and returns
    exactly one typed result or error per request.

    The inference context is created lazily on the first request. Creation is
    single-flight: concurrent callers await the same in-flight creation.
    """

    def __init__(self, factory: ContextFactory, config: Optional[RelayConfig] = None) -> None:
        self._factory = factory
        self.config = config or RelayConfig()
        self._channel: Optional[Channel] = None
        self._creating: Optional[asyncio.Task[Channel]] = None
        self.contexts_created = 0

    @property
    def context_alive(self) -> bool:
        return self._channel is not None and not self._channel.closed

    async def ensure_context(self) -> Channel:
        """Return a live channel, creating the inference context if needed."""
        if self._channel is not None and not self._channel.closed:
            return self._channel

        if self._creating is None:
            self._creating = asyncio.get_running_loop().create_task(self._create_context())
        return await asyncio.shield(self._creating)

    async def _create_context(self) -> Channel:
        try:
            channel = await self._factory.create()
        except Exception as exc:
            logger.error("Could not create inference context", error=str(exc))
            raise ContextUnavailable(f"Inference context unavailable: {exc}") from exc
        finally:
            self._creating = None

        self._channel = channel
        self.contexts_created += 1
        logger.info("Inference context ready", target=self.config.target, created=self.contexts_created)
        return channel

    async def send(self, text: str) -> ClassificationResult:
        """
        Classify ``text`` in the inference context.

        Raises:
            ClassificationError: any failure, whatever its origin.
        """
        request = ClassifyRequest(target=self.config.target, correlation_id=uuid4().hex, text=text)
        started = time.perf_counter()

        with bound_contextvars(correlation_id=request.correlation_id):
            try:
                channel = await self.ensure_context()
                response = await channel.request(request)
                if isinstance(response, ErrorResponse):
                    raise response.to_exception()
                result = response.to_result()
            except ClassificationError as exc:
                increment("classifications", labels={"outcome": exc.kind})
                logger.debug("Classification request failed", kind=exc.kind, error=str(exc))
                raise
            except Exception as exc:
                increment("classifications", labels={"outcome": TransportFailed.kind})
                raise TransportFailed(f"Relay failure: {exc}") from exc

            increment("classifications", labels={"outcome": "success"})
            histogram("classification_latency_seconds", time.perf_counter() - started)
            return result

    # Name used by the discovery side of the original extension.
    classify_text = send

    async def close(self) -> None:
        creating = self._creating
        if creating is not None and not creating.done():
            creating.cancel()
            await asyncio.gather(creating, return_exceptions=True)
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "target": self.config.target,
            "context_alive": self.context_alive,
            "contexts_created": self.contexts_created,
        }
