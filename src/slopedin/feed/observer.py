"""
Debounced bridge from mutation notifications to tracker scans.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Sequence

import structlog

from slopedin.protocols import Mutation, MutationSource, Unsubscribe

logger = structlog.get_logger(__name__)


class FeedObserver:
    """
    Turns bursts of structural changes into single scan calls.

    A batch that adds at least one item (re)arms a timer of
    ``debounce_seconds``; the scan runs once the source has been quiet that
    long. Batches that only remove items are ignored. The source may notify
    from any thread.
    """

    def __init__(
        self,
        source: MutationSource,
        on_scan: Callable[[], Any],
        debounce_seconds: float = 0.3,
    ) -> None:
        self.source = source
        self.on_scan = on_scan
        self.debounce_seconds = debounce_seconds

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._paused = False
        self.scans_triggered = 0
        self.batches_received = 0

    @property
    def running(self) -> bool:
        return self._unsubscribe is not None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def scan_scheduled(self) -> bool:
        return self._timer is not None

    def start(self, initial_scan: bool = True) -> None:
        """Subscribe to the source and, unless paused, scan what is already there."""
        if self._unsubscribe is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._unsubscribe = self.source.subscribe(self._on_mutations)
        logger.info("Feed observer started", debounce_seconds=self.debounce_seconds)
        if initial_scan and not self._paused:
            self._run_scan()

    def stop(self) -> None:
        self._cancel_timer()
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        if unsubscribe is not None:
            unsubscribe()
            logger.info("Feed observer stopped", scans_triggered=self.scans_triggered)

    def pause(self) -> None:
        self._paused = True
        self._cancel_timer()

    def resume(self) -> None:
        self._paused = False

    def _on_mutations(self, batch: Sequence[Mutation]) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        mutations = list(batch)
        try:
            loop.call_soon_threadsafe(self._handle_batch, mutations)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _handle_batch(self, batch: Sequence[Mutation]) -> None:
        if self._unsubscribe is None or self._paused:
            return
        self.batches_received += 1
        if not any(mutation.added for mutation in batch):
            return
        self._cancel_timer()
        assert self._loop is not None
        self._timer = self._loop.call_later(self.debounce_seconds, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._paused or self._unsubscribe is None:
            return
        self._run_scan()

    def _run_scan(self) -> None:
        self.scans_triggered += 1
        try:
            self.on_scan()
        except Exception:
            logger.exception("Scan failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
