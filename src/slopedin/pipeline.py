"""
Pipeline orchestration for SlopedIn.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog

from slopedin.config import Config
from slopedin.feed.observer import FeedObserver
from slopedin.feed.tracker import Classifier, ItemTracker
from slopedin.preferences import ENABLED_KEY
from slopedin.protocols import BadgeRenderer, MutationSource, PreferenceStore, TextExtractor, Unsubscribe


class DetectionPipeline:
    """
    Wires a feed to the classifier: observer -> tracker -> relay -> renderer.

    The ``enabled`` preference is read at start and followed afterwards.
    Disabling pauses the observer and makes the tracker refuse new items;
    classifications already in flight still complete. Re-enabling resumes the
    observer and scans at once.
    """

    def __init__(
        self,
        source: MutationSource,
        extractor: TextExtractor,
        classifier: Classifier,
        renderer: BadgeRenderer,
        preferences: PreferenceStore,
        config: Optional[Config] = None,
        warm_up: bool = False,
    ) -> None:
        self.config = config or Config()
        self.source = source
        self.classifier = classifier
        self.preferences = preferences
        self.warm_up = warm_up
        self.logger = structlog.get_logger(self.__class__.__name__)

        self.tracker = ItemTracker(source, extractor, classifier, renderer, self.config.feed)
        self.observer = FeedObserver(source, self.tracker.scan, self.config.feed.debounce_seconds)

        self.pipeline_id = str(uuid4())
        self.is_running = False
        self.started_at: Optional[float] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._unsubscribe_preferences: Optional[Unsubscribe] = None
        self._warm_up_task: Optional[asyncio.Task[None]] = None

    @property
    def enabled(self) -> bool:
        return self.tracker.enabled

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()

        enabled = bool(self.preferences.get(ENABLED_KEY, self.config.preferences.default_enabled))
        self.tracker.set_enabled(enabled)
        if not enabled:
            self.observer.pause()
        self._unsubscribe_preferences = self.preferences.subscribe(self._on_preference)

        if self.warm_up:
            self._warm_up_task = self._loop.create_task(self._warm_up())

        self.observer.start(initial_scan=enabled)
        self.is_running = True
        self.started_at = time.time()
        self.logger.info("Detection pipeline started", pipeline_id=self.pipeline_id, enabled=enabled)

    async def _warm_up(self) -> None:
        ensure_context = getattr(self.classifier, "ensure_context", None)
        if ensure_context is None:
            return
        try:
            await ensure_context()
        except Exception as exc:
            # The next classification retries the context creation.
            self.logger.warning("Inference context warm-up failed", error=str(exc))

    def _on_preference(self, key: str, value: Any) -> None:
        if key != ENABLED_KEY or self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self.set_enabled, bool(value))
        except RuntimeError:
            pass

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self.tracker.enabled:
            return
        self.tracker.set_enabled(enabled)
        if enabled:
            self.observer.resume()
            dispatched = self.tracker.scan() if self.is_running else 0
            self.logger.info("Detection enabled", pipeline_id=self.pipeline_id, dispatched=dispatched)
        else:
            self.observer.pause()
            self.logger.info("Detection paused", pipeline_id=self.pipeline_id, in_flight=self.tracker.in_flight)

    async def stop(self, drain: bool = True) -> None:
        """Stop observing; by default wait for in-flight classifications."""
        if not self.is_running:
            return
        self.is_running = False
        if self._unsubscribe_preferences is not None:
            self._unsubscribe_preferences()
            self._unsubscribe_preferences = None
        self.observer.stop()

        if self._warm_up_task is not None and not self._warm_up_task.done():
            self._warm_up_task.cancel()
            await asyncio.gather(self._warm_up_task, return_exceptions=True)

        if drain:
            await self.tracker.wait_idle()
        else:
            await self.tracker.close()
        self.logger.info("Detection pipeline stopped", pipeline_id=self.pipeline_id, **self.tracker.counts())

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "pipeline_id": self.pipeline_id,
            "is_running": self.is_running,
            "enabled": self.enabled,
            "uptime_seconds": time.time() - self.started_at if self.started_at else 0.0,
            "items": self.tracker.counts(),
            "in_flight": self.tracker.in_flight,
            "scans": self.tracker.scans,
            "evicted": self.tracker.evicted,
            "observer_scans": self.observer.scans_triggered,
        }
        health = getattr(self.classifier, "get_health_status", None)
        if callable(health):
            stats["relay"] = health()
        return stats
