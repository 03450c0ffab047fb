"""
Dependency container wiring configuration, preferences and the relay.
"""

from __future__ import annotations

import asyncio
import inspect
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Dict, Generic, List, Optional, TypeVar
from uuid import uuid4

import structlog

from slopedin.config import Config, load_config
from slopedin.protocols import BadgeRenderer, InferenceEngine, MutationSource, TextExtractor

if TYPE_CHECKING:
    from slopedin.observability import MetricsManager
    from slopedin.pipeline import DetectionPipeline
    from slopedin.preferences import JsonPreferenceStore
    from slopedin.relay import Relay

T = TypeVar("T")


class LazyInstance(Generic[T]):
    """Lazily built instance with lifecycle management."""

    def __init__(self, factory: Callable[..., T], *args: Any, **kwargs: Any) -> None:
        self._factory = factory
        self._args = args
        self._kwargs = kwargs
        self._instance: Optional[T] = None

    @property
    def created(self) -> bool:
        return self._instance is not None

    async def get(self) -> T:
        if self._instance is None:
            instance = self._factory(*self._args, **self._kwargs)
            initialize = getattr(instance, "initialize", None)
            if callable(initialize):
                outcome = initialize()
                if inspect.isawaitable(outcome):
                    await outcome
            self._instance = instance
        return self._instance

    async def cleanup(self) -> None:
        instance, self._instance = self._instance, None
        close = getattr(instance, "close", None)
        if instance is not None and callable(close):
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome


class DependencyContainer:
    """
    Builds and owns the long-lived collaborators of a SlopedIn process.

    The relay, and through it the inference context thread, is only created
    when first requested.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[Config] = None,
        engine_factory: Optional[Callable[[], InferenceEngine]] = None,
    ) -> None:
        self.config_path = config_path
        self.config = config
        self.engine_factory = engine_factory
        self.logger = structlog.get_logger(self.__class__.__name__)

        self._instances: Dict[str, LazyInstance[Any]] = {}
        self._instances_lock = asyncio.Lock()
        self._shutdown_handlers: List[Callable[[], Any]] = []

        self.container_id = str(uuid4())
        self.is_running = False

    async def initialize(self) -> None:
        if self.config is None:
            self.config = load_config(self.config_path)
        self._create_instances()
        self.is_running = True
        self.logger.info(
            "Dependency container initialized",
            container_id=self.container_id,
            config_path=str(self.config_path) if self.config_path else "default",
        )

    def _default_engine(self) -> InferenceEngine:
        from slopedin.inference import TransformersEngine

        assert self.config is not None
        return TransformersEngine(self.config.inference)

    def _build_relay(self) -> Relay:
        from slopedin.inference import ThreadContextFactory
        from slopedin.relay import Relay

        assert self.config is not None
        factory = ThreadContextFactory(
            self.engine_factory or self._default_engine,
            inference=self.config.inference,
            relay=self.config.relay,
        )
        return Relay(factory, self.config.relay)

    def _build_preferences(self) -> JsonPreferenceStore:
        from slopedin.preferences import ENABLED_KEY, JsonPreferenceStore

        assert self.config is not None
        return JsonPreferenceStore(
            self.config.preferences.path,
            defaults={ENABLED_KEY: self.config.preferences.default_enabled},
        )

    def _create_instances(self) -> None:
        if self.config is None:
            raise RuntimeError("Configuration must be loaded before creating instances")

        from slopedin.observability import MetricsManager

        self._instances = {
            "metrics": LazyInstance(MetricsManager, self.config.monitoring),
            "preferences": LazyInstance(self._build_preferences),
            "relay": LazyInstance(self._build_relay),
        }

    async def get_metrics(self) -> MetricsManager:
        async with self._instances_lock:
            return await self._instances["metrics"].get()  # type: ignore

    async def get_preferences(self, watch: Optional[bool] = None) -> JsonPreferenceStore:
        """Get the preference store, watching its file when configured to."""
        async with self._instances_lock:
            store = await self._instances["preferences"].get()
        assert self.config is not None
        if self.config.preferences.watch if watch is None else watch:
            store.start_watching()
        return store  # type: ignore

    async def get_relay(self) -> Relay:
        async with self._instances_lock:
            return await self._instances["relay"].get()  # type: ignore

    async def build_pipeline(
        self,
        source: MutationSource,
        extractor: TextExtractor,
        renderer: BadgeRenderer,
    ) -> DetectionPipeline:
        from slopedin.pipeline import DetectionPipeline

        assert self.config is not None
        metrics = await self.get_metrics()
        metrics.start()
        pipeline = DetectionPipeline(
            source,
            extractor,
            await self.get_relay(),
            renderer,
            await self.get_preferences(),
            self.config,
            warm_up=self.config.inference.preload,
        )
        self.add_shutdown_handler(pipeline.stop)
        return pipeline

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator[DependencyContainer]:
        try:
            await self.initialize()
            yield self
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        if not self.is_running:
            return
        self.logger.info("Shutting down dependency container", container_id=self.container_id)

        for handler in self._shutdown_handlers:
            try:
                outcome = handler()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                self.logger.error("Error in shutdown handler", error=str(e))
        self._shutdown_handlers.clear()

        # Relay last: pipelines drain through it.
        for name in ("preferences", "metrics", "relay"):
            instance = self._instances.get(name)
            if instance is None:
                continue
            try:
                await instance.cleanup()
            except Exception as e:
                self.logger.error("Error cleaning up instance", instance=name, error=str(e))

        self.is_running = False
        self.logger.info("Dependency container shutdown complete")

    def add_shutdown_handler(self, handler: Callable[[], Any]) -> None:
        self._shutdown_handlers.append(handler)

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "container_id": self.container_id,
            "is_running": self.is_running,
            "config_loaded": self.config is not None,
            "instances_created": sorted(name for name, inst in self._instances.items() if inst.created),
            "config_path": str(self.config_path) if self.config_path else None,
        }
