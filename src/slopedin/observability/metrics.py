"""
Defines and manages Prometheus metrics for the application.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from slopedin.config import MonitoringConfig

logger = structlog.get_logger(__name__)

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Module reloads during the test suite must not register a collector twice.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing

        try:
            return metric_cls(name, documentation, *args, **kwargs)
        except ValueError:
            # Registration lost the race, reuse the collector that won.
            return _PROM_REGISTRY._names_to_collectors[name]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)
Gauge = _duplicate_safe_factory(_OrigGauge)
Histogram = _duplicate_safe_factory(_OrigHistogram)


def _create_metrics() -> Dict[str, Any]:
    return {
        "items_discovered": Counter(
            "slopedin_items_discovered_total",
            "Items seen for the first time by the tracker",
        ),
        "item_transitions": Counter(
            "slopedin_item_transitions_total",
            "Item state transitions",
            ["state"],
        ),
        "items_evicted": Counter(
            "slopedin_items_evicted_total",
            "Settled items forgotten after disappearing from the source",
        ),
        "scans": Counter(
            "slopedin_scans_total",
            "Scan passes run by the tracker",
        ),
        "classifications": Counter(
            "slopedin_classifications_total",
            "Classification requests by outcome",
            ["outcome"],
        ),
        "classification_latency_seconds": Histogram(
            "slopedin_classification_latency_seconds",
            "Round trip time of a classification request through the relay",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
        ),
        "model_loads": Counter(
            "slopedin_model_loads_total",
            "Engine initialization attempts by outcome",
            ["outcome"],
        ),
        "model_state": Gauge(
            "slopedin_model_state",
            "1 for the current loader state, 0 otherwise",
            ["state"],
        ),
        "pending_queue_depth": Gauge(
            "slopedin_pending_queue_depth",
            "Classify calls waiting for the engine to become ready",
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


class MetricsManager:
    """Manages the lifecycle of the metrics exporter."""

    def __init__(self, config: MonitoringConfig) -> None:
        self.config = config
        self._started = False

    def start(self) -> Optional[int]:
        """Starts the Prometheus server if a port is configured."""
        if self._started or not self.config.prometheus_port:
            return None
        start_http_server(self.config.prometheus_port)
        self._started = True
        logger.info("Prometheus exporter started", port=self.config.prometheus_port)
        return self.config.prometheus_port
