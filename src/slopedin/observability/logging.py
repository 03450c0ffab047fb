"""
Structured logging for SlopedIn.

Events from the discovery loop and the inference context thread go through
the same stdlib root handler. Each event carries the name of the thread that
emitted it, and the ``correlation_id`` the relay binds for every request.
"""

from __future__ import annotations

import logging
import sys
import threading
from typing import TYPE_CHECKING, Any, List, MutableMapping, Tuple

import structlog

if TYPE_CHECKING:
    from slopedin.config import MonitoringConfig

# Libraries that log per file event or per download chunk.
NOISY_LOGGERS = ("watchdog", "transformers", "huggingface_hub", "filelock", "urllib3")


def add_thread_name(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Tag events logged off the main thread, such as the inference context."""
    thread = threading.current_thread()
    if thread is not threading.main_thread():
        event_dict.setdefault("thread", thread.name)
    return event_dict


def _build_handler(config: MonitoringConfig) -> Tuple[logging.Handler, Any]:
    if config.log_file:
        return logging.FileHandler(config.log_file, encoding="utf-8"), structlog.processors.JSONRenderer()
    return logging.StreamHandler(sys.stderr), structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(config: MonitoringConfig) -> None:
    """
    Route structlog and stdlib logging through one handler.

    Console output is human readable; with ``log_file`` set, events are
    written as JSON lines instead.
    """
    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_thread_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    handler, renderer = _build_handler(config)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared_processors,
        )
    )

    level = config.log_level.upper()
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.filter_by_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    structlog.get_logger(__name__).debug("Logging configured", level=level, output=config.log_file or "stderr")
