"""
Error taxonomy for the classification pipeline.

Every failure that can reach a caller of the relay derives from
ClassificationError. The item tracker only distinguishes success from failure,
but the concrete subclass (and its ``kind``) survives the context boundary so
that logs and diagnostics can tell causes apart.
"""

from __future__ import annotations

from typing import Dict, Type


class ClassificationError(Exception):
    """Base class for any failure to classify a piece of text."""

    kind: str = "classification_failed"


class ContextUnavailable(ClassificationError):
    """The inference context could not be created or reached."""

    kind = "context_unavailable"


class ModelLoadFailed(ClassificationError):
    """Engine initialization raised."""

    kind = "model_load_failed"


class InferenceFailed(ClassificationError):
    """Engine call raised after a successful load."""

    kind = "inference_failed"


class TransportFailed(ClassificationError):
    """A message could not be delivered or its reply was lost."""

    kind = "transport_failed"


_ERRORS_BY_KIND: Dict[str, Type[ClassificationError]] = {
    cls.kind: cls for cls in (ContextUnavailable, ModelLoadFailed, InferenceFailed, TransportFailed)
}


def error_for_kind(kind: str | None, message: str) -> ClassificationError:
    """Rebuild an exception from a wire error envelope.

    Unknown or missing kinds are reported as InferenceFailed, since they can
    only originate on the inference side.
    """
    return _ERRORS_BY_KIND.get(kind or "", InferenceFailed)(message)


__all__ = [
    "ClassificationError",
    "ContextUnavailable",
    "ModelLoadFailed",
    "InferenceFailed",
    "TransportFailed",
    "error_for_kind",
]
