"""Inference context: coordinator, engine backend and the context actor."""

from __future__ import annotations

from .context import InferenceContext, ThreadContextFactory
from .coordinator import InferenceCoordinator, ModelLoader
from .engine import TransformersEngine, TransformersHandle

__all__ = [
    "InferenceContext",
    "ThreadContextFactory",
    "InferenceCoordinator",
    "ModelLoader",
    "TransformersEngine",
    "TransformersHandle",
]
