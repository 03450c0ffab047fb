"""
Hugging Face transformers backend for the AI-text detector.

The model is downloaded and built in a worker thread so the inference
context's event loop keeps accepting (and queueing) requests while it loads.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional

import structlog

from slopedin.config import InferenceConfig
from slopedin.protocols import RankedLabel

logger = structlog.get_logger(__name__)


def _resolve_device(setting: str) -> int:
    """Resolve the device setting to a transformers pipeline device index."""
    import torch

    if setting == "cuda":
        if torch.cuda.is_available():
            return 0
        logger.warning("CUDA requested but not available, falling back to CPU")
        return -1
    if setting == "cpu":
        return -1
    return 0 if torch.cuda.is_available() else -1


class TransformersHandle:
    """A loaded text-classification pipeline."""

    def __init__(self, classifier: Any) -> None:
        self._classifier = classifier

    async def run(self, text: str, top_k: int = 2) -> List[RankedLabel]:
        raw = await asyncio.to_thread(self._classifier, text, top_k=top_k, truncation=True)
        # A single string input may come back wrapped in an outer list.
        if raw and isinstance(raw[0], list):
            raw = raw[0]
        ranking = [RankedLabel(label=str(entry["label"]), score=float(entry["score"])) for entry in raw]
        ranking.sort(key=lambda entry: entry.score, reverse=True)
        return ranking


class TransformersEngine:
    """
    Builds the detector pipeline on first use.

    ``initialize`` may be called again after a failure; each call performs a
    fresh attempt.
    """

    def __init__(self, config: Optional[InferenceConfig] = None) -> None:
        self.config = config or InferenceConfig()

    async def initialize(self) -> TransformersHandle:
        logger.info("Building detector pipeline", model=self.config.model, device=self.config.device)
        classifier = await asyncio.to_thread(self._build)
        return TransformersHandle(classifier)

    def _build(self) -> Any:
        from transformers import pipeline

        return pipeline(
            self.config.task,
            model=self.config.model,
            device=_resolve_device(self.config.device),
        )
