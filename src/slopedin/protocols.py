"""
Core contracts and data structures for SlopedIn.

This module defines the data model shared by the discovery side of the
pipeline (observer, tracker, relay) and the inference side (coordinator,
engine), plus the protocols every external collaborator must satisfy.

Architecture Overview:
- Feed Observer: debounced mutation notifications trigger scans
- Item Tracker: per-item dedup state machine
- Relay: request/response bridge into an isolated inference context
- Inference Coordinator: single-flight model loading with a pending queue
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Hashable, Iterable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable
from uuid import uuid4

# ============================================================================
# Enums and Constants
# ============================================================================

DEFAULT_AI_THRESHOLD = 0.5
DEFAULT_FAKE_LABEL = "fake"


class ProcessingState(Enum):
    """Lifecycle of a discovered item."""

    UNSEEN = "unseen"
    PENDING = "pending"
    DONE = "done"
    SKIPPED = "skipped"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingState.DONE, ProcessingState.SKIPPED, ProcessingState.ERROR)


class Label(Enum):
    """Verdict attached to a classified item."""

    AI = "AI"
    HUMAN = "Human"


class LoaderState(Enum):
    """State of the lazily-initialized inference engine."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass(frozen=True)
class RankedLabel:
    """One (label, probability) pair as returned by the engine."""

    label: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label, "score": self.score}


def label_for_score(score: float, threshold: float = DEFAULT_AI_THRESHOLD) -> Label:
    """Map the probability of the synthetic class to a verdict."""
    return Label.AI if score >= threshold else Label.HUMAN


@dataclass(frozen=True)
class ClassificationResult:
    """Immutable outcome of classifying one piece of text."""

    label: Label
    score: float
    raw_ranking: Tuple[RankedLabel, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be within [0, 1], got {self.score}")

    @classmethod
    def from_ranking(
        cls,
        ranking: Sequence[RankedLabel],
        fake_label: str = DEFAULT_FAKE_LABEL,
        threshold: float = DEFAULT_AI_THRESHOLD,
    ) -> ClassificationResult:
        """
        Derive a verdict from the engine's ranked output.

        The probability of the entry whose label matches ``fake_label``
        (case-insensitively) is the AI score. When the ranking has no such
        entry the score defaults to 0.0, i.e. confidently human.
        """
        wanted = fake_label.lower()
        score = 0.0
        for entry in ranking:
            if entry.label.lower() == wanted:
                score = float(entry.score)
                break
        return cls(label=label_for_score(score, threshold), score=score, raw_ranking=tuple(ranking))

    @property
    def is_ai(self) -> bool:
        return self.label is Label.AI


@dataclass(frozen=True)
class ClassificationRequest:
    """Text payload plus a caller-assigned correlation identifier."""

    text: str
    correlation_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class TrackedItem:
    """Tracker bookkeeping for one handle of the content source."""

    handle: Hashable
    state: ProcessingState = ProcessingState.UNSEEN
    text: Optional[str] = None
    result: Optional[ClassificationResult] = None
    error: Optional[str] = None
    missed_scans: int = 0


@dataclass
class PendingRequest:
    """A classify call accepted while the engine was not ready."""

    correlation_id: str
    text: str
    future: asyncio.Future[ClassificationResult]


@dataclass(frozen=True)
class Mutation:
    """One structural change notification from the content source."""

    added: Tuple[Hashable, ...] = ()
    removed: Tuple[Hashable, ...] = ()


MutationCallback = Callable[[Sequence[Mutation]], None]
PreferenceListener = Callable[[str, Any], None]
Unsubscribe = Callable[[], None]


# ============================================================================
# Collaborator Protocols
# ============================================================================


@runtime_checkable
class MutationSource(Protocol):
    """A live set of items that reports structural changes."""

    def items(self) -> Iterable[Hashable]:
        """Return the handles of all items currently present."""
        ...

    def subscribe(self, callback: MutationCallback) -> Unsubscribe:
        """Register for mutation batches; may call back from any thread."""
        ...


@runtime_checkable
class TextExtractor(Protocol):
    def extract(self, handle: Hashable) -> str: ...


@runtime_checkable
class BadgeRenderer(Protocol):
    def render(self, handle: Hashable, result: ClassificationResult) -> None: ...


@runtime_checkable
class EngineHandle(Protocol):
    """A loaded model ready to run."""

    async def run(self, text: str, top_k: int = 2) -> List[RankedLabel]:
        """Return (label, probability) pairs sorted by descending score."""
        ...


@runtime_checkable
class InferenceEngine(Protocol):
    """Factory for the (slow, failable) one-time engine initialization."""

    async def initialize(self) -> EngineHandle: ...


@runtime_checkable
class PreferenceStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def subscribe(self, listener: PreferenceListener) -> Unsubscribe: ...
