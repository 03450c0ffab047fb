"""
Badge renderers: how a verdict is shown next to its post.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Hashable, Optional, Set

import structlog
from rich.console import Console

from slopedin.protocols import ClassificationResult, Label
from slopedin.utils import atomic_write_json

logger = structlog.get_logger(__name__)

BADGE_SUFFIX = ".badge.json"


@dataclass(frozen=True)
class Badge:
    text: str
    tooltip: str
    css_class: str


def _percent(score: float) -> int:
    # Half-up rounding so 0.875 shows as 88%.
    return int(math.floor(score * 100 + 0.5))


def badge_text(result: ClassificationResult) -> Badge:
    """Build the badge a user sees for ``result``."""
    pct = _percent(result.score)
    if result.label is Label.AI:
        return Badge(
            text=f"🤖 {pct}% AI",
            tooltip=f"This post has a {pct}% probability of being AI-generated.",
            css_class="ai-detect-badge--ai",
        )
    return Badge(
        text="👤 Human",
        tooltip=f"This post appears to be human-written ({100 - pct}% confidence).",
        css_class="ai-detect-badge--human",
    )


class ConsoleBadgeRenderer:
    """Prints one line per classified post."""

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def render(self, handle: Hashable, result: ClassificationResult) -> None:
        badge = badge_text(result)
        style = "bold red" if result.is_ai else "bold green"
        name = handle.name if isinstance(handle, Path) else str(handle)
        self.console.print(f"[{style}]{badge.text}[/{style}]  {name}  [dim]{badge.tooltip}[/dim]")


class SidecarBadgeRenderer:
    """
    Writes the badge of ``<post>`` to ``<post>.badge.json`` beside it.

    An existing sidecar is never overwritten, so a post carries at most one
    badge even if it is classified again after being evicted and rediscovered.
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console
        self._written: Set[Path] = set()
        self._lock = threading.Lock()

    @staticmethod
    def sidecar_for(handle: Hashable) -> Path:
        path = Path(str(handle))
        return path.with_name(path.name + BADGE_SUFFIX)

    def render(self, handle: Hashable, result: ClassificationResult) -> None:
        target = self.sidecar_for(handle)
        with self._lock:
            if target in self._written or target.exists():
                logger.debug("Badge already present", post=str(handle))
                return
            self._written.add(target)

        badge = badge_text(result)
        atomic_write_json(
            target,
            {
                "post": Path(str(handle)).name,
                "label": result.label.value,
                "score": result.score,
                "badge": badge.text,
                "tooltip": badge.tooltip,
                "class": badge.css_class,
                "raw_ranking": [entry.to_dict() for entry in result.raw_ranking],
                "classified_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.debug("Badge written", sidecar=str(target))
        if self.console is not None:
            self.console.print(f"{badge.text}  {Path(str(handle)).name}")
