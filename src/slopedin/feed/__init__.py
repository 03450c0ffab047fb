"""Discovery side: feed sources, the tracker, the observer and badge renderers."""

from __future__ import annotations

from .badges import Badge, ConsoleBadgeRenderer, SidecarBadgeRenderer, badge_text
from .directory import DirectoryFeedSource, FileTextExtractor
from .observer import FeedObserver
from .tracker import ItemTracker

__all__ = [
    "Badge",
    "ConsoleBadgeRenderer",
    "SidecarBadgeRenderer",
    "badge_text",
    "DirectoryFeedSource",
    "FileTextExtractor",
    "FeedObserver",
    "ItemTracker",
]
