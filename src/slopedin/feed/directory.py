"""
A directory of post files as a live feed.

Each file matching one of the configured glob patterns is one post; its
resolved path is the item handle. watchdog reports files appearing, moving
and disappearing, which are forwarded to subscribers as mutation batches.
"""

from __future__ import annotations

import fnmatch
import re
import threading
from pathlib import Path
from typing import Hashable, Iterable, List, Optional, Sequence

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from slopedin.protocols import Mutation, MutationCallback, Unsubscribe

logger = structlog.get_logger(__name__)

_WHITESPACE = re.compile(r"\s+")


class _FeedEventHandler(FileSystemEventHandler):
    """Maps watchdog events onto mutation batches."""

    def __init__(self, source: DirectoryFeedSource) -> None:
        self.source = source

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self.source.matches(event.src_path):
            self.source.publish([Mutation(added=(self.source.handle_for(event.src_path),))])

    def on_modified(self, event: FileSystemEvent) -> None:
        # Writes re-arm the debounce so a new post is scanned after its body lands.
        if not event.is_directory and self.source.matches(event.src_path):
            self.source.publish([Mutation(added=(self.source.handle_for(event.src_path),))])

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self.source.matches(event.src_path):
            self.source.publish([Mutation(removed=(self.source.handle_for(event.src_path),))])

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        removed = (self.source.handle_for(event.src_path),) if self.source.matches(event.src_path) else ()
        dest = getattr(event, "dest_path", "")
        added = (self.source.handle_for(dest),) if dest and self.source.matches(dest) else ()
        if added or removed:
            self.source.publish([Mutation(added=added, removed=removed)])


class DirectoryFeedSource:
    """MutationSource over the post files of one directory."""

    def __init__(self, directory: Path, patterns: Sequence[str] = ("*.txt", "*.md")) -> None:
        self.directory = Path(directory).resolve()
        self.patterns = tuple(patterns)
        self._subscribers: List[MutationCallback] = []
        self._lock = threading.Lock()
        self._observer: Optional[Observer] = None  # type: ignore[valid-type]

    def matches(self, path: str | Path) -> bool:
        candidate = Path(path)
        if candidate.name.startswith("."):
            return False
        if candidate.resolve().parent != self.directory:
            return False
        return any(fnmatch.fnmatch(candidate.name, pattern) for pattern in self.patterns)

    def handle_for(self, path: str | Path) -> Path:
        return Path(path).resolve()

    def items(self) -> Iterable[Hashable]:
        if not self.directory.is_dir():
            return []
        return sorted(path.resolve() for path in self.directory.iterdir() if path.is_file() and self.matches(path))

    def subscribe(self, callback: MutationCallback) -> Unsubscribe:
        with self._lock:
            self._subscribers.append(callback)
            if self._observer is None:
                self._start_watching()

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
                stop = not self._subscribers
            if stop:
                self.close()

        return unsubscribe

    def publish(self, batch: Sequence[Mutation]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(batch)
            except Exception:
                logger.exception("Mutation subscriber failed", directory=str(self.directory))

    def _start_watching(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_FeedEventHandler(self), str(self.directory), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching feed directory", directory=str(self.directory), patterns=list(self.patterns))

    def close(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            if threading.current_thread() is not observer:
                observer.join()


class FileTextExtractor:
    """Reads a post file and collapses its whitespace."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self.encoding = encoding

    def extract(self, handle: Hashable) -> str:
        raw = Path(str(handle)).read_text(encoding=self.encoding, errors="replace")
        return _WHITESPACE.sub(" ", raw).strip()
