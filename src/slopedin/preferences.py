"""
Persisted user preferences, shared between the running pipeline and the
``enable`` / ``disable`` commands of the CLI.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from slopedin.protocols import PreferenceListener, Unsubscribe
from slopedin.utils import atomic_write_json, read_json

logger = structlog.get_logger(__name__)

ENABLED_KEY = "enabled"


class _PreferenceFileWatcher(FileSystemEventHandler):
    """Reloads the store when another process rewrites its file."""

    def __init__(self, store: JsonPreferenceStore) -> None:
        self.store = store

    def _touches_store(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(path and Path(path).name == self.store.path.name for path in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._touches_store(event):
            self.store.reload()

    def on_created(self, event: FileSystemEvent) -> None:
        if self._touches_store(event):
            self.store.reload()

    def on_moved(self, event: FileSystemEvent) -> None:
        if self._touches_store(event):
            self.store.reload()


class JsonPreferenceStore:
    """
    Key/value preferences kept in a JSON file.

    Listeners receive ``(key, new_value)`` for every key whose value changed,
    whether through ``set`` or because the file was edited by another process.
    Notifications from file edits arrive on the watchdog thread.
    """

    def __init__(self, path: Path, defaults: Optional[Dict[str, Any]] = None) -> None:
        self.path = Path(path).expanduser()
        self.defaults: Dict[str, Any] = dict(defaults or {})
        self._lock = threading.RLock()
        self._listeners: List[PreferenceListener] = []
        self._data: Dict[str, Any] = read_json(self.path)
        self._observer: Optional[Observer] = None  # type: ignore[valid-type]

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key in self._data:
                return self._data[key]
        return self.defaults.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            previous = self.get(key)
            self._data[key] = value
            atomic_write_json(self.path, self._data)
        logger.debug("Preference stored", key=key, value=value)
        if previous != value:
            self._notify(key, value)

    def as_dict(self) -> Dict[str, Any]:
        with self._lock:
            merged = dict(self.defaults)
            merged.update(self._data)
            return merged

    def subscribe(self, listener: PreferenceListener) -> Unsubscribe:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def reload(self) -> List[str]:
        """Re-read the file and notify listeners of changed keys."""
        with self._lock:
            before = self.as_dict()
            self._data = read_json(self.path)
            after = self.as_dict()
        changed = [key for key in set(before) | set(after) if before.get(key) != after.get(key)]
        for key in sorted(changed):
            logger.info("Preference changed on disk", key=key, value=after.get(key))
            self._notify(key, after.get(key))
        return changed

    def _notify(self, key: str, value: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(key, value)
            except Exception:
                logger.exception("Preference listener failed", key=key)

    def start_watching(self) -> None:
        if self._observer is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        observer = Observer()
        observer.schedule(_PreferenceFileWatcher(self), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Watching preference file", path=str(self.path))

    def close(self) -> None:
        observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()
