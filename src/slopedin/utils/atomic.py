"""
Atomic JSON file helpers shared by the preference store and the sidecar
badge renderer.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


def atomic_write_json(target_path: Path, data: Dict[str, Any]) -> None:
    """
    Write ``data`` as JSON so readers only ever see the old or the new file.

    The payload goes to a temporary file in the target's directory (same
    filesystem), is fsynced, then moved into place with ``os.replace``.

    Raises:
        ValueError: ``data`` is not JSON serializable.
        OSError: the file could not be written or moved into place.
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        content = json.dumps(data, indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e), target=str(target_path))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    temp_file_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            mode="w",
            dir=target_path.parent,
            prefix=f".{target_path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
        ) as temp_file:
            temp_file_path = Path(temp_file.name)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())

        os.replace(temp_file_path, target_path)
        logger.debug("Atomic write completed", target=str(target_path))
    except OSError as e:
        logger.error("Atomic write failed", target=str(target_path), error=str(e))
        raise
    finally:
        if temp_file_path is not None and temp_file_path.exists():
            try:
                temp_file_path.unlink()
            except OSError:
                pass


def read_json(path: Path, default: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Load a JSON object, returning ``default`` for a missing, empty or corrupt file."""
    fallback: Dict[str, Any] = dict(default or {})
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return fallback
    if not raw.strip():
        return fallback
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Ignoring unreadable JSON file", path=str(path), error=str(e))
        return fallback
    if not isinstance(data, dict):
        logger.warning("Ignoring JSON file without an object at the top level", path=str(path))
        return fallback
    return data
