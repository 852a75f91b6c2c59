"""Durable store: the in-memory arena plus a JSON snapshot on disk."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from feedcore.cache_utils import atomic_write_json, rotate_backups
from feedcore.constants import STORE_BACKUPS
from feedcore.errors import StorageError
from feedcore.config import Settings
from feedcore.store import FallbackStore, MemoryStore, Store

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class JsonFileStore(MemoryStore):
    """MemoryStore that rewrites a full snapshot after every mutation.

    The previous snapshot is rotated into numbered backups once per open.
    Use `deferred()` to coalesce the writes of a bulk operation.
    """

    def __init__(self, path: Path | str, backups: int = STORE_BACKUPS) -> None:
        super().__init__()
        self.path = Path(path)
        self._defer_depth = 0
        self._dirty = False
        if self.path.exists():
            self._load()
            rotate_backups(self.path, backups)

    def _load(self) -> None:
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read store snapshot {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise StorageError(f"Store snapshot {self.path} is not a JSON object")
        version = raw.get("version", SNAPSHOT_VERSION)
        if version != SNAPSHOT_VERSION:
            raise StorageError(f"Unsupported snapshot version {version} in {self.path}")
        try:
            self.restore(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise StorageError(f"Corrupt store snapshot {self.path}: {e}") from e
        logger.debug("Loaded store snapshot from %s", self.path)

    def _flush(self) -> None:
        data = self.snapshot()
        data["version"] = SNAPSHOT_VERSION
        try:
            atomic_write_json(self.path, data)
        except OSError as e:
            raise StorageError(f"Cannot write store snapshot {self.path}: {e}") from e
        self._dirty = False

    def _changed(self) -> None:
        if self._defer_depth:
            self._dirty = True
            return
        self._flush()

    @contextmanager
    def deferred(self) -> Iterator[None]:
        with self._lock:
            self._defer_depth += 1
            try:
                yield
            finally:
                self._defer_depth -= 1
                if self._defer_depth == 0 and self._dirty:
                    self._flush()

    def ping(self) -> bool:
        parent = self.path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Store directory {parent} unavailable: {e}") from e
        return os.access(parent, os.W_OK)


def open_store(settings: Settings) -> Store:
    """Open the JSON store at settings.store_path, falling back to memory."""
    try:
        primary = JsonFileStore(settings.store_path)
    except StorageError as e:
        logger.error("Falling back to in-memory store: %s", e)
        return MemoryStore()
    return FallbackStore(primary, MemoryStore())
