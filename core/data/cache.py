"""Snapshot cache -- the last published Snapshot, persisted across restarts.

Storage is a single keyed JSON blob. FileSnapshotStore keeps it as a file in
the home directory; MemorySnapshotStore is used in tests and for --no-cache.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from core.errors import AggregationError
from core.models.market import Snapshot
from core.protocols import SnapshotStore

logger = logging.getLogger(__name__)

CACHE_KEY = "market-data-cache"
DEFAULT_MAX_AGE = timedelta(hours=1)


class FileSnapshotStore:
    """One JSON file per key, replaced atomically on write."""

    def __init__(self, directory: Path) -> None:
        self._dir = Path(directory)

    def _path(self, key: str) -> Path:
        return self._dir / f"{key}.json"

    def read(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, key: str, blob: str) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(blob)
            os.replace(tmp, self._path(key))
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class MemorySnapshotStore:
    """In-process store."""

    def __init__(self) -> None:
        self.blobs: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self.blobs.get(key)

    def write(self, key: str, blob: str) -> None:
        self.blobs[key] = blob

    def delete(self, key: str) -> None:
        self.blobs.pop(key, None)


class SnapshotCache:
    """Loads and saves the single cached Snapshot.

    Stale, unreadable or corrupt entries are treated as absent.
    """

    def __init__(
        self,
        store: SnapshotStore,
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Callable[[], datetime] | None = None,
        key: str = CACHE_KEY,
    ) -> None:
        self._store = store
        self._max_age = max_age
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._key = key

    @property
    def max_age(self) -> timedelta:
        return self._max_age

    def load(self) -> Snapshot | None:
        try:
            blob = self._store.read(self._key)
        except OSError:
            logger.exception("Failed to read cached snapshot")
            return None
        if blob is None:
            return None

        try:
            snapshot = Snapshot.model_validate_json(blob)
        except ValidationError as e:
            logger.warning("Discarding corrupt cached snapshot: %s", e.errors()[:1])
            return None

        if snapshot.captured_at.tzinfo is None:
            snapshot = snapshot.model_copy(
                update={"captured_at": snapshot.captured_at.replace(tzinfo=timezone.utc)},
            )

        age = self._clock() - snapshot.captured_at
        if age > self._max_age:
            logger.info(
                "Cached snapshot is stale (%.0fs old, max %.0fs)",
                age.total_seconds(),
                self._max_age.total_seconds(),
            )
            return None
        return snapshot

    def save(self, snapshot: Snapshot) -> None:
        try:
            self._store.write(self._key, snapshot.model_dump_json())
        except OSError as e:
            raise AggregationError(f"Failed to write snapshot cache: {e}") from e

    def info(self) -> dict:
        """Presence and age of the cached entry, ignoring staleness."""
        try:
            blob = self._store.read(self._key)
        except OSError:
            blob = None
        if blob is None:
            return {"has_cache": False, "age_seconds": None, "stale": None}
        try:
            snapshot = Snapshot.model_validate_json(blob)
        except ValidationError:
            return {"has_cache": False, "age_seconds": None, "stale": None}
        captured = snapshot.captured_at
        if captured.tzinfo is None:
            captured = captured.replace(tzinfo=timezone.utc)
        age = self._clock() - captured
        return {
            "has_cache": True,
            "age_seconds": round(max(age.total_seconds(), 0.0), 1),
            "stale": age > self._max_age,
        }

    def clear(self) -> None:
        self._store.delete(self._key)
