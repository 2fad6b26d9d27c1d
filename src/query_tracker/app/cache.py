"""Best-effort JSON file cache used to seed the snapshot at process start."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, ValidationError

from .models import QueryRecord, Snapshot

logger = logging.getLogger(__name__)

CACHE_VERSION = "v1"
CACHE_FILENAME = "query_tracker_queries.json"


class CacheEntry(BaseModel):
    version: str
    saved_at: datetime
    last_synced_at: datetime | None = None
    queries: list[QueryRecord]


class JsonFileSnapshotCache:
    """Confirmed records on disk with a freshness window.

    Stale, corrupt or version-mismatched entries read as absent. Nothing in
    here raises: a failed save or clear is logged and ignored.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        ttl_s: float = 300.0,
        version: str = CACHE_VERSION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.path = Path(directory) / CACHE_FILENAME
        self.ttl_s = ttl_s
        self.version = version
        self._clock = clock or (lambda: datetime.now(UTC))

    def save(self, snapshot: Snapshot) -> None:
        # Unconfirmed adds have no server id yet; they never hit the cache.
        confirmed = [record for record in snapshot.queries if record.temp_id is None]
        entry = CacheEntry(
            version=self.version,
            saved_at=self._clock(),
            last_synced_at=snapshot.last_synced_at,
            queries=confirmed,
        )
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            tmp_path.write_text(entry.model_dump_json(), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.warning("cache event=save_failed path=%s reason=%s", self.path, exc)

    def load(self) -> Snapshot | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("cache event=load_failed path=%s reason=%s", self.path, exc)
            return None

        try:
            entry = CacheEntry.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            logger.warning("cache event=corrupt path=%s reason=%s", self.path, exc)
            self.clear()
            return None

        if entry.version != self.version:
            logger.info("cache event=version_mismatch found=%s expected=%s", entry.version, self.version)
            return None
        age_s = (self._clock() - entry.saved_at).total_seconds()
        if age_s >= self.ttl_s:
            logger.info("cache event=stale age_s=%.1f ttl_s=%.1f", age_s, self.ttl_s)
            return None

        return Snapshot(queries=tuple(entry.queries), last_synced_at=entry.last_synced_at)

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("cache event=clear_failed path=%s reason=%s", self.path, exc)
