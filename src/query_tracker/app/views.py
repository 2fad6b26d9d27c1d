"""Read-side helpers used by the dashboard endpoints."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import UTC, datetime

from pydantic import BaseModel

from .deletion import is_pending_deletion
from .models import BUCKET_ORDER, Bucket, QueryRecord


class BucketEntry(BaseModel):
    """One card in a bucket column.

    ``ghost`` marks a pending deletion shown greyed out in the bucket it
    came from, next to its real entry in H.
    """

    record: QueryRecord
    ghost: bool = False


def _history_timestamp(record: QueryRecord) -> datetime | None:
    if record.bucket == Bucket.F:
        return record.external_entered_at
    if record.bucket == Bucket.G:
        return record.discarded_at
    if record.bucket == Bucket.H:
        return record.delete_approved_at
    return None


def _within_history(stamp: datetime | None, history_days: int, now: datetime) -> bool:
    # Freshly moved records may not carry the stamp yet; keep them.
    if stamp is None:
        return True
    age_days = math.ceil(abs((now - stamp).total_seconds()) / 86400)
    return age_days <= history_days


def group_by_bucket(
    records: Iterable[QueryRecord],
    history_days: int,
    now: datetime | None = None,
) -> dict[Bucket, list[BucketEntry]]:
    """Bucket columns, with ghosts for pending deletions and F/G history trimmed."""
    now = now or datetime.now(UTC)
    grouped: dict[Bucket, list[BucketEntry]] = {bucket: [] for bucket in BUCKET_ORDER}
    for record in records:
        grouped[record.bucket].append(BucketEntry(record=record))
        if is_pending_deletion(record) and record.previous_bucket not in (None, Bucket.H):
            grouped[record.previous_bucket].append(BucketEntry(record=record, ghost=True))

    for bucket in (Bucket.F, Bucket.G):
        grouped[bucket] = [
            entry
            for entry in grouped[bucket]
            if entry.ghost or _within_history(_history_timestamp(entry.record), history_days, now)
        ]
    return grouped


def filter_by_history_days(
    records: Iterable[QueryRecord],
    history_days: int,
    now: datetime | None = None,
) -> list[QueryRecord]:
    """Drop F/G/H records older than the window; pending deletions always stay."""
    now = now or datetime.now(UTC)
    kept: list[QueryRecord] = []
    for record in records:
        if record.bucket not in (Bucket.F, Bucket.G, Bucket.H) or is_pending_deletion(record):
            kept.append(record)
        elif _within_history(_history_timestamp(record), history_days, now):
            kept.append(record)
    return kept


def pending_deletions(records: Iterable[QueryRecord]) -> list[QueryRecord]:
    return [record for record in records if is_pending_deletion(record)]


def calculate_stats(records: Iterable[QueryRecord]) -> dict[str, int]:
    stats = {bucket.value: 0 for bucket in BUCKET_ORDER}
    for record in records:
        stats[record.bucket.value] += 1
    return stats


def filter_by_search(records: Iterable[QueryRecord], term: str) -> list[QueryRecord]:
    """Case-insensitive match on query id or description."""
    needle = term.strip().lower()
    if not needle:
        return list(records)
    return [
        record
        for record in records
        if needle in record.query_id.lower() or needle in record.description.lower()
    ]
