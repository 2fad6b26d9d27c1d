"""Pure lifecycle rules: what changes accompany a bucket move or a field edit.

Every function here takes the current record plus the request and returns the
concrete field values to write. Nothing is mutated and nothing is logged, so
the engine and the remote gateways run the exact same rules and reach the
same post-state.

Terms used in this file:
- Backward move: target bucket ranks before the current bucket.
- Later-stage field: a field whose stage ranks after a given bucket; such a
  field must be empty while the record sits in that bucket.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .errors import WorkflowValidationError
from .models import (
    STAGE_FIELDS,
    Bucket,
    FieldDelta,
    NewQuery,
    PriorStateHints,
    QueryRecord,
)


@dataclass(frozen=True)
class Delta:
    """Field values to write, plus requested fields that were refused."""

    changes: dict[str, Any]
    dropped: tuple[str, ...] = ()
    backward: bool = False


def empty_value(field_name: str) -> Any:
    """Value a field holds when it carries no data."""
    return QueryRecord.model_fields[field_name].default


def fields_after(bucket: Bucket) -> tuple[str, ...]:
    """Stage fields that may not hold data while a record sits in ``bucket``."""
    return tuple(name for name, stage in STAGE_FIELDS.items() if stage.rank > bucket.rank)


def forward_leaks(record: QueryRecord) -> list[str]:
    """Later-stage fields that hold data on ``record`` (empty when consistent)."""
    return [name for name in fields_after(record.bucket) if getattr(record, name) != empty_value(name)]


def is_backward(current: Bucket, target: Bucket) -> bool:
    if Bucket.H in (current, target):
        return False
    return target.rank < current.rank


def backward_clear(target: Bucket) -> dict[str, Any]:
    """Reset values for everything that implies a stage later than ``target``.

    Applying the result twice yields the same record as applying it once.
    """
    return {name: empty_value(name) for name in fields_after(target)}


def apply_changes(record: QueryRecord, changes: dict[str, Any]) -> QueryRecord:
    return record.model_copy(update=changes)


def prior_state_hints(record: QueryRecord) -> PriorStateHints:
    return PriorStateHints(
        bucket=record.bucket,
        remarks=record.remarks,
        assigned_to=record.assigned_to,
        previous_bucket=record.previous_bucket,
    )


def _split_requested(requested: dict[str, Any], bucket: Bucket) -> tuple[dict[str, Any], tuple[str, ...]]:
    refused = set(fields_after(bucket))
    kept = {k: v for k, v in requested.items() if k not in refused}
    dropped = tuple(sorted(k for k in requested if k in refused))
    return kept, dropped


def _audit_for_content(
    record: QueryRecord,
    requested: dict[str, Any],
    *,
    actor: str,
    now: datetime,
) -> dict[str, Any]:
    """Audit stamps implied by assignee and remarks changes."""
    stamps: dict[str, Any] = {}
    if "assigned_to" in requested and requested["assigned_to"] != record.assigned_to:
        if requested["assigned_to"]:
            stamps["assigned_by"] = actor
            stamps["assigned_at"] = now
        else:
            stamps["assigned_by"] = empty_value("assigned_by")
            stamps["assigned_at"] = empty_value("assigned_at")
    if "remarks" in requested and requested["remarks"] != record.remarks:
        stamps["remark_added_by"] = actor
        stamps["remark_added_at"] = now
    return stamps


def compute_transition(
    record: QueryRecord,
    target: Bucket,
    delta: FieldDelta | None,
    *,
    actor: str,
    now: datetime,
) -> Delta:
    """Bucket move, optionally carrying field edits (admin edit + status change)."""
    if target == Bucket.H:
        raise WorkflowValidationError(
            "Bucket H is only reachable through a delete request",
            query_id=record.query_id,
        )
    if record.bucket == Bucket.H:
        raise WorkflowValidationError(
            "Query is in the delete workflow; approve or reject the deletion instead",
            query_id=record.query_id,
        )

    requested, dropped = _split_requested(delta.changes() if delta else {}, target)
    changes: dict[str, Any] = {"bucket": target, **requested}
    changes.update(_audit_for_content(record, requested, actor=actor, now=now))

    backward = is_backward(record.bucket, target)
    if backward:
        changes.update(backward_clear(target))
    else:
        projected = apply_changes(record, changes)
        if target == Bucket.B and projected.assigned_at is None:
            changes["assigned_at"] = now
        if target in (Bucket.C, Bucket.D) and projected.proposal_sent_at is None:
            changes["proposal_sent_at"] = now
        if target in (Bucket.E, Bucket.F) and projected.external_entered_at is None:
            changes["external_entered_at"] = now
        if target == Bucket.G:
            changes["discarded_at"] = now

    if requested:
        changes["last_edited_by"] = actor
        changes["last_edited_at"] = now
    changes["last_activity_at"] = now
    return Delta(changes=changes, dropped=dropped, backward=backward)


def compute_edit(
    record: QueryRecord,
    delta: FieldDelta,
    *,
    actor: str,
    now: datetime,
) -> Delta:
    """Field edit without a bucket change."""
    requested, dropped = _split_requested(delta.changes(), record.bucket)
    changes: dict[str, Any] = dict(requested)
    changes.update(_audit_for_content(record, requested, actor=actor, now=now))
    changes["last_edited_by"] = actor
    changes["last_edited_at"] = now
    changes["last_activity_at"] = now
    return Delta(changes=changes, dropped=dropped)


def compute_assignment(
    record: QueryRecord,
    assignee: str,
    *,
    actor: str,
    now: datetime,
    remarks: str | None = None,
) -> Delta:
    """Assign (or reassign) a query; an unassigned query moves from A to B."""
    if not assignee.strip():
        raise WorkflowValidationError("Assignee is required", query_id=record.query_id)
    if record.bucket == Bucket.H:
        raise WorkflowValidationError(
            "Cannot assign a query in the delete workflow",
            query_id=record.query_id,
        )

    changes: dict[str, Any] = {
        "assigned_to": assignee,
        "assigned_by": actor,
        "assigned_at": now,
        "last_activity_at": now,
    }
    if record.bucket == Bucket.A:
        changes["bucket"] = Bucket.B
    if remarks is not None and remarks != record.remarks:
        changes["remarks"] = remarks
        changes["remark_added_by"] = actor
        changes["remark_added_at"] = now
    return Delta(changes=changes)


def new_record(
    query_id: str,
    partial: NewQuery,
    *,
    actor: str,
    now: datetime,
    temp_id: str | None = None,
) -> QueryRecord:
    """Complete record for an add. Assigned queries start in B, others in A."""
    assigned = bool(partial.assigned_to.strip())
    bucket = Bucket.B if assigned else Bucket(partial.bucket)
    if bucket == Bucket.B and not assigned:
        raise WorkflowValidationError("A query created in bucket B needs an assignee")

    remarks = partial.remarks if assigned else ""
    return QueryRecord(
        query_id=query_id,
        description=partial.description,
        query_type=partial.query_type or "New",
        bucket=bucket,
        added_by=actor,
        added_at=now,
        assigned_to=partial.assigned_to if assigned else "",
        assigned_by=actor if assigned else "",
        assigned_at=now if assigned else None,
        remarks=remarks,
        remark_added_by=actor if remarks else "",
        remark_added_at=now if remarks else None,
        last_edited_by=actor,
        last_edited_at=now,
        last_activity_at=now,
        is_pending=temp_id is not None,
        temp_id=temp_id,
    )


def server_side_changes(
    hints: PriorStateHints,
    changes: dict[str, Any],
    *,
    stored_bucket: Bucket | None = None,
) -> dict[str, Any]:
    """Change set as it lands on a row currently sitting in ``stored_bucket``.

    The client computed ``changes`` against its own view of the record, which
    can differ from the stored row when an earlier call on the same record
    failed. Direction is therefore taken from the stored bucket (the hint is
    only a fallback): a backward move gets its clear, and later-stage values
    for the resulting bucket are dropped. The engine replays pending actions
    through this same function when it rebases after a rollback.
    """
    current = stored_bucket or hints.bucket
    raw_target = changes.get("bucket")
    target = Bucket(raw_target) if raw_target is not None else current
    resolved = dict(changes)
    if is_backward(current, target):
        resolved.update(backward_clear(target))
    for name in fields_after(target):
        if name in resolved and resolved[name] != empty_value(name):
            del resolved[name]
    return resolved
