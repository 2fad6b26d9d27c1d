"""Two-party soft-delete workflow living inside bucket H.

States:
- active: any bucket other than H (may still carry the rejection marker).
- delete_pending: in H, requested, not yet approved.
- delete_approved: in H with an approval stamp; terminal.
- delete_rejected: back in the previous bucket with the rejection marker.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from .errors import WorkflowValidationError
from .lifecycle import Delta, empty_value
from .models import Bucket, QueryRecord


class DeletionState(str, Enum):
    ACTIVE = "active"
    DELETE_PENDING = "delete_pending"
    DELETE_APPROVED = "delete_approved"
    DELETE_REJECTED = "delete_rejected"


def deletion_state(record: QueryRecord) -> DeletionState:
    if record.bucket == Bucket.H:
        if record.delete_approved_at is not None or record.delete_approved_by:
            return DeletionState.DELETE_APPROVED
        return DeletionState.DELETE_PENDING
    if record.delete_rejected:
        return DeletionState.DELETE_REJECTED
    return DeletionState.ACTIVE


def is_pending_deletion(record: QueryRecord) -> bool:
    return deletion_state(record) == DeletionState.DELETE_PENDING


def request_delete(
    record: QueryRecord,
    *,
    requested_by: str,
    is_privileged: bool,
    now: datetime,
) -> Delta:
    """Move a query into H; privileged requesters approve in the same step.

    A repeated request on a pending deletion overwrites the requester
    (last request wins) and keeps the bucket the query came from.
    """
    state = deletion_state(record)
    if state == DeletionState.DELETE_APPROVED:
        raise WorkflowValidationError("Query is already deleted", query_id=record.query_id)

    previous = record.previous_bucket if state == DeletionState.DELETE_PENDING else record.bucket
    changes: dict[str, Any] = {
        "bucket": Bucket.H,
        "previous_bucket": previous,
        "delete_requested_by": requested_by,
        "delete_requested_at": now,
        "delete_rejected": False,
        "delete_rejected_by": empty_value("delete_rejected_by"),
        "delete_rejected_at": empty_value("delete_rejected_at"),
        "last_activity_at": now,
    }
    if is_privileged:
        changes["delete_approved_by"] = requested_by
        changes["delete_approved_at"] = now
    return Delta(changes=changes)


def approve_delete(record: QueryRecord, *, approved_by: str, now: datetime) -> Delta:
    """Approve a pending deletion. The query stays in H for the audit trail."""
    if deletion_state(record) != DeletionState.DELETE_PENDING:
        raise WorkflowValidationError(
            "Only a query pending deletion can be approved",
            query_id=record.query_id,
        )
    return Delta(
        changes={
            "delete_approved_by": approved_by,
            "delete_approved_at": now,
            "last_activity_at": now,
        }
    )


def reject_delete(
    record: QueryRecord,
    *,
    rejected_by: str,
    now: datetime,
    fallback_bucket: Bucket | None = None,
) -> Delta:
    """Return a pending deletion to the bucket it came from, marking the rejection.

    Without a recorded previous bucket the call fails unless a fallback
    bucket is configured.
    """
    if deletion_state(record) != DeletionState.DELETE_PENDING:
        raise WorkflowValidationError(
            "Only a query pending deletion can be rejected",
            query_id=record.query_id,
        )
    restored = record.previous_bucket or fallback_bucket
    if restored is None or restored == Bucket.H:
        raise WorkflowValidationError(
            "Query has no previous bucket to restore",
            query_id=record.query_id,
        )
    return Delta(
        changes={
            "bucket": restored,
            "previous_bucket": None,
            "delete_requested_by": empty_value("delete_requested_by"),
            "delete_requested_at": empty_value("delete_requested_at"),
            "delete_rejected": True,
            "delete_rejected_by": rejected_by,
            "delete_rejected_at": now,
            "last_activity_at": now,
        }
    )
