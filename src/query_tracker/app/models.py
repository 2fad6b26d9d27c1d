"""Pydantic models shared by the lifecycle rules, sync engine, store, and API.

Terms used in this file:
- Bucket: one of the eight ordered workflow stages (A..H) a query sits in.
- Stage field: a field that only carries data once a query reached a stage.
- Audit field: a who/when field written by the engine, never by clients.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class Bucket(str, Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"
    G = "G"
    H = "H"

    @property
    def label(self) -> str:
        return BUCKET_LABELS[self]

    @property
    def rank(self) -> int:
        return BUCKET_ORDER.index(self)


BUCKET_ORDER: tuple[Bucket, ...] = tuple(Bucket)

BUCKET_LABELS: dict[Bucket, str] = {
    Bucket.A: "Pending (Unassigned)",
    Bucket.B: "Pending Proposal",
    Bucket.C: "Proposal Sent",
    Bucket.D: "Proposal Sent Partially",
    Bucket.E: "Partial Proposal + In SF",
    Bucket.F: "Full Proposal + In SF",
    Bucket.G: "Discarded",
    Bucket.H: "Deleted (Pending Approval)",
}

QUERY_TYPES: tuple[str, ...] = ("SEO Query", "New", "Ongoing", "On Hold")

MutationKind = Literal[
    "add",
    "batch",
    "assign",
    "update_status",
    "edit",
    "delete",
    "approve_delete",
    "reject_delete",
]

# Store-level operations: every mutation plus a manual refresh.
StoreOperation = MutationKind | Literal["refresh"]


class QueryRecord(BaseModel):
    """One tracked query. Frozen: every change produces a new instance."""

    model_config = ConfigDict(frozen=True)

    query_id: str
    description: str = ""
    query_type: str = "New"
    bucket: Bucket = Bucket.A

    added_by: str = ""
    added_at: datetime | None = None

    # Stage B: assignment and remarks.
    assigned_to: str = ""
    assigned_by: str = ""
    assigned_at: datetime | None = None
    remarks: str = ""
    remark_added_by: str = ""
    remark_added_at: datetime | None = None

    # Stages C/D: proposal.
    proposal_sent_at: datetime | None = None
    whats_pending: str = ""

    # Stages E/F: external reference entry.
    external_entered_at: datetime | None = None
    external_event_id: str = ""
    external_event_title: str = ""
    gm_indicator: bool = False

    # Stage G.
    discarded_at: datetime | None = None

    # Stage H: delete workflow.
    delete_requested_by: str = ""
    delete_requested_at: datetime | None = None
    previous_bucket: Bucket | None = None
    delete_approved_by: str = ""
    delete_approved_at: datetime | None = None

    # Rejection audit survives leaving H.
    delete_rejected: bool = False
    delete_rejected_by: str = ""
    delete_rejected_at: datetime | None = None

    last_edited_by: str = ""
    last_edited_at: datetime | None = None
    last_activity_at: datetime | None = None

    # Client-only flags, never sent to the remote store or the cache.
    is_pending: bool = Field(default=False, exclude=True)
    temp_id: str | None = Field(default=None, exclude=True)

    def to_remote(self) -> dict[str, Any]:
        """Serialize persisted fields only (client-only flags are excluded)."""
        return self.model_dump(mode="json")

    def to_client(self) -> dict[str, Any]:
        """Persisted fields plus the client-only sync flags."""
        return {**self.to_remote(), "is_pending": self.is_pending, "temp_id": self.temp_id}


# Every stage-bound field mapped to the earliest bucket it may carry data in.
STAGE_FIELDS: dict[str, Bucket] = {
    "assigned_to": Bucket.B,
    "assigned_by": Bucket.B,
    "assigned_at": Bucket.B,
    "remarks": Bucket.B,
    "remark_added_by": Bucket.B,
    "remark_added_at": Bucket.B,
    "proposal_sent_at": Bucket.C,
    "whats_pending": Bucket.C,
    "external_entered_at": Bucket.E,
    "external_event_id": Bucket.E,
    "external_event_title": Bucket.E,
    "gm_indicator": Bucket.E,
    "discarded_at": Bucket.G,
    "delete_requested_by": Bucket.H,
    "delete_requested_at": Bucket.H,
    "previous_bucket": Bucket.H,
    "delete_approved_by": Bucket.H,
    "delete_approved_at": Bucket.H,
}

DELETE_WORKFLOW_FIELDS: tuple[str, ...] = (
    "delete_requested_by",
    "delete_requested_at",
    "previous_bucket",
    "delete_approved_by",
    "delete_approved_at",
)

PROTECTED_FIELDS: frozenset[str] = frozenset(
    {
        "query_id",
        "bucket",
        "added_by",
        "added_at",
        "assigned_by",
        "assigned_at",
        "remark_added_by",
        "remark_added_at",
        "last_edited_by",
        "last_edited_at",
        "last_activity_at",
        "delete_requested_by",
        "delete_requested_at",
        "previous_bucket",
        "delete_approved_by",
        "delete_approved_at",
        "delete_rejected",
        "delete_rejected_by",
        "delete_rejected_at",
        "is_pending",
        "temp_id",
    }
)


class FieldDelta(BaseModel):
    """Client-editable content fields. Unknown and protected keys are dropped."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    description: str | None = None
    query_type: str | None = None
    assigned_to: str | None = None
    remarks: str | None = None
    proposal_sent_at: datetime | None = None
    whats_pending: str | None = None
    external_entered_at: datetime | None = None
    external_event_id: str | None = None
    external_event_title: str | None = None
    gm_indicator: bool | None = None
    discarded_at: datetime | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any] | None) -> FieldDelta:
        clean = {k: v for k, v in (payload or {}).items() if k not in PROTECTED_FIELDS}
        return cls.model_validate(clean)

    def changes(self) -> dict[str, Any]:
        """Only the fields the caller actually supplied."""
        return self.model_dump(exclude_unset=True)


class NewQuery(BaseModel):
    """Partial record supplied when adding a query."""

    model_config = ConfigDict(extra="ignore")

    description: str = Field(min_length=1)
    query_type: str = "New"
    bucket: Literal["A", "B"] = "A"
    assigned_to: str = ""
    remarks: str = ""


class PriorStateHints(BaseModel):
    """Pre-mutation context sent with a mutation so the store needs no read."""

    model_config = ConfigDict(frozen=True)

    bucket: Bucket
    remarks: str = ""
    assigned_to: str = ""
    previous_bucket: Bucket | None = None


class PendingAction(BaseModel):
    """Bookkeeping for one optimistic mutation that has not settled yet."""

    model_config = ConfigDict(frozen=True)

    action_id: str
    # Target record id, or "batch" for non-record-scoped operations.
    query_id: str
    kind: MutationKind
    created_at: datetime
    # Record as it was before this action applied; None for adds.
    previous: QueryRecord | None = None
    # Concrete field values this action wrote, used to re-apply on rebase.
    changes: dict[str, Any] = Field(default_factory=dict)


class Snapshot(BaseModel):
    """Immutable read view of every known record."""

    model_config = ConfigDict(frozen=True)

    queries: tuple[QueryRecord, ...] = ()
    last_synced_at: datetime | None = None
    pending_count: int = 0

    def get(self, query_id: str) -> QueryRecord | None:
        for record in self.queries:
            if record.query_id == query_id:
                return record
        return None


class SyncResult(BaseModel):
    """Outcome of one store operation after confirm or rollback."""

    success: bool
    operation: StoreOperation
    query_id: str | None = None
    query_ids: list[str] = Field(default_factory=list)
    message: str = ""
    error: str | None = None
    retryable: bool = False
    notification_id: str | None = None


class Notification(BaseModel):
    """User-facing message; failed mutations carry a retry handle."""

    notification_id: str
    level: Literal["success", "error", "info"]
    message: str
    operation: StoreOperation | None = None
    query_id: str | None = None
    retryable: bool = False
    created_at: datetime


class BatchAddRequest(BaseModel):
    queries: list[NewQuery] = Field(min_length=1)


class AssignRequest(BaseModel):
    assignee: str = Field(min_length=1)
    remarks: str | None = None


class StatusChangeRequest(BaseModel):
    bucket: Bucket
    # Optional field edits applied together with the move (admin edit).
    fields: dict[str, Any] | None = None


class QueryListResponse(BaseModel):
    queries: list[dict[str, Any]]
    last_synced_at: datetime | None = None
    pending_count: int = 0


class SyncStatusResponse(BaseModel):
    status: Literal["idle", "syncing", "error"]
    pending_count: int
    last_synced_at: datetime | None = None
    error: str | None = None
