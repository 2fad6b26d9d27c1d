"""Error taxonomy for workflow validation and remote synchronization."""

from __future__ import annotations


class QueryTrackerError(Exception):
    """Base class for errors raised by this package."""


class WorkflowValidationError(QueryTrackerError):
    """Requested transition or edit is structurally invalid; nothing was mutated."""

    def __init__(self, message: str, *, query_id: str | None = None) -> None:
        super().__init__(message)
        self.query_id = query_id


class QueryNotFoundError(WorkflowValidationError):
    def __init__(self, query_id: str) -> None:
        super().__init__(f"Query {query_id} not found", query_id=query_id)


class GatewayError(QueryTrackerError):
    """Remote store call did not succeed."""


class RemoteRejection(GatewayError):
    """Remote store answered with a non-success result."""


class TransientFailure(GatewayError):
    """Network failure or timeout talking to the remote store."""


class SyncFailure(QueryTrackerError):
    """Optimistic mutation was rolled back after the remote call failed.

    Raised only after the snapshot is back to its pre-mutation state, so the
    caller can offer a retry against current state.
    """

    def __init__(self, operation: str, query_id: str | None, reason: str) -> None:
        super().__init__(f"{operation} failed for {query_id or 'batch'}: {reason}")
        self.operation = operation
        self.query_id = query_id
        self.reason = reason
        self.retryable = True


class NotificationNotFoundError(QueryTrackerError):
    def __init__(self, notification_id: str) -> None:
        super().__init__(f"Notification {notification_id} not found")
        self.notification_id = notification_id
