"""Client-facing store: latest snapshot, one method per operation, notifications.

The store never computes state itself. It forwards every intent to the sync
engine, turns rollbacks into retryable notifications, and keeps the snapshot
the engine last published.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from .engine import SyncEngine
from .errors import GatewayError, NotificationNotFoundError, SyncFailure
from .models import (
    Bucket,
    FieldDelta,
    NewQuery,
    Notification,
    QueryRecord,
    Snapshot,
    StoreOperation,
    SyncResult,
)

logger = logging.getLogger(__name__)

SyncStatus = Literal["idle", "syncing", "error"]
RetryCall = Callable[[], Awaitable[SyncResult]]

FAILURE_MESSAGES: dict[str, str] = {
    "add": "Failed to add query",
    "batch": "Failed to add queries",
    "assign": "Failed to assign query",
    "update_status": "Failed to update status",
    "edit": "Failed to update query",
    "delete": "Failed to delete query",
    "approve_delete": "Failed to approve deletion",
    "reject_delete": "Failed to reject deletion",
    "refresh": "Refresh failed",
}


class ClientStore:
    def __init__(
        self,
        engine: SyncEngine,
        *,
        max_notifications: int = 50,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._engine = engine
        self._clock = clock or (lambda: datetime.now(UTC))
        self._max_notifications = max_notifications
        self._snapshot = engine.snapshot()
        self._notifications: OrderedDict[str, Notification] = OrderedDict()
        self._retries: dict[str, RetryCall] = {}
        self._sync_error: str | None = None
        self._unsubscribe = engine.subscribe(self._on_snapshot)

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def queries(self) -> tuple[QueryRecord, ...]:
        return self._snapshot.queries

    @property
    def last_synced_at(self) -> datetime | None:
        return self._snapshot.last_synced_at

    @property
    def pending_count(self) -> int:
        return self._snapshot.pending_count

    @property
    def sync_status(self) -> SyncStatus:
        if self._engine.is_refreshing or self._snapshot.pending_count:
            return "syncing"
        if self._sync_error is not None:
            return "error"
        return "idle"

    @property
    def sync_error(self) -> str | None:
        return self._sync_error

    def notifications(self) -> list[Notification]:
        return list(self._notifications.values())

    # ------------------------------------------------------------------
    # Operations. Validation errors propagate; rollbacks become results.
    # ------------------------------------------------------------------

    async def add_query(self, partial: NewQuery, actor: str) -> SyncResult:
        return await self._run(
            "add",
            None,
            lambda: self._engine.optimistic_add(partial, actor),
            "Query added",
        )

    async def add_queries(self, partials: list[NewQuery], actor: str) -> SyncResult:
        return await self._run(
            "batch",
            None,
            lambda: self._engine.optimistic_batch_add(partials, actor),
            f"{len(partials)} queries added",
        )

    async def assign_query(
        self,
        query_id: str,
        assignee: str,
        actor: str,
        *,
        remarks: str | None = None,
    ) -> SyncResult:
        return await self._run(
            "assign",
            query_id,
            lambda: self._engine.assign(query_id, assignee, actor, remarks=remarks),
            f"Query assigned to {assignee}",
        )

    async def update_status(
        self,
        query_id: str,
        target: Bucket,
        actor: str,
        delta: FieldDelta | None = None,
    ) -> SyncResult:
        return await self._run(
            "update_status",
            query_id,
            lambda: self._engine.optimistic_transition(query_id, target, delta, actor),
            f"Query moved to {target.label}",
        )

    async def edit_query(self, query_id: str, delta: FieldDelta, actor: str) -> SyncResult:
        return await self._run(
            "edit",
            query_id,
            lambda: self._engine.optimistic_edit(query_id, delta, actor),
            "Query updated",
        )

    async def delete_query(self, query_id: str, actor: str, *, is_privileged: bool) -> SyncResult:
        return await self._run(
            "delete",
            query_id,
            lambda: self._engine.request_delete(query_id, actor, is_privileged=is_privileged),
            "Query deleted" if is_privileged else "Deletion requested",
        )

    async def approve_delete(self, query_id: str, actor: str) -> SyncResult:
        return await self._run(
            "approve_delete",
            query_id,
            lambda: self._engine.approve_delete(query_id, actor),
            "Deletion approved",
        )

    async def reject_delete(self, query_id: str, actor: str) -> SyncResult:
        return await self._run(
            "reject_delete",
            query_id,
            lambda: self._engine.reject_delete(query_id, actor),
            "Deletion rejected",
        )

    async def refresh(self) -> SyncResult:
        try:
            ran = await self._engine.refresh()
        except GatewayError as exc:
            self._sync_error = str(exc)
            notification = self._notify("error", FAILURE_MESSAGES["refresh"], "refresh", None, retry=self.refresh)
            return SyncResult(
                success=False,
                operation="refresh",
                message=notification.message,
                error=str(exc),
                retryable=True,
                notification_id=notification.notification_id,
            )
        self._sync_error = None
        message = "Refreshed" if ran else "Refresh already in progress"
        return SyncResult(success=True, operation="refresh", message=message)

    async def retry(self, notification_id: str) -> SyncResult:
        """Re-run a failed operation against the current snapshot."""
        retry_call = self._retries.pop(notification_id, None)
        if retry_call is None:
            raise NotificationNotFoundError(notification_id)
        self._notifications.pop(notification_id, None)
        logger.info("store event=retry notification_id=%s", notification_id)
        return await retry_call()

    def dismiss(self, notification_id: str) -> None:
        if self._notifications.pop(notification_id, None) is None:
            raise NotificationNotFoundError(notification_id)
        self._retries.pop(notification_id, None)

    async def logout(self) -> None:
        await self._engine.shutdown()
        self._notifications.clear()
        self._retries.clear()
        self._sync_error = None

    def close(self) -> None:
        self._unsubscribe()

    async def _run(
        self,
        operation: StoreOperation,
        query_id: str | None,
        call: Callable[[], Awaitable[Any]],
        success_message: str,
    ) -> SyncResult:
        try:
            outcome = await call()
        except SyncFailure as exc:
            self._sync_error = exc.reason
            notification = self._notify(
                "error",
                f"{FAILURE_MESSAGES[operation]}: {exc.reason}",
                operation,
                query_id,
                retry=lambda: self._run(operation, query_id, call, success_message),
            )
            return SyncResult(
                success=False,
                operation=operation,
                query_id=query_id,
                message=notification.message,
                error=exc.reason,
                retryable=exc.retryable,
                notification_id=notification.notification_id,
            )

        self._sync_error = None
        if isinstance(outcome, QueryRecord):
            query_ids = [outcome.query_id]
        else:
            query_ids = list(outcome)
        self._notify("success", success_message, operation, query_ids[0] if query_ids else query_id)
        return SyncResult(
            success=True,
            operation=operation,
            query_id=query_ids[0] if query_ids else query_id,
            query_ids=query_ids,
            message=success_message,
        )

    def _notify(
        self,
        level: Literal["success", "error", "info"],
        message: str,
        operation: StoreOperation | None,
        query_id: str | None,
        *,
        retry: RetryCall | None = None,
    ) -> Notification:
        notification = Notification(
            notification_id=uuid4().hex[:12],
            level=level,
            message=message,
            operation=operation,
            query_id=query_id,
            retryable=retry is not None,
            created_at=self._clock(),
        )
        self._notifications[notification.notification_id] = notification
        if retry is not None:
            self._retries[notification.notification_id] = retry
        while len(self._notifications) > self._max_notifications:
            dropped_id, _ = self._notifications.popitem(last=False)
            self._retries.pop(dropped_id, None)
        return notification
