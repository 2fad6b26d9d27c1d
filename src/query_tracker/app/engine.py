"""Optimistic synchronization engine.

The engine owns the in-memory snapshot and the pending action ledger. Every
mutation follows the same cycle:

1) compute the delta with the lifecycle rules and apply it locally,
2) register a pending action holding the pre-mutation record,
3) await the remote gateway,
4) confirm (drop the action, write the cache) or roll back (restore the
   pre-mutation record, re-apply later pending actions, raise SyncFailure).

Steps 1-2 and the confirm/rollback in step 4 never await, so on a single
event loop no other coroutine can observe or interleave with a half-applied
mutation.

Terms used in this file:
- Temp id: placeholder id of a record whose create call has not returned.
- Read mark: ledger settle sequence taken right before a remote read; the
  merge keeps local copies of records that settled after it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from . import deletion
from .cache import JsonFileSnapshotCache
from .errors import QueryNotFoundError, RemoteRejection, SyncFailure, WorkflowValidationError
from .gateway import RemoteGateway, encode_changes
from .ledger import BATCH_SCOPE, PendingActionLedger
from .lifecycle import (
    Delta,
    apply_changes,
    compute_assignment,
    compute_edit,
    compute_transition,
    new_record,
    prior_state_hints,
    server_side_changes,
)
from .models import Bucket, FieldDelta, MutationKind, NewQuery, QueryRecord, Snapshot

logger = logging.getLogger(__name__)

SnapshotObserver = Callable[[Snapshot], None]


def generate_temp_id() -> str:
    return f"temp_{uuid4().hex[:12]}"


@dataclass(frozen=True)
class PendingAdd:
    """Handle returned by an optimistic add before the remote store answers.

    ``temp_ids`` are visible in the snapshot right away. Awaiting the handle
    yields the server-assigned ids in the same order, or raises SyncFailure
    after the temp records were removed.
    """

    temp_ids: tuple[str, ...]
    task: asyncio.Task[list[str]]

    @property
    def temp_id(self) -> str:
        return self.temp_ids[0]

    def __await__(self) -> Any:
        return self.task.__await__()


class SyncEngine:
    """Single owner of the query snapshot and its pending action ledger."""

    def __init__(
        self,
        gateway: RemoteGateway,
        cache: JsonFileSnapshotCache | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        refresh_interval_s: float = 60.0,
        reject_fallback_bucket: Bucket | None = None,
        temp_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._gateway = gateway
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(UTC))
        self.refresh_interval_s = refresh_interval_s
        self.reject_fallback_bucket = reject_fallback_bucket
        self._temp_id_factory = temp_id_factory or generate_temp_id
        self._ledger = PendingActionLedger(clock=self._clock)
        # Insertion order is display order; unconfirmed adds sit at the front.
        self._records: dict[str, QueryRecord] = {}
        self._last_synced_at: datetime | None = None
        self._observers: list[SnapshotObserver] = []
        self._refreshing = False
        self._timer_task: asyncio.Task[None] | None = None
        self._seed_refresh_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def snapshot(self) -> Snapshot:
        return Snapshot(
            queries=tuple(self._records.values()),
            last_synced_at=self._last_synced_at,
            pending_count=len(self._ledger),
        )

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    @property
    def ledger(self) -> PendingActionLedger:
        return self._ledger

    def subscribe(self, callback: SnapshotObserver) -> Callable[[], None]:
        """Register ``callback`` for every snapshot change; returns the unsubscribe."""
        self._observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._observers:
                self._observers.remove(callback)

        return unsubscribe

    def _publish(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._observers):
            try:
                callback(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("sync event=observer_failed callback=%r", callback)

    def _persist(self) -> None:
        if self._cache is not None:
            self._cache.save(self._confirmed_snapshot())

    def _confirmed_snapshot(self) -> Snapshot:
        """Snapshot for the durable cache: open optimistic changes are left out.

        A record with open actions is written as the ``previous`` of its
        oldest action, which rebases keep equal to the last confirmed state.
        """
        queries = []
        for query_id, record in self._records.items():
            open_actions = self._ledger.actions_for(query_id)
            if open_actions and open_actions[0].previous is not None:
                record = open_actions[0].previous
            queries.append(record)
        return Snapshot(queries=tuple(queries), last_synced_at=self._last_synced_at, pending_count=0)

    # ------------------------------------------------------------------
    # Adds
    # ------------------------------------------------------------------

    def optimistic_add(self, partial: NewQuery, actor: str) -> PendingAdd:
        """Insert a temp record now and confirm it with the remote store in the background."""
        temp_id = self._temp_id_factory()
        record = new_record(temp_id, partial, actor=actor, now=self._clock(), temp_id=temp_id)
        return self._start_create("add", [record])

    def optimistic_batch_add(self, partials: list[NewQuery], actor: str) -> PendingAdd:
        """All-or-nothing add of several queries under one batch action."""
        if not partials:
            raise WorkflowValidationError("No queries provided")
        now = self._clock()
        records = []
        for partial in partials:
            temp_id = self._temp_id_factory()
            records.append(new_record(temp_id, partial, actor=actor, now=now, temp_id=temp_id))
        return self._start_create("batch", records)

    def _start_create(self, kind: MutationKind, records: list[QueryRecord]) -> PendingAdd:
        temp_ids = tuple(record.query_id for record in records)
        scope = temp_ids[0] if kind == "add" else BATCH_SCOPE
        action = self._ledger.register(kind, scope)
        self._records = {**{record.query_id: record for record in records}, **self._records}
        logger.info(
            "sync event=apply op=%s query_id=%s action_id=%s count=%s",
            kind,
            scope,
            action.action_id,
            len(records),
        )
        self._publish()
        task = asyncio.create_task(self._confirm_create(kind, action.action_id, records))
        return PendingAdd(temp_ids=temp_ids, task=task)

    async def _confirm_create(
        self,
        kind: MutationKind,
        action_id: str,
        records: list[QueryRecord],
    ) -> list[str]:
        payloads = []
        for record in records:
            fields = record.to_remote()
            fields.pop("query_id")
            payloads.append(fields)
        temp_ids = [record.query_id for record in records]

        try:
            if kind == "add":
                query_ids = [await self._gateway.create_record(payloads[0])]
            else:
                query_ids = await self._gateway.create_records(payloads)
            if len(query_ids) != len(records):
                raise RemoteRejection(f"expected {len(records)} ids, got {len(query_ids)}")
        except Exception as exc:  # noqa: BLE001
            for temp_id in temp_ids:
                self._records.pop(temp_id, None)
            self._ledger.discard(action_id)
            logger.warning(
                "sync event=rollback op=%s query_id=%s action_id=%s reason=%s",
                kind,
                temp_ids[0] if kind == "add" else BATCH_SCOPE,
                action_id,
                exc,
            )
            self._publish()
            raise SyncFailure(kind, temp_ids[0] if kind == "add" else None, str(exc)) from exc

        if self._ledger.confirm(action_id, query_ids=query_ids) is None:
            # Engine was shut down while the call was in flight.
            return query_ids
        renamed = dict(zip(temp_ids, query_ids))
        rebuilt: dict[str, QueryRecord] = {}
        for query_id, record in self._records.items():
            if query_id in renamed:
                confirmed_id = renamed[query_id]
                rebuilt[confirmed_id] = record.model_copy(
                    update={"query_id": confirmed_id, "temp_id": None, "is_pending": False}
                )
            else:
                rebuilt[query_id] = record
        self._records = rebuilt
        logger.info(
            "sync event=confirm op=%s action_id=%s query_ids=%s",
            kind,
            action_id,
            ",".join(query_ids),
        )
        self._publish()
        self._persist()
        return query_ids

    # ------------------------------------------------------------------
    # Record mutations
    # ------------------------------------------------------------------

    async def optimistic_transition(
        self,
        query_id: str,
        target: Bucket,
        delta: FieldDelta | None,
        actor: str,
    ) -> QueryRecord:
        return await self._mutate(
            "update_status",
            query_id,
            lambda record: compute_transition(record, target, delta, actor=actor, now=self._clock()),
        )

    async def optimistic_edit(self, query_id: str, delta: FieldDelta, actor: str) -> QueryRecord:
        return await self._mutate(
            "edit",
            query_id,
            lambda record: compute_edit(record, delta, actor=actor, now=self._clock()),
        )

    async def assign(
        self,
        query_id: str,
        assignee: str,
        actor: str,
        *,
        remarks: str | None = None,
    ) -> QueryRecord:
        return await self._mutate(
            "assign",
            query_id,
            lambda record: compute_assignment(
                record,
                assignee,
                actor=actor,
                now=self._clock(),
                remarks=remarks,
            ),
        )

    async def request_delete(self, query_id: str, requested_by: str, *, is_privileged: bool) -> QueryRecord:
        return await self._mutate(
            "delete",
            query_id,
            lambda record: deletion.request_delete(
                record,
                requested_by=requested_by,
                is_privileged=is_privileged,
                now=self._clock(),
            ),
        )

    async def approve_delete(self, query_id: str, approved_by: str) -> QueryRecord:
        return await self._mutate(
            "approve_delete",
            query_id,
            lambda record: deletion.approve_delete(record, approved_by=approved_by, now=self._clock()),
        )

    async def reject_delete(self, query_id: str, rejected_by: str) -> QueryRecord:
        return await self._mutate(
            "reject_delete",
            query_id,
            lambda record: deletion.reject_delete(
                record,
                rejected_by=rejected_by,
                now=self._clock(),
                fallback_bucket=self.reject_fallback_bucket,
            ),
        )

    def _require(self, query_id: str) -> QueryRecord:
        record = self._records.get(query_id)
        if record is None:
            raise QueryNotFoundError(query_id)
        if record.temp_id is not None:
            raise WorkflowValidationError("Query is still being created", query_id=query_id)
        return record

    async def _mutate(
        self,
        kind: MutationKind,
        query_id: str,
        compute: Callable[[QueryRecord], Delta],
    ) -> QueryRecord:
        """Apply locally, call the gateway, then confirm or roll back."""
        record = self._require(query_id)
        delta = compute(record)
        if delta.dropped:
            logger.info(
                "sync event=fields_dropped op=%s query_id=%s bucket=%s fields=%s",
                kind,
                query_id,
                delta.changes.get("bucket", record.bucket).value,
                ",".join(delta.dropped),
            )

        hints = prior_state_hints(record)
        action = self._ledger.register(kind, query_id, previous=record, changes=delta.changes)
        self._records[query_id] = apply_changes(record, {**delta.changes, "is_pending": True})
        logger.info(
            "sync event=apply op=%s query_id=%s action_id=%s backward=%s",
            kind,
            query_id,
            action.action_id,
            delta.backward,
        )
        self._publish()

        try:
            await self._gateway.mutate_record(query_id, encode_changes(delta.changes), hints)
        except Exception as exc:  # noqa: BLE001
            self._rollback(action.action_id)
            logger.warning(
                "sync event=rollback op=%s query_id=%s action_id=%s reason=%s",
                kind,
                query_id,
                action.action_id,
                exc,
            )
            self._publish()
            raise SyncFailure(kind, query_id, str(exc)) from exc

        if self._ledger.confirm(action.action_id) is not None:
            current = self._records.get(query_id)
            if current is not None and not self._ledger.actions_for(query_id):
                self._records[query_id] = current.model_copy(update={"is_pending": False})
            logger.info("sync event=confirm op=%s query_id=%s action_id=%s", kind, query_id, action.action_id)
            self._publish()
            self._persist()
        return self._records.get(query_id, record)

    def _rollback(self, action_id: str) -> None:
        """Restore the pre-mutation record and rebase later actions on it.

        Later change sets were computed against the failed optimistic state,
        so each is replayed the way the store will apply it to the restored
        row, backward clear included.
        """
        action = self._ledger.get(action_id)
        if action is None or action.previous is None:
            self._ledger.discard(action_id)
            return
        query_id = action.query_id
        later = self._ledger.actions_after(action_id, query_id)
        self._ledger.discard(action_id)

        restored = action.previous
        for pending in later:
            self._ledger.replace(pending.model_copy(update={"previous": restored}))
            rebased = server_side_changes(
                prior_state_hints(restored),
                pending.changes,
                stored_bucket=restored.bucket,
            )
            restored = apply_changes(restored, rebased)
        # Earlier actions on the same record may still be in flight.
        still_pending = bool(self._ledger.actions_for(query_id))
        self._records[query_id] = restored.model_copy(update={"is_pending": still_pending})

    # ------------------------------------------------------------------
    # Background reads
    # ------------------------------------------------------------------

    def merge_background_snapshot(
        self,
        remote_records: Iterable[QueryRecord],
        *,
        read_mark: int | None = None,
    ) -> Snapshot:
        """Fold a remote read into the snapshot without undoing local work.

        The ledger is consulted now, not when the read started: records with
        an open action, or that settled after ``read_mark``, keep their local
        copy. Unconfirmed adds stay at the front.
        """
        protected = self._ledger.pending_query_ids()
        if read_mark is not None:
            protected |= self._ledger.settled_since(read_mark)

        local_only: dict[str, QueryRecord] = {}
        for query_id, record in self._records.items():
            if record.temp_id is not None:
                local_only[query_id] = record

        merged: dict[str, QueryRecord] = {}
        for remote in remote_records:
            local = self._records.get(remote.query_id)
            if local is not None and remote.query_id in protected:
                logger.debug("sync event=merge_conflict_avoided query_id=%s", remote.query_id)
                merged[remote.query_id] = local
            else:
                merged[remote.query_id] = remote

        # Settled after the read started, so the read cannot contain it yet.
        kept: dict[str, QueryRecord] = {}
        for query_id in protected:
            record = self._records.get(query_id)
            if record is not None and query_id not in merged and query_id not in local_only:
                kept[query_id] = record

        self._records = {**local_only, **kept, **merged}
        self._last_synced_at = self._clock()
        self._ledger.forget_settled(self._ledger.mark())
        logger.info(
            "sync event=merged remote=%s local_only=%s protected=%s",
            len(merged),
            len(local_only),
            len(protected),
        )
        self._publish()
        self._persist()
        return self.snapshot()

    async def refresh(self) -> bool:
        """Read everything remotely and merge it; returns False when skipped.

        Only one refresh runs at a time. Gateway errors propagate and leave
        the snapshot untouched.
        """
        if self._refreshing:
            logger.debug("sync event=refresh_skipped reason=in_flight")
            return False
        self._refreshing = True
        try:
            read_mark = self._ledger.mark()
            remote_records = await self._gateway.read_all()
            self.merge_background_snapshot(remote_records, read_mark=read_mark)
        finally:
            self._refreshing = False
        return True

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except Exception as exc:  # noqa: BLE001
            logger.warning("sync event=refresh_failed reason=%s", exc)

    async def initialize(self) -> None:
        """Seed from a fresh cache entry, else wait for the first remote read."""
        cached = self._cache.load() if self._cache is not None else None
        if cached is not None:
            self._records = {record.query_id: record for record in cached.queries}
            self._last_synced_at = cached.last_synced_at
            logger.info("sync event=seeded source=cache count=%s", len(self._records))
            self._publish()
            self._seed_refresh_task = asyncio.create_task(self._refresh_quietly())
            return
        await self.refresh()
        logger.info("sync event=seeded source=remote count=%s", len(self._records))

    def start_background_refresh(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.create_task(self._refresh_loop())
        logger.info("sync event=timer_started interval_s=%s", self.refresh_interval_s)

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_s)
            await self._refresh_quietly()

    async def stop_background_refresh(self) -> None:
        for task in (self._timer_task, self._seed_refresh_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._timer_task = None
        self._seed_refresh_task = None

    async def shutdown(self) -> None:
        """Logout teardown: stop the timer, drop local state, clear the cache."""
        await self.stop_background_refresh()
        self._ledger.clear()
        self._records = {}
        self._last_synced_at = None
        if self._cache is not None:
            self._cache.clear()
        logger.info("sync event=shutdown")
        self._publish()
