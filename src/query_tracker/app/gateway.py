"""Remote gateway contract and the in-memory store used by tests and local runs."""

from __future__ import annotations

import asyncio
import secrets
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from .errors import RemoteRejection, TransientFailure
from .lifecycle import server_side_changes
from .models import Bucket, PriorStateHints, QueryRecord


class RemoteGateway(Protocol):
    """Persistent record store the engine reads from and writes to.

    Every call either fully succeeds or raises a ``GatewayError``; there is
    no partial success. Calls are safe to retry with the same arguments.
    """

    async def create_record(self, fields: dict[str, Any]) -> str: ...

    async def create_records(self, batch: list[dict[str, Any]]) -> list[str]: ...

    async def mutate_record(
        self,
        query_id: str,
        changes: dict[str, Any],
        hints: PriorStateHints,
    ) -> None: ...

    async def read_all(self) -> list[QueryRecord]: ...


def generate_query_id() -> str:
    """Server-side id, for example ``Q-1718000000000-k3j9x2a``."""
    return f"Q-{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}"


def encode_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """JSON-safe copy of a change set (enums to values, datetimes to ISO)."""
    encoded: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            encoded[key] = value.isoformat()
        elif isinstance(value, Enum):
            encoded[key] = value.value
        else:
            encoded[key] = value
    return encoded


def apply_remote_mutation(
    stored: dict[str, Any],
    changes: dict[str, Any],
    hints: PriorStateHints,
) -> dict[str, Any]:
    """Stored row after a mutation, with the backward clear re-derived from the row."""
    stored_bucket = Bucket(stored["bucket"]) if stored.get("bucket") else None
    resolved = server_side_changes(hints, changes, stored_bucket=stored_bucket)
    merged = {**stored, **encode_changes(resolved)}
    return QueryRecord.model_validate(merged).to_remote()


class InMemoryRemoteGateway:
    """Dict-backed store mirroring ``PostgresRemoteGateway`` semantics.

    ``fail_next`` makes the next calls raise, ``latency_s`` delays each call
    so tests can interleave work while a call is in flight.
    """

    def __init__(
        self,
        records: list[QueryRecord] | None = None,
        *,
        latency_s: float = 0.0,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        for record in records or []:
            self._rows[record.query_id] = record.to_remote()
        self.latency_s = latency_s
        self._id_factory = id_factory or generate_query_id
        self.calls: list[tuple[str, str | None]] = []
        self._failures: list[type[Exception]] = []

    def fail_next(self, count: int = 1, *, transient: bool = False) -> None:
        self._failures.extend([TransientFailure if transient else RemoteRejection] * count)

    def seed(self, record: QueryRecord) -> None:
        self._rows[record.query_id] = record.to_remote()

    def row(self, query_id: str) -> QueryRecord | None:
        raw = self._rows.get(query_id)
        return QueryRecord.model_validate(raw) if raw is not None else None

    async def _enter(self, operation: str, query_id: str | None) -> None:
        self.calls.append((operation, query_id))
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)
        if self._failures:
            error_cls = self._failures.pop(0)
            raise error_cls(f"{operation} failed for {query_id or 'batch'}")

    async def create_record(self, fields: dict[str, Any]) -> str:
        await self._enter("create", None)
        query_id = self._id_factory()
        self._rows[query_id] = QueryRecord.model_validate({**fields, "query_id": query_id}).to_remote()
        return query_id

    async def create_records(self, batch: list[dict[str, Any]]) -> list[str]:
        await self._enter("create_batch", None)
        if not batch:
            raise RemoteRejection("No queries provided")
        created: dict[str, dict[str, Any]] = {}
        for fields in batch:
            query_id = self._id_factory()
            created[query_id] = QueryRecord.model_validate({**fields, "query_id": query_id}).to_remote()
        self._rows.update(created)
        return list(created)

    async def mutate_record(
        self,
        query_id: str,
        changes: dict[str, Any],
        hints: PriorStateHints,
    ) -> None:
        await self._enter("mutate", query_id)
        stored = self._rows.get(query_id)
        if stored is None:
            raise RemoteRejection(f"Query {query_id} not found")
        self._rows[query_id] = apply_remote_mutation(stored, changes, hints)

    async def read_all(self) -> list[QueryRecord]:
        await self._enter("read_all", None)
        return [QueryRecord.model_validate(raw) for raw in self._rows.values()]
