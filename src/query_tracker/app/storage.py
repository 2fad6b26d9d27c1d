"""PostgreSQL-backed remote store for query records.

Terms used in this file:
- Migration: creating/updating database tables before normal reads/writes.
- JSONB: PostgreSQL JSON type; each row keeps the full record document.
- Row factory: returns query rows as dict-like objects instead of tuples.
- to_thread: psycopg calls block, so they run on a worker thread while the
  event loop keeps serving other optimistic operations.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from .errors import GatewayError, RemoteRejection, TransientFailure
from .gateway import apply_remote_mutation, generate_query_id
from .models import PriorStateHints, QueryRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PostgresRemoteGateway:
    """Thread-safe PostgreSQL store implementing the remote gateway contract."""

    def __init__(self, database_url: str, *, timeout_s: float = 10.0) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        self.timeout_s = timeout_s
        # Lock guards DB operations done through this gateway instance.
        self._lock = threading.Lock()
        # Lazy import helper keeps error message clear if psycopg is missing.
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        """Create required table and indexes if they do not already exist."""
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS queries (
                    row_id BIGSERIAL PRIMARY KEY,
                    query_id TEXT UNIQUE NOT NULL,
                    bucket TEXT NOT NULL,
                    record_json JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queries_bucket
                ON queries(bucket)
                """)
            conn.commit()

    async def create_record(self, fields: dict[str, Any]) -> str:
        ids = await self._run("create", None, self._insert_rows, [fields])
        return ids[0]

    async def create_records(self, batch: list[dict[str, Any]]) -> list[str]:
        if not batch:
            raise RemoteRejection("No queries provided")
        return await self._run("create_batch", None, self._insert_rows, batch)

    async def mutate_record(
        self,
        query_id: str,
        changes: dict[str, Any],
        hints: PriorStateHints,
    ) -> None:
        await self._run("mutate", query_id, self._update_row, query_id, changes, hints)

    async def read_all(self) -> list[QueryRecord]:
        return await self._run("read_all", None, self._select_all)

    async def _run(
        self,
        operation: str,
        query_id: str | None,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run a blocking DB call off the event loop, mapping driver errors.

        On timeout the worker thread is not interrupted: it keeps the lock and
        may still commit after the caller has rolled back. Each connection
        sets ``statement_timeout`` so the server aborts a slow write instead;
        a write that slips through anyway is reconciled by the next refresh.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.timeout_s)
        except TimeoutError as exc:
            logger.warning(
                "gateway event=timeout backend=postgres op=%s query_id=%s timeout_s=%s",
                operation,
                query_id,
                self.timeout_s,
            )
            raise TransientFailure(f"{operation} timed out after {self.timeout_s:.2f}s") from exc
        except GatewayError:
            raise
        except self._psycopg.OperationalError as exc:
            logger.warning(
                "gateway event=unavailable backend=postgres op=%s query_id=%s reason=%s",
                operation,
                query_id,
                exc,
            )
            raise TransientFailure(f"{operation} failed: {exc}") from exc
        except self._psycopg.Error as exc:
            logger.warning(
                "gateway event=rejected backend=postgres op=%s query_id=%s reason=%s",
                operation,
                query_id,
                exc,
            )
            raise RemoteRejection(f"{operation} failed: {exc}") from exc

    def _insert_rows(self, batch: list[dict[str, Any]]) -> list[str]:
        """Insert all rows in one transaction; all or nothing."""
        now = datetime.now(tz=UTC)
        prepared: list[tuple[str, dict[str, Any]]] = []
        for fields in batch:
            query_id = generate_query_id()
            record = QueryRecord.model_validate({**fields, "query_id": query_id})
            prepared.append((query_id, record.to_remote()))

        with self._lock, self._connect() as conn:
            for query_id, document in prepared:
                conn.execute(
                    """
                    INSERT INTO queries (query_id, bucket, record_json, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (query_id, document["bucket"], self._json_wrapper(document), now, now),
                )
            conn.commit()
        return [query_id for query_id, _ in prepared]

    def _update_row(self, query_id: str, changes: dict[str, Any], hints: PriorStateHints) -> None:
        """Apply a change set under a row lock, re-deriving the backward clear."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT record_json FROM queries WHERE query_id = %s FOR UPDATE",
                (query_id,),
            ).fetchone()
            if row is None:
                conn.rollback()
                raise RemoteRejection(f"Query {query_id} not found")
            document = apply_remote_mutation(self._parse_json_object(row["record_json"]), changes, hints)
            conn.execute(
                """
                UPDATE queries
                SET bucket = %s,
                    record_json = %s,
                    updated_at = %s
                WHERE query_id = %s
                """,
                (document["bucket"], self._json_wrapper(document), datetime.now(tz=UTC), query_id),
            )
            conn.commit()

    def _select_all(self) -> list[QueryRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT query_id, record_json FROM queries ORDER BY row_id").fetchall()
        return [self._row_to_record(row) for row in rows]

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(
            self.database_url,
            row_factory=self._dict_row,
            connect_timeout=max(1, int(self.timeout_s)),
            options=f"-c statement_timeout={int(self.timeout_s * 1000)}",
        )

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """Parse JSON-like value into dict; fall back to empty dict."""
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @classmethod
    def _row_to_record(cls, row: Any) -> QueryRecord:
        """Map one DB row to the canonical QueryRecord model."""
        document = cls._parse_json_object(row["record_json"])
        document["query_id"] = str(row["query_id"])
        return QueryRecord.model_validate(document)
