"""FastAPI application wiring for the query tracker service.

Terms used in this file:
- Lifespan: startup/shutdown hook; seeds the engine and runs the refresh timer.
- app.state: shared runtime objects (settings, engine, store) for route handlers.
- Actor: caller identity taken from request headers. Authentication happens
  upstream; this service only consumes the identity and role.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .app.cache import JsonFileSnapshotCache
from .app.engine import SyncEngine
from .app.errors import (
    GatewayError,
    NotificationNotFoundError,
    QueryNotFoundError,
    WorkflowValidationError,
)
from .app.gateway import InMemoryRemoteGateway, RemoteGateway
from .app.models import (
    AssignRequest,
    BatchAddRequest,
    Bucket,
    FieldDelta,
    NewQuery,
    Notification,
    QueryListResponse,
    StatusChangeRequest,
    SyncResult,
    SyncStatusResponse,
)
from .app.settings import Settings, get_settings
from .app.storage import PostgresRemoteGateway
from .app.store import ClientStore
from .app.views import calculate_stats, group_by_bucket, pending_deletions

logger = logging.getLogger(__name__)

PRIVILEGED_ROLES = frozenset({"admin", "pseudo admin"})


@dataclass(frozen=True)
class Actor:
    email: str
    role: str

    @property
    def is_privileged(self) -> bool:
        return self.role.strip().lower() in PRIVILEGED_ROLES


def current_actor(
    x_user_email: str = Header(default=""),
    x_user_role: str = Header(default="junior"),
) -> Actor:
    if not x_user_email.strip():
        raise HTTPException(status_code=401, detail="X-User-Email header is required")
    return Actor(email=x_user_email.strip(), role=x_user_role)


def build_gateway(settings: Settings) -> RemoteGateway:
    """Postgres when a database URL is configured, in-memory otherwise."""
    if not settings.database_url:
        logger.warning("gateway event=in_memory reason=database_url_unset")
        return InMemoryRemoteGateway()
    gateway = PostgresRemoteGateway(settings.database_url, timeout_s=settings.gateway_timeout_s)
    gateway.migrate()
    return gateway


def build_engine(settings: Settings) -> SyncEngine:
    cache = JsonFileSnapshotCache(settings.cache_dir, ttl_s=settings.cache_ttl_s)
    return SyncEngine(
        build_gateway(settings),
        cache,
        refresh_interval_s=settings.refresh_interval_s,
        reject_fallback_bucket=settings.reject_fallback_bucket,
    )


def create_app(
    engine: SyncEngine | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    """Application factory.

    Tests pass their own engine (usually over an in-memory gateway) and
    settings; production builds both from the environment.
    """
    settings = settings_override or get_settings()
    engine = engine or build_engine(settings)
    store = ClientStore(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await engine.initialize()
        except GatewayError as exc:
            # Start with an empty snapshot; the timer keeps retrying the read.
            logger.warning("app event=initialize_failed reason=%s", exc)
        if settings.start_background_refresh:
            engine.start_background_refresh()
        yield
        await engine.stop_background_refresh()
        store.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store

    @app.exception_handler(QueryNotFoundError)
    async def query_not_found(_: Request, exc: QueryNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "query_id": exc.query_id})

    @app.exception_handler(WorkflowValidationError)
    async def workflow_invalid(_: Request, exc: WorkflowValidationError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "query_id": exc.query_id})

    @app.exception_handler(NotificationNotFoundError)
    async def notification_not_found(_: Request, exc: NotificationNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/queries", response_model=QueryListResponse)
    def list_queries() -> QueryListResponse:
        snapshot = app.state.store.snapshot
        return QueryListResponse(
            queries=[record.to_client() for record in snapshot.queries],
            last_synced_at=snapshot.last_synced_at,
            pending_count=snapshot.pending_count,
        )

    @app.get("/queries/buckets")
    def list_buckets(history_days: int | None = Query(default=None, ge=1)) -> dict[str, Any]:
        records = app.state.store.queries
        days = app.state.settings.history_days if history_days is None else history_days
        grouped = group_by_bucket(records, days)
        return {
            "buckets": {
                bucket.value: [{**entry.record.to_client(), "ghost": entry.ghost} for entry in entries]
                for bucket, entries in grouped.items()
            },
            "labels": {bucket.value: bucket.label for bucket in Bucket},
            "stats": calculate_stats(records),
            "pending_deletions": [record.query_id for record in pending_deletions(records)],
        }

    @app.get("/sync/status", response_model=SyncStatusResponse)
    def sync_status() -> SyncStatusResponse:
        store: ClientStore = app.state.store
        return SyncStatusResponse(
            status=store.sync_status,
            pending_count=store.pending_count,
            last_synced_at=store.last_synced_at,
            error=store.sync_error,
        )

    @app.post("/sync/refresh", response_model=SyncResult)
    async def refresh() -> SyncResult:
        return _raise_on_failure(await app.state.store.refresh())

    @app.post("/queries", response_model=SyncResult, status_code=201)
    async def add_query(payload: NewQuery, actor: Actor = Depends(current_actor)) -> SyncResult:
        return _raise_on_failure(await app.state.store.add_query(payload, actor.email))

    @app.post("/queries/batch", response_model=SyncResult, status_code=201)
    async def add_queries(payload: BatchAddRequest, actor: Actor = Depends(current_actor)) -> SyncResult:
        return _raise_on_failure(await app.state.store.add_queries(payload.queries, actor.email))

    @app.post("/queries/{query_id}/assign", response_model=SyncResult)
    async def assign_query(
        query_id: str,
        payload: AssignRequest,
        actor: Actor = Depends(current_actor),
    ) -> SyncResult:
        result = await app.state.store.assign_query(
            query_id,
            payload.assignee,
            actor.email,
            remarks=payload.remarks,
        )
        return _raise_on_failure(result)

    @app.post("/queries/{query_id}/status", response_model=SyncResult)
    async def change_status(
        query_id: str,
        payload: StatusChangeRequest,
        actor: Actor = Depends(current_actor),
    ) -> SyncResult:
        delta = FieldDelta.from_payload(payload.fields) if payload.fields else None
        result = await app.state.store.update_status(query_id, payload.bucket, actor.email, delta)
        return _raise_on_failure(result)

    @app.patch("/queries/{query_id}", response_model=SyncResult)
    async def edit_query(
        query_id: str,
        payload: dict[str, Any],
        actor: Actor = Depends(current_actor),
    ) -> SyncResult:
        delta = FieldDelta.from_payload(payload)
        return _raise_on_failure(await app.state.store.edit_query(query_id, delta, actor.email))

    @app.post("/queries/{query_id}/delete", response_model=SyncResult)
    async def delete_query(query_id: str, actor: Actor = Depends(current_actor)) -> SyncResult:
        result = await app.state.store.delete_query(
            query_id,
            actor.email,
            is_privileged=actor.is_privileged,
        )
        return _raise_on_failure(result)

    @app.post("/queries/{query_id}/approve-delete", response_model=SyncResult)
    async def approve_delete(query_id: str, actor: Actor = Depends(current_actor)) -> SyncResult:
        _require_privileged(actor)
        return _raise_on_failure(await app.state.store.approve_delete(query_id, actor.email))

    @app.post("/queries/{query_id}/reject-delete", response_model=SyncResult)
    async def reject_delete(query_id: str, actor: Actor = Depends(current_actor)) -> SyncResult:
        _require_privileged(actor)
        return _raise_on_failure(await app.state.store.reject_delete(query_id, actor.email))

    @app.get("/notifications", response_model=list[Notification])
    def list_notifications() -> list[Notification]:
        return app.state.store.notifications()

    @app.post("/notifications/{notification_id}/retry", response_model=SyncResult)
    async def retry_notification(notification_id: str) -> SyncResult:
        return _raise_on_failure(await app.state.store.retry(notification_id))

    @app.delete("/notifications/{notification_id}", status_code=204)
    def dismiss_notification(notification_id: str) -> None:
        app.state.store.dismiss(notification_id)

    @app.post("/session/logout", status_code=204)
    async def logout() -> None:
        await app.state.store.logout()

    return app


def _require_privileged(actor: Actor) -> None:
    if not actor.is_privileged:
        raise HTTPException(status_code=403, detail="Only admins can approve or reject deletions")


def _raise_on_failure(result: SyncResult) -> SyncResult:
    """Rolled-back operations answer 502 with the retry notification id."""
    if result.success:
        return result
    raise HTTPException(
        status_code=502,
        detail={
            "message": result.message,
            "error": result.error,
            "operation": result.operation,
            "query_id": result.query_id,
            "retryable": result.retryable,
            "notification_id": result.notification_id,
        },
    )


app = create_app()
