from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from query_tracker.app.engine import SyncEngine
from query_tracker.app.gateway import InMemoryRemoteGateway
from query_tracker.app.models import Bucket, PriorStateHints, QueryRecord
from query_tracker.app.settings import Settings
from query_tracker.main import create_app

T0 = datetime(2025, 1, 6, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; every call returns the same instant until advanced."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class BlockingReadGateway(InMemoryRemoteGateway):
    """Returns rows as they were when ``read_all`` started, once ``release`` is set."""

    def __init__(self, records: list[QueryRecord] | None = None, **kwargs: Any) -> None:
        super().__init__(records, **kwargs)
        self.release = asyncio.Event()
        self.read_started = asyncio.Event()

    async def read_all(self) -> list[QueryRecord]:
        self.calls.append(("read_all", None))
        stale = [QueryRecord.model_validate(raw) for raw in self._rows.values()]
        self.read_started.set()
        await self.release.wait()
        return stale


class HeldMutationGateway(InMemoryRemoteGateway):
    """Holds the first ``mutate_record`` call until ``release`` is set; later calls run at once."""

    def __init__(self, records: list[QueryRecord] | None = None, **kwargs: Any) -> None:
        super().__init__(records, **kwargs)
        self.release = asyncio.Event()
        self._holding = False

    async def mutate_record(self, query_id: str, changes: dict[str, Any], hints: PriorStateHints) -> None:
        if not self._holding:
            self._holding = True
            await self.release.wait()
        await super().mutate_record(query_id, changes, hints)


def build_record(query_id: str = "Q-1", **overrides: Any) -> QueryRecord:
    fields: dict[str, Any] = {
        "query_id": query_id,
        "description": "Quarterly venue shortlist",
        "query_type": "New",
        "bucket": Bucket.A,
        "added_by": "alice@example.com",
        "added_at": T0 - timedelta(days=3),
        "last_activity_at": T0 - timedelta(days=3),
    }
    fields.update(overrides)
    return QueryRecord.model_validate(fields)


def record_in_c(query_id: str = "Q-1", **overrides: Any) -> QueryRecord:
    fields: dict[str, Any] = {
        "bucket": Bucket.C,
        "assigned_to": "bob@example.com",
        "assigned_by": "alice@example.com",
        "assigned_at": T0 - timedelta(days=2),
        "remarks": "Client wants two options",
        "remark_added_by": "alice@example.com",
        "remark_added_at": T0 - timedelta(days=2),
        "proposal_sent_at": T0 - timedelta(days=1),
        "whats_pending": "Pricing sign-off",
    }
    fields.update(overrides)
    return build_record(query_id, **fields)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_record() -> Callable[..., QueryRecord]:
    return build_record


@pytest.fixture
def gateway() -> InMemoryRemoteGateway:
    return InMemoryRemoteGateway(
        [build_record("Q-1"), record_in_c("Q-2")],
        id_factory=(f"Q-{n}" for n in itertools.count(100)).__next__,
    )


@pytest.fixture
def engine_factory(clock: FakeClock) -> Callable[..., SyncEngine]:
    def factory(gateway: InMemoryRemoteGateway, **kwargs: Any) -> SyncEngine:
        counter = itertools.count(1)
        kwargs.setdefault("temp_id_factory", lambda: f"temp_{next(counter)}")
        return SyncEngine(gateway, clock=clock, **kwargs)

    return factory


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url="",
        cache_dir=tmp_path / "cache",
        start_background_refresh=False,
        history_days=30,
    )


@pytest.fixture
def client(
    gateway: InMemoryRemoteGateway,
    engine_factory: Callable[..., SyncEngine],
    settings: Settings,
) -> Iterator[TestClient]:
    engine = engine_factory(gateway)
    app = create_app(engine=engine, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def make_c_record() -> Callable[..., QueryRecord]:
    """Record in bucket C carrying assignment, remarks and proposal data."""
    return record_in_c


@pytest.fixture
def blocking_gateway() -> type[BlockingReadGateway]:
    return BlockingReadGateway


@pytest.fixture
def held_mutation_gateway() -> type[HeldMutationGateway]:
    return HeldMutationGateway
