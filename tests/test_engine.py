from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from query_tracker.app.cache import JsonFileSnapshotCache
from query_tracker.app.engine import SyncEngine
from query_tracker.app.errors import QueryNotFoundError, SyncFailure, TransientFailure, WorkflowValidationError
from query_tracker.app.gateway import InMemoryRemoteGateway
from query_tracker.app.lifecycle import forward_leaks
from query_tracker.app.models import Bucket, FieldDelta, NewQuery, QueryRecord, Snapshot

ACTOR = "carol@example.com"


def _seeded(engine: SyncEngine) -> SyncEngine:
    asyncio.run(engine.refresh())
    return engine


def test_add_swaps_temp_id_for_server_id(engine_factory: Callable[..., SyncEngine]) -> None:
    gateway = InMemoryRemoteGateway(id_factory=lambda: "Q-42")
    engine = engine_factory(gateway)

    async def scenario() -> list[str]:
        pending = engine.optimistic_add(NewQuery(description="Gala dinner"), ACTOR)
        assert pending.temp_id == "temp_1"
        optimistic = engine.snapshot().get("temp_1")
        assert optimistic is not None and optimistic.is_pending
        assert engine.snapshot().pending_count == 1
        return await pending

    assert asyncio.run(scenario()) == ["Q-42"]

    ids = [record.query_id for record in engine.snapshot().queries]
    assert ids.count("Q-42") == 1
    assert "temp_1" not in ids
    confirmed = engine.snapshot().get("Q-42")
    assert confirmed.temp_id is None
    assert confirmed.is_pending is False
    assert engine.snapshot().pending_count == 0
    assert gateway.row("Q-42").description == "Gala dinner"


def test_failed_add_removes_temp_record(engine_factory: Callable[..., SyncEngine]) -> None:
    gateway = InMemoryRemoteGateway()
    gateway.fail_next(transient=True)
    engine = engine_factory(gateway)

    async def scenario() -> None:
        pending = engine.optimistic_add(NewQuery(description="Gala dinner"), ACTOR)
        with pytest.raises(SyncFailure) as excinfo:
            await pending
        assert excinfo.value.operation == "add"
        assert excinfo.value.retryable is True

    asyncio.run(scenario())

    assert engine.snapshot().queries == ()
    assert len(engine.ledger) == 0


def test_batch_add_is_all_or_nothing(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))
    partials = [NewQuery(description="Kickoff"), NewQuery(description="Wrap party", assigned_to="bob@example.com")]

    async def confirmed() -> list[str]:
        return await engine.optimistic_batch_add(partials, ACTOR)

    ids = asyncio.run(confirmed())
    assert ids == ["Q-100", "Q-101"]
    assert engine.snapshot().get("Q-101").bucket == Bucket.B

    gateway.fail_next()

    async def rejected() -> None:
        pending = engine.optimistic_batch_add(partials, ACTOR)
        assert len(engine.snapshot().queries) == 6
        with pytest.raises(SyncFailure):
            await pending

    asyncio.run(rejected())
    assert len(engine.snapshot().queries) == 4
    assert all(record.temp_id is None for record in engine.snapshot().queries)

    with pytest.raises(WorkflowValidationError):
        engine.optimistic_batch_add([], ACTOR)


@pytest.mark.parametrize(
    "operation",
    [
        lambda engine: engine.optimistic_transition("Q-2", Bucket.A, None, ACTOR),
        lambda engine: engine.optimistic_transition("Q-2", Bucket.E, FieldDelta(external_event_id="EV-1"), ACTOR),
        lambda engine: engine.optimistic_edit("Q-2", FieldDelta(remarks="Changed"), ACTOR),
        lambda engine: engine.assign("Q-2", "dan@example.com", ACTOR),
        lambda engine: engine.request_delete("Q-2", ACTOR, is_privileged=False),
    ],
)
def test_failed_mutation_restores_exact_record(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
    operation: Callable[[SyncEngine], object],
) -> None:
    engine = _seeded(engine_factory(gateway))
    before = engine.snapshot().get("Q-2")
    stored_before = gateway.row("Q-2")
    gateway.fail_next()

    async def scenario() -> None:
        with pytest.raises(SyncFailure):
            await operation(engine)

    asyncio.run(scenario())

    after = engine.snapshot().get("Q-2")
    assert after == before
    assert after.to_remote() == before.to_remote()
    assert gateway.row("Q-2") == stored_before
    assert len(engine.ledger) == 0


def test_two_failed_assigns_restore_original_assignee(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
) -> None:
    original = make_record("Q-1", bucket=Bucket.B, assigned_to="bob@example.com", assigned_by="alice@example.com")
    gateway = InMemoryRemoteGateway([original], latency_s=0.01)
    engine = _seeded(engine_factory(gateway))
    gateway.fail_next(2)

    async def scenario() -> list[object]:
        return await asyncio.gather(
            engine.assign("Q-1", "dan@example.com", ACTOR),
            engine.assign("Q-1", "erin@example.com", ACTOR),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())

    assert all(isinstance(result, SyncFailure) for result in results)
    record = engine.snapshot().get("Q-1")
    assert record.assigned_to == "bob@example.com"
    assert record.assigned_by == "alice@example.com"
    assert record == original
    assert len(engine.ledger) == 0


def test_rollback_keeps_later_pending_change(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
) -> None:
    gateway = InMemoryRemoteGateway([make_record("Q-1")], latency_s=0.01)
    engine = _seeded(engine_factory(gateway))
    gateway.fail_next(1)

    async def scenario() -> list[object]:
        return await asyncio.gather(
            engine.optimistic_edit("Q-1", FieldDelta(description="First edit"), ACTOR),
            engine.optimistic_edit("Q-1", FieldDelta(query_type="Ongoing"), ACTOR),
            return_exceptions=True,
        )

    first, second = asyncio.run(scenario())

    assert isinstance(first, SyncFailure)
    assert isinstance(second, QueryRecord)
    record = engine.snapshot().get("Q-1")
    assert record.description == "Quarterly venue shortlist"
    assert record.query_type == "Ongoing"
    assert record.is_pending is False
    assert gateway.row("Q-1").query_type == "Ongoing"


def test_failed_backward_move_rebases_later_transition(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))
    gateway.latency_s = 0.01
    gateway.fail_next(1)

    async def scenario() -> list[object]:
        # The move to B is computed against the optimistic A state.
        return await asyncio.gather(
            engine.optimistic_transition("Q-2", Bucket.A, None, ACTOR),
            engine.optimistic_transition("Q-2", Bucket.B, None, ACTOR),
            return_exceptions=True,
        )

    to_a, to_b = asyncio.run(scenario())

    assert isinstance(to_a, SyncFailure)
    assert isinstance(to_b, QueryRecord)
    local = engine.snapshot().get("Q-2")
    stored = gateway.row("Q-2")
    assert local.bucket == Bucket.B
    assert stored.bucket == Bucket.B
    assert forward_leaks(local) == []
    assert forward_leaks(stored) == []
    assert local.proposal_sent_at is None
    assert local.whats_pending == ""
    assert local.assigned_to == "bob@example.com"
    assert local.is_pending is False
    assert stored == local


def test_failed_later_edit_leaves_record_pending_while_earlier_is_in_flight(
    engine_factory: Callable[..., SyncEngine],
    held_mutation_gateway: type[InMemoryRemoteGateway],
    make_record: Callable[..., QueryRecord],
) -> None:
    gateway = held_mutation_gateway([make_record("Q-1")])
    engine = _seeded(engine_factory(gateway))

    async def scenario() -> None:
        slow = asyncio.create_task(engine.optimistic_edit("Q-1", FieldDelta(description="Slow edit"), ACTOR))
        await asyncio.sleep(0)
        gateway.fail_next()
        with pytest.raises(SyncFailure):
            await engine.optimistic_edit("Q-1", FieldDelta(query_type="Ongoing"), ACTOR)

        record = engine.snapshot().get("Q-1")
        assert len(engine.ledger) == 1
        assert record.is_pending is True
        assert record.description == "Slow edit"
        assert record.query_type == "New"

        gateway.release.set()
        await slow

    asyncio.run(scenario())

    record = engine.snapshot().get("Q-1")
    assert record.is_pending is False
    assert record.description == "Slow edit"
    assert len(engine.ledger) == 0
    assert gateway.row("Q-1") == record


def test_validation_error_never_reaches_gateway(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))
    before = engine.snapshot()

    async def scenario() -> None:
        with pytest.raises(WorkflowValidationError):
            await engine.approve_delete("Q-1", ACTOR)
        with pytest.raises(WorkflowValidationError):
            await engine.optimistic_transition("Q-1", Bucket.H, None, ACTOR)
        with pytest.raises(QueryNotFoundError):
            await engine.optimistic_edit("Q-404", FieldDelta(description="x"), ACTOR)

    asyncio.run(scenario())

    assert engine.snapshot() == before
    assert [call for call in gateway.calls if call[0] == "mutate"] == []


def test_mutating_unconfirmed_record_is_refused(engine_factory: Callable[..., SyncEngine]) -> None:
    engine = engine_factory(InMemoryRemoteGateway(latency_s=0.01))

    async def scenario() -> None:
        pending = engine.optimistic_add(NewQuery(description="Gala dinner"), ACTOR)
        with pytest.raises(WorkflowValidationError, match="still being created"):
            await engine.optimistic_edit(pending.temp_id, FieldDelta(description="x"), ACTOR)
        await pending

    asyncio.run(scenario())


def test_delete_request_and_rejection_through_engine(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))

    async def scenario() -> None:
        pending = await engine.request_delete("Q-2", "bob@example.com", is_privileged=False)
        assert pending.bucket == Bucket.H
        assert pending.previous_bucket == Bucket.C
        restored = await engine.reject_delete("Q-2", "admin@example.com")
        assert restored.bucket == Bucket.C
        assert restored.delete_rejected is True

    asyncio.run(scenario())

    stored = gateway.row("Q-2")
    assert stored.bucket == Bucket.C
    assert stored.previous_bucket is None
    assert stored.delete_rejected is True


def test_reject_uses_configured_fallback(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
) -> None:
    orphan = make_record("Q-1", bucket=Bucket.H, delete_requested_by="bob@example.com")
    engine = _seeded(engine_factory(InMemoryRemoteGateway([orphan]), reject_fallback_bucket=Bucket.A))

    restored = asyncio.run(engine.reject_delete("Q-1", "admin@example.com"))

    assert restored.bucket == Bucket.A


def test_backward_move_is_cleared_on_the_store_too(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))

    local = asyncio.run(engine.optimistic_transition("Q-2", Bucket.A, None, ACTOR))

    stored = gateway.row("Q-2")
    assert stored == local.model_copy(update={"is_pending": False})
    assert stored.assigned_to == ""
    assert stored.proposal_sent_at is None


def test_merge_keeps_records_with_open_actions(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
    make_c_record: Callable[..., QueryRecord],
) -> None:
    gateway = InMemoryRemoteGateway([make_record("Q-1"), make_c_record("Q-2")], latency_s=0.01)
    engine = _seeded(engine_factory(gateway))

    async def scenario() -> None:
        edit = asyncio.create_task(engine.optimistic_edit("Q-1", FieldDelta(description="Local edit"), ACTOR))
        await asyncio.sleep(0)
        engine.merge_background_snapshot(
            [make_record("Q-1"), make_c_record("Q-2", description="Changed elsewhere")]
        )
        assert engine.snapshot().get("Q-1").description == "Local edit"
        assert engine.snapshot().get("Q-1").is_pending is True
        assert engine.snapshot().get("Q-2").description == "Changed elsewhere"
        await edit

    asyncio.run(scenario())
    assert engine.snapshot().last_synced_at is not None


def test_merge_keeps_unconfirmed_adds_first(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
) -> None:
    gateway = InMemoryRemoteGateway([make_record("Q-1")], latency_s=0.01)
    engine = _seeded(engine_factory(gateway))

    async def scenario() -> None:
        pending = engine.optimistic_add(NewQuery(description="Fresh"), ACTOR)
        engine.merge_background_snapshot([make_record("Q-1"), make_record("Q-3")])
        ids = [record.query_id for record in engine.snapshot().queries]
        assert ids == [pending.temp_id, "Q-1", "Q-3"]
        await pending

    asyncio.run(scenario())


def test_merge_keeps_work_that_settled_during_the_read(
    engine_factory: Callable[..., SyncEngine],
    blocking_gateway: type[InMemoryRemoteGateway],
    make_record: Callable[..., QueryRecord],
) -> None:
    gateway = blocking_gateway([make_record("Q-1")], id_factory=lambda: "Q-77")
    engine = engine_factory(gateway)
    engine.merge_background_snapshot([make_record("Q-1")])

    async def scenario() -> None:
        refresh = asyncio.create_task(engine.refresh())
        await gateway.read_started.wait()
        await engine.optimistic_edit("Q-1", FieldDelta(description="Edited mid-read"), ACTOR)
        await engine.optimistic_add(NewQuery(description="Added mid-read"), ACTOR)
        gateway.release.set()
        assert await refresh is True

    asyncio.run(scenario())

    snapshot = engine.snapshot()
    assert snapshot.get("Q-1").description == "Edited mid-read"
    assert snapshot.get("Q-77").description == "Added mid-read"


def test_only_one_refresh_in_flight(
    engine_factory: Callable[..., SyncEngine],
    blocking_gateway: type[InMemoryRemoteGateway],
) -> None:
    gateway = blocking_gateway()
    engine = engine_factory(gateway)

    async def scenario() -> None:
        first = asyncio.create_task(engine.refresh())
        await gateway.read_started.wait()
        assert engine.is_refreshing is True
        assert await engine.refresh() is False
        gateway.release.set()
        assert await first is True
        assert engine.is_refreshing is False

    asyncio.run(scenario())
    assert [call for call in gateway.calls if call[0] == "read_all"] == [("read_all", None)]


def test_failed_refresh_leaves_snapshot_untouched(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))
    before = engine.snapshot()
    gateway.fail_next(transient=True)

    with pytest.raises(TransientFailure, match="read_all failed"):
        asyncio.run(engine.refresh())

    assert engine.snapshot() == before
    assert engine.is_refreshing is False


def test_observers_receive_snapshots_until_unsubscribed(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = _seeded(engine_factory(gateway))
    seen: list[Snapshot] = []
    unsubscribe = engine.subscribe(seen.append)

    asyncio.run(engine.optimistic_edit("Q-1", FieldDelta(description="Observed"), ACTOR))

    assert [snapshot.pending_count for snapshot in seen] == [1, 0]
    assert seen[-1].get("Q-1").description == "Observed"

    unsubscribe()
    asyncio.run(engine.optimistic_edit("Q-1", FieldDelta(description="Unobserved"), ACTOR))
    assert len(seen) == 2


def test_initialize_seeds_from_fresh_cache_then_refreshes(
    engine_factory: Callable[..., SyncEngine],
    make_record: Callable[..., QueryRecord],
    tmp_path: Path,
    clock,
) -> None:
    cache = JsonFileSnapshotCache(tmp_path, clock=clock)
    cache.save(Snapshot(queries=(make_record("Q-9"),), last_synced_at=clock()))
    gateway = InMemoryRemoteGateway([make_record("Q-1")])
    engine = engine_factory(gateway, cache=cache)

    async def scenario() -> None:
        await engine.initialize()
        assert [record.query_id for record in engine.snapshot().queries] == ["Q-9"]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await engine.stop_background_refresh()

    asyncio.run(scenario())
    assert [record.query_id for record in engine.snapshot().queries] == ["Q-1"]


def test_initialize_without_cache_waits_for_remote(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
    tmp_path: Path,
    clock,
) -> None:
    engine = engine_factory(gateway, cache=JsonFileSnapshotCache(tmp_path, clock=clock))

    asyncio.run(engine.initialize())

    assert [record.query_id for record in engine.snapshot().queries] == ["Q-1", "Q-2"]


def test_confirmed_mutation_is_cached_and_shutdown_clears_it(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
    tmp_path: Path,
    clock,
) -> None:
    cache = JsonFileSnapshotCache(tmp_path, clock=clock)
    engine = _seeded(engine_factory(gateway, cache=cache))

    asyncio.run(engine.optimistic_edit("Q-1", FieldDelta(description="Cached"), ACTOR))
    cached = cache.load()
    assert cached is not None
    assert cached.get("Q-1").description == "Cached"

    asyncio.run(engine.shutdown())
    assert cache.load() is None
    assert engine.snapshot().queries == ()
    assert len(engine.ledger) == 0


def test_cache_leaves_out_changes_still_in_flight(
    engine_factory: Callable[..., SyncEngine],
    held_mutation_gateway: type[InMemoryRemoteGateway],
    make_record: Callable[..., QueryRecord],
    tmp_path: Path,
    clock,
) -> None:
    gateway = held_mutation_gateway([make_record("Q-1"), make_record("Q-2")])
    cache = JsonFileSnapshotCache(tmp_path, clock=clock)
    engine = _seeded(engine_factory(gateway, cache=cache))

    async def scenario() -> None:
        held = asyncio.create_task(engine.optimistic_edit("Q-1", FieldDelta(description="Unconfirmed"), ACTOR))
        await asyncio.sleep(0)
        await engine.optimistic_edit("Q-2", FieldDelta(description="Confirmed"), ACTOR)

        cached = cache.load()
        assert cached is not None
        assert cached.get("Q-1").description == "Quarterly venue shortlist"
        assert cached.get("Q-2").description == "Confirmed"
        assert engine.snapshot().get("Q-1").description == "Unconfirmed"

        gateway.release.set()
        await held

    asyncio.run(scenario())

    assert cache.load().get("Q-1").description == "Unconfirmed"


def test_background_timer_refreshes_until_stopped(
    engine_factory: Callable[..., SyncEngine],
    gateway: InMemoryRemoteGateway,
) -> None:
    engine = engine_factory(gateway, refresh_interval_s=0.01)

    async def scenario() -> int:
        engine.start_background_refresh()
        engine.start_background_refresh()
        await asyncio.sleep(0.05)
        await engine.stop_background_refresh()
        reads = len(gateway.calls)
        await asyncio.sleep(0.03)
        assert len(gateway.calls) == reads
        return reads

    assert asyncio.run(scenario()) >= 2
    assert len(engine.snapshot().queries) == 2
