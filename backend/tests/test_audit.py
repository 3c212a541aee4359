import asyncio
from datetime import timedelta

import pytest

from fhirsync.models import AuditEvent, AuditImmutableError, utcnow
from fhirsync.services.audit import SYSTEM_ACTOR, Actor, AuditRecorder, compute_record_hash, verify_chain
from fhirsync.services.store import InMemorySyncStore, SQLSyncStore

ADMIN = Actor(actor_type="user", actor_id="admin-1", tenant_id="tenant-a", role="admin")


async def _append_three(recorder):
    first = await recorder.append(action="connection_created", target_type="connection", target_id=1, actor=ADMIN)
    second = await recorder.append(
        action="sync_completed",
        target_type="sync_log",
        target_id=7,
        tenant_id="tenant-a",
        details={"connection_id": 1, "status": "success"},
    )
    third = await recorder.append(
        action="connection_created",
        target_type="connection",
        target_id=2,
        actor=Actor(actor_type="user", actor_id="admin-9", tenant_id="tenant-b", role="admin"),
    )
    return first, second, third


@pytest.mark.anyio
async def test_events_are_hash_chained(store):
    recorder = AuditRecorder(store)

    first, second, third = await _append_three(recorder)

    assert first.previous_hash is None
    assert second.previous_hash == first.record_hash
    assert third.previous_hash == second.record_hash
    assert compute_record_hash(second) == second.record_hash
    assert verify_chain(store.all(AuditEvent)) == []


@pytest.mark.anyio
async def test_actor_and_tenant_are_recorded(store):
    recorder = AuditRecorder(store)

    first, second, _ = await _append_three(recorder)

    assert (first.actor_type, first.actor_id, first.tenant_id) == ("user", "admin-1", "tenant-a")
    assert (second.actor_type, second.actor_id) == (SYSTEM_ACTOR.actor_type, SYSTEM_ACTOR.actor_id)
    assert second.target_id == "7"
    assert second.details == '{"connection_id":1,"status":"success"}'


@pytest.mark.anyio
async def test_tampering_breaks_the_chain(store):
    recorder = AuditRecorder(store)
    _, second, _ = await _append_three(recorder)

    second.outcome = "failure"

    assert verify_chain(sorted(store.all(AuditEvent), key=lambda e: e.id)) == [second.id]


@pytest.mark.anyio
async def test_audit_events_cannot_be_updated_or_deleted(store):
    recorder = AuditRecorder(store)
    event = await recorder.append(action="sync_completed", target_type="sync_log", target_id=1)

    with pytest.raises(AuditImmutableError):
        await store.save(event)
    with pytest.raises(AuditImmutableError):
        await store.delete(event)
    assert store.all(AuditEvent) == [event]


@pytest.mark.anyio
async def test_queries_filter_by_window_entity_and_tenant(store):
    recorder = AuditRecorder(store)
    first, _, third = await _append_three(recorder)
    now = utcnow()

    in_window = await recorder.query_by_date_range(now - timedelta(minutes=5), now + timedelta(minutes=5))
    tenant_a = await recorder.query_by_date_range(
        now - timedelta(minutes=5),
        now + timedelta(minutes=5),
        tenant_id="tenant-a",
    )
    empty = await recorder.query_by_date_range(now + timedelta(minutes=1), now + timedelta(minutes=5))
    by_entity = await recorder.query_by_entity("connection", 2)

    assert len(in_window) == 3
    assert {e.tenant_id for e in tenant_a} == {"tenant-a"}
    assert empty == []
    assert by_entity == [third]
    assert first not in by_entity


class _OrderedStore(InMemorySyncStore):
    def __init__(self):
        super().__init__()
        self.calls = []

    async def lock_audit_chain(self):
        self.calls.append("lock")
        # Yield so a second append could read the tail if the lock were missing.
        await asyncio.sleep(0)

    async def last_audit_event(self):
        self.calls.append("tail")
        return await super().last_audit_event()


@pytest.mark.anyio
async def test_append_takes_the_chain_lock_before_reading_the_tail():
    store = _OrderedStore()
    recorder = AuditRecorder(store)

    await asyncio.gather(
        recorder.append(action="sync_started", target_type="connection", target_id=1),
        recorder.append(action="sync_started", target_type="connection", target_id=2),
    )

    events = sorted(store.all(AuditEvent), key=lambda e: e.id)
    assert store.calls == ["lock", "tail", "lock", "tail"]
    assert events[0].previous_hash is None
    assert events[1].previous_hash == events[0].record_hash
    assert verify_chain(events) == []


class _RecordingSession:
    def __init__(self):
        self.statements = []

    async def execute(self, statement, params=None):
        self.statements.append((str(statement), params))


@pytest.mark.anyio
async def test_sql_store_chain_lock_is_transaction_scoped():
    session = _RecordingSession()

    await SQLSyncStore(session).lock_audit_chain()

    [(sql, params)] = session.statements
    assert sql == "SELECT pg_advisory_xact_lock(:namespace, :key)"
    assert params["key"] == 0
