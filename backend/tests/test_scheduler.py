from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from fhirsync.models import FhirConnection, SyncLog
from fhirsync.schemas.records import ObservationRecord
from fhirsync.services.engine import get_single_flight
from fhirsync.services.scheduler import SyncScheduler, is_due

NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("status", "frequency", "last_started", "expected"),
    [
        ("active", "hourly", None, True),
        ("active", "hourly", NOW - timedelta(minutes=59), False),
        ("active", "hourly", NOW - timedelta(hours=1), True),
        ("active", "realtime", NOW - timedelta(minutes=6), True),
        ("active", "daily", NOW - timedelta(hours=23), False),
        ("active", "manual", None, False),
        ("inactive", "hourly", None, False),
        ("error", "realtime", None, False),
    ],
)
def test_is_due(status, frequency, last_started, expected):
    connection = FhirConnection(status=status, sync_frequency=frequency)

    assert is_due(connection, last_started, NOW) is expected


def _scheduler(store, fhir_server):
    @asynccontextmanager
    async def _store_context():
        yield store

    return SyncScheduler(store_context=_store_context, client_factory=fhir_server.client_factory)


async def _mapped_connection(seed, fhir_id, **overrides):
    values = {"sync_frequency": "hourly", "resource_types": ["Observation"]}
    values.update(overrides)
    connection = await seed.connection(**values)
    patient = await seed.patient(mrn=f"MRN-{fhir_id}")
    await seed.mapping(patient, connection, fhir_id)
    return connection


@pytest.mark.anyio
async def test_run_once_syncs_only_due_connections(seed, store, fhir_server):
    healthy = await _mapped_connection(seed, "pat-1")
    broken = await _mapped_connection(seed, "pat-2", last_sync_at=NOW - timedelta(days=2))
    recent = await _mapped_connection(seed, "pat-3", sync_frequency="daily")
    await _mapped_connection(seed, "pat-4", sync_frequency="manual")
    await _mapped_connection(seed, "pat-5", status="inactive")
    await store.add(
        SyncLog(
            tenant_id=recent.tenant_id,
            connection_id=recent.id,
            sync_type="full",
            direction="pull",
            status="success",
            started_at=NOW - timedelta(hours=2),
            completed_at=NOW - timedelta(hours=2),
        )
    )
    fhir_server.put_record(ObservationRecord(code="8867-4", value=72.0, unit="/min"), "obs-1", subject="Patient/pat-1")
    fhir_server.put(
        {
            "resourceType": "Observation",
            "id": "obs-2",
            "status": "final",
            "code": {"text": "free text only"},
            "subject": {"reference": "Patient/pat-2"},
        }
    )

    stats = await _scheduler(store, fhir_server).run_once(NOW)

    assert stats.scanned_connections == 4
    assert stats.due_connections == 2
    assert (stats.succeeded, stats.partial, stats.failed, stats.skipped, stats.errored) == (1, 0, 1, 0, 0)
    logs = {log.connection_id: log for log in store.all(SyncLog) if log.connection_id != recent.id}
    assert logs[healthy.id].sync_type == "full"
    assert logs[healthy.id].triggered_by == "system:fhirsync"
    assert logs[broken.id].sync_type == "incremental"
    assert logs[broken.id].status == "failed"


@pytest.mark.anyio
async def test_busy_connection_is_counted_as_skipped(seed, store, fhir_server):
    connection = await _mapped_connection(seed, "pat-1")
    single_flight = get_single_flight()
    assert single_flight.try_acquire(connection.id)
    try:
        stats = await _scheduler(store, fhir_server).run_once(NOW)
    finally:
        single_flight.release(connection.id)

    assert stats.due_connections == 1
    assert stats.skipped == 1
    assert store.all(SyncLog) == []


@pytest.mark.anyio
async def test_nothing_due_runs_nothing(seed, store, fhir_server):
    await _mapped_connection(seed, "pat-1", sync_frequency="manual")

    stats = await _scheduler(store, fhir_server).run_once(NOW)

    assert (stats.scanned_connections, stats.due_connections) == (1, 0)
    assert fhir_server.calls == []


@pytest.mark.anyio
async def test_disabled_scheduler_does_not_start(monkeypatch, store, fhir_server):
    from fhirsync.services import scheduler as scheduler_module

    monkeypatch.setattr(scheduler_module.settings, "scheduler_enabled", False)
    scheduler = _scheduler(store, fhir_server)

    await scheduler.start()

    assert scheduler._task is None
    await scheduler.stop()
