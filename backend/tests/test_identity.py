import pytest

from fhirsync.models import AuditEvent, MappingStatus, PatientMapping
from fhirsync.services.audit import Actor
from fhirsync.services.errors import (
    InvalidMappingTransition,
    MappingNotFound,
    NoMatchFound,
    PatientNotFound,
)

ADMIN = Actor(actor_type="user", actor_id="admin-1", tenant_id="tenant-a", role="admin")
MRN_SYSTEM = "urn:oid:2.16.840.1.113883.3.1"


def _remote_patient(resource_id, *, mrn="MRN-1001", family="Lopez", birth_date="1980-05-17"):
    return {
        "resourceType": "Patient",
        "id": resource_id,
        "identifier": [{"system": MRN_SYSTEM, "value": mrn}],
        "name": [{"use": "official", "family": family, "given": ["Ana"]}],
        "birthDate": birth_date,
    }


@pytest.mark.anyio
async def test_identifier_match_creates_pending_candidate(engine, seed, fhir_server, store):
    connection = await seed.connection(patient_identifier_system=MRN_SYSTEM)
    patient = await seed.patient()
    fhir_server.put(_remote_patient("pat-1"))
    fhir_server.put(_remote_patient("pat-2", mrn="MRN-2002"))

    mapping = await engine.identity.resolve_or_create_mapping(patient.id, connection.id, actor=ADMIN)

    assert mapping.fhir_patient_id == "pat-1"
    assert mapping.sync_status == MappingStatus.pending.value
    assert mapping.match_method == "identifier"
    assert fhir_server.calls[-1] == ("search", "Patient", {"identifier": f"{MRN_SYSTEM}|MRN-1001"})
    assert [e.action for e in store.all(AuditEvent)] == ["mapping_candidate_created"]


@pytest.mark.anyio
async def test_demographic_match_without_identifier_system(engine, seed, fhir_server):
    connection = await seed.connection()
    patient = await seed.patient()
    fhir_server.put(_remote_patient("pat-7"))

    mapping = await engine.identity.resolve_or_create_mapping(patient.id, connection.id)

    assert mapping.fhir_patient_id == "pat-7"
    assert mapping.match_method == "demographics"
    assert fhir_server.calls[-1][2] == {"family": "Lopez", "given": "Ana", "birthdate": "1980-05-17"}


@pytest.mark.anyio
async def test_existing_synced_mapping_is_never_overwritten(engine, seed, fhir_server):
    connection = await seed.connection()
    patient = await seed.patient()
    existing = await seed.mapping(patient, connection, "pat-original")
    fhir_server.put(_remote_patient("pat-other"))

    mapping = await engine.identity.resolve_or_create_mapping(patient.id, connection.id)

    assert mapping is existing
    assert mapping.fhir_patient_id == "pat-original"
    assert mapping.sync_status == MappingStatus.synced.value
    assert fhir_server.calls == []


@pytest.mark.anyio
@pytest.mark.parametrize("candidates", [0, 2])
async def test_ambiguous_or_missing_match_fails(engine, seed, fhir_server, store, candidates):
    connection = await seed.connection()
    patient = await seed.patient()
    for index in range(candidates):
        fhir_server.put(_remote_patient(f"pat-{index}"))

    with pytest.raises(NoMatchFound):
        await engine.identity.resolve_or_create_mapping(patient.id, connection.id)

    assert store.all(PatientMapping) == []
    events = store.all(AuditEvent)
    assert [(e.action, e.outcome) for e in events] == [("mapping_match_failed", "failure")]


@pytest.mark.anyio
async def test_candidate_mapped_to_another_patient_fails(engine, seed, fhir_server):
    connection = await seed.connection()
    other = await seed.patient(first_name="Eva", mrn="MRN-9")
    await seed.mapping(other, connection, "pat-1")
    patient = await seed.patient()
    fhir_server.put(_remote_patient("pat-1"))

    with pytest.raises(NoMatchFound):
        await engine.identity.resolve_or_create_mapping(patient.id, connection.id)


@pytest.mark.anyio
async def test_patient_without_identifier_or_birth_date_cannot_match(engine, seed, fhir_server):
    connection = await seed.connection()
    patient = await seed.patient(birth_date=None)

    with pytest.raises(NoMatchFound):
        await engine.identity.resolve_or_create_mapping(patient.id, connection.id)
    assert fhir_server.calls == []


@pytest.mark.anyio
async def test_patient_from_other_tenant_is_not_found(engine, seed):
    connection = await seed.connection()
    patient = await seed.patient(tenant_id="tenant-b")

    with pytest.raises(PatientNotFound):
        await engine.identity.resolve_or_create_mapping(patient.id, connection.id)


@pytest.mark.anyio
async def test_confirm_moves_pending_to_synced_once(engine, seed):
    connection = await seed.connection()
    patient = await seed.patient()
    mapping = await seed.mapping(patient, connection, sync_status=MappingStatus.pending.value)

    confirmed = await engine.identity.confirm_mapping(mapping.id, actor=ADMIN, tenant_id="tenant-a")

    assert confirmed.sync_status == MappingStatus.synced.value
    assert confirmed.confirmed_by == "user:admin-1"
    assert confirmed.confirmed_at is not None
    with pytest.raises(InvalidMappingTransition):
        await engine.identity.confirm_mapping(mapping.id, actor=ADMIN)


@pytest.mark.anyio
async def test_reject_removes_pending_candidate(engine, seed, store):
    connection = await seed.connection()
    patient = await seed.patient()
    mapping = await seed.mapping(patient, connection, sync_status=MappingStatus.pending.value)

    await engine.identity.reject_mapping(mapping.id, actor=ADMIN)

    assert store.all(PatientMapping) == []
    with pytest.raises(MappingNotFound):
        await engine.identity.get_mapping(mapping.id)
    assert [e.action for e in store.all(AuditEvent)] == ["mapping_rejected"]


@pytest.mark.anyio
async def test_reject_refuses_synced_mapping(engine, seed):
    connection = await seed.connection()
    patient = await seed.patient()
    mapping = await seed.mapping(patient, connection)

    with pytest.raises(InvalidMappingTransition):
        await engine.identity.reject_mapping(mapping.id, actor=ADMIN)


@pytest.mark.anyio
async def test_tombstoned_mapping_is_revived_in_place(engine, seed, fhir_server, store):
    connection = await seed.connection()
    patient = await seed.patient()
    mapping = await seed.mapping(patient, connection, "pat-old")
    await engine.identity.tombstone_mapping(mapping.id, actor=ADMIN)
    fhir_server.put(_remote_patient("pat-new"))

    listed = await engine.identity.list_mappings(connection.id, tenant_id="tenant-a")
    revived = await engine.identity.resolve_or_create_mapping(patient.id, connection.id)

    assert listed == []
    assert revived.id == mapping.id
    assert revived.fhir_patient_id == "pat-new"
    assert revived.sync_status == MappingStatus.pending.value
    assert revived.is_tombstoned is False
    assert len(store.all(PatientMapping)) == 1


@pytest.mark.anyio
async def test_manual_mapping_rules(engine, seed):
    connection = await seed.connection()
    patient = await seed.patient()
    other = await seed.patient(first_name="Eva", mrn="MRN-9")

    mapping = await engine.identity.create_manual_mapping(patient.id, connection.id, "pat-5", actor=ADMIN)

    assert mapping.sync_status == MappingStatus.pending.value
    assert mapping.match_method == "manual"
    with pytest.raises(InvalidMappingTransition):
        await engine.identity.create_manual_mapping(patient.id, connection.id, "pat-6", actor=ADMIN)
    with pytest.raises(InvalidMappingTransition):
        await engine.identity.create_manual_mapping(other.id, connection.id, "pat-5", actor=ADMIN)


@pytest.mark.anyio
async def test_reverse_lookup(engine, seed):
    connection = await seed.connection()
    patient = await seed.patient()
    await seed.mapping(patient, connection, "pat-42")

    assert await engine.identity.resolve_internal(connection.id, "pat-42") == patient.id
    assert await engine.identity.resolve_internal(connection.id, "pat-missing") is None
