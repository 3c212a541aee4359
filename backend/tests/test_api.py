import anyio

from conftest import make_token
from fhirsync.config import settings
from fhirsync.models import ClinicalRecord
from fhirsync.schemas.records import ConditionRecord, ObservationRecord

PREFIX = settings.api_prefix

CONNECTION = {
    "name": "General Hospital",
    "server_url": "https://ehr.example.org/fhir/R4",
    "vendor": "epic",
    "sync_direction": "pull",
    "resource_types": ["Observation"],
}


def _create_connection(client, headers, **overrides):
    response = client.post(f"{PREFIX}/connections", json={**CONNECTION, **overrides}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def _seed_mapped_patient(seed, store, connection_id, fhir_patient_id="pat-1"):
    async def _seed():
        connection = await store.get_connection(connection_id)
        patient = await seed.patient()
        await seed.mapping(patient, connection, fhir_patient_id)
        return patient

    return anyio.run(_seed)


def test_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "service": "fhirsync-api",
        "version": settings.app_version,
    }


def test_root_endpoint(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["health"] == "/health"


def test_requests_without_bearer_token_are_rejected(client):
    response = client.get(f"{PREFIX}/connections")

    assert response.status_code in (401, 403)
    assert response.json()["error"]["type"] == "http_error"


def test_invalid_token_is_unauthorized(client):
    response = client.get(f"{PREFIX}/connections", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Could not validate credentials"


def test_refresh_tokens_are_not_accepted(client):
    token = make_token(type="refresh")

    response = client.get(f"{PREFIX}/connections", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_viewer_cannot_mutate(client, viewer_headers):
    response = client.post(f"{PREFIX}/connections", json=CONNECTION, headers=viewer_headers)

    assert response.status_code == 403
    assert response.json()["error"]["status_code"] == 403


def test_create_and_read_connections(client, admin_headers, viewer_headers):
    created = _create_connection(client, admin_headers)

    assert created["tenant_id"] == "tenant-a"
    assert created["status"] == "active"
    listed = client.get(f"{PREFIX}/connections", headers=viewer_headers)
    assert [c["id"] for c in listed.json()] == [created["id"]]
    fetched = client.get(f"{PREFIX}/connections/{created['id']}", headers=viewer_headers)
    assert fetched.json()["name"] == "General Hospital"

    other_tenant = {"Authorization": f"Bearer {make_token(tenant_id='tenant-b')}"}
    hidden = client.get(f"{PREFIX}/connections/{created['id']}", headers=other_tenant)
    assert hidden.status_code == 404
    assert hidden.json()["error"]["type"] == "connection_not_found"


def test_connection_validation_errors_use_the_error_envelope(client, admin_headers):
    schema_error = client.post(f"{PREFIX}/connections", json={"name": ""}, headers=admin_headers)
    domain_error = client.post(
        f"{PREFIX}/connections",
        json={**CONNECTION, "resource_types": ["Procedure"]},
        headers=admin_headers,
    )

    assert schema_error.status_code == 422
    assert schema_error.json()["error"]["type"] == "validation_error"
    assert domain_error.status_code == 422
    assert domain_error.json()["error"]["type"] == "invalid_connection"


def test_credentials_are_never_echoed(client, admin_headers):
    created = _create_connection(client, admin_headers)

    response = client.put(
        f"{PREFIX}/connections/{created['id']}/credentials",
        json={"access_token": "secret-access", "refresh_token": "secret-refresh", "expires_in": 3600},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["has_refresh_token"] is True
    assert "secret" not in response.text


def test_connection_test_endpoint(client, admin_headers):
    created = _create_connection(client, admin_headers)

    response = client.post(f"{PREFIX}/connections/{created['id']}/test", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert response.json()["fhir_version"] == "4.0.1"


def test_trigger_sync_and_read_history(client, admin_headers, viewer_headers, seed, store, fhir_server):
    created = _create_connection(client, admin_headers)
    _seed_mapped_patient(seed, store, created["id"])
    fhir_server.put_record(ObservationRecord(code="8867-4", value=72.0, unit="/min"), "obs-1", subject="Patient/pat-1")

    triggered = client.post(f"{PREFIX}/connections/{created['id']}/sync", json={}, headers=admin_headers)

    assert triggered.status_code == 200
    body = triggered.json()
    assert body["started"] is True
    assert body["sync_log"]["status"] == "success"
    assert body["sync_log"]["triggered_by"] == "user:admin-1"

    logs = client.get(f"{PREFIX}/connections/{created['id']}/sync-logs", headers=viewer_headers).json()
    assert [log["id"] for log in logs] == [body["sync_log"]["id"]]
    detail = client.get(f"{PREFIX}/sync-logs/{logs[0]['id']}", headers=viewer_headers).json()
    assert [(r["resource_id"], r["status"]) for r in detail["resources"]] == [("obs-1", "synced")]

    status = client.get(f"{PREFIX}/connections/{created['id']}/status", headers=viewer_headers).json()
    assert status["latest_sync"]["id"] == logs[0]["id"]
    assert status["open_conflicts"] == 0

    other_tenant = {"Authorization": f"Bearer {make_token(tenant_id='tenant-b')}"}
    assert client.get(f"{PREFIX}/sync-logs/{logs[0]['id']}", headers=other_tenant).status_code == 404


def test_trigger_while_running_reports_not_started(client, admin_headers, engine):
    created = _create_connection(client, admin_headers)
    engine.orchestrator.single_flight.try_acquire(created["id"])
    try:
        response = client.post(f"{PREFIX}/connections/{created['id']}/sync", json={}, headers=admin_headers)
    finally:
        engine.orchestrator.single_flight.release(created["id"])

    assert response.status_code == 200
    assert response.json()["started"] is False
    assert response.json()["sync_log"] is None


def test_sync_on_deactivated_connection_conflicts(client, admin_headers):
    created = _create_connection(client, admin_headers)
    deactivated = client.post(f"{PREFIX}/connections/{created['id']}/deactivate", headers=admin_headers)

    response = client.post(f"{PREFIX}/connections/{created['id']}/sync", json={}, headers=admin_headers)
    wrong_direction = client.post(
        f"{PREFIX}/connections/{created['id']}/sync",
        json={"direction": "sideways"},
        headers=admin_headers,
    )

    assert deactivated.json()["status"] == "inactive"
    assert response.status_code == 409
    assert response.json()["error"]["type"] == "connection_not_active"
    assert wrong_direction.status_code == 422


def test_manual_mapping_lifecycle(client, admin_headers, seed):
    created = _create_connection(client, admin_headers)
    patient = anyio.run(seed.patient)

    mapping = client.post(
        f"{PREFIX}/connections/{created['id']}/mappings",
        json={"patient_id": patient.id, "fhir_patient_id": "pat-77"},
        headers=admin_headers,
    )
    assert mapping.status_code == 201
    assert mapping.json()["sync_status"] == "pending"

    confirmed = client.post(f"{PREFIX}/mappings/{mapping.json()['id']}/confirm", headers=admin_headers)
    rejected = client.post(f"{PREFIX}/mappings/{mapping.json()['id']}/reject", headers=admin_headers)

    assert confirmed.json()["sync_status"] == "synced"
    assert confirmed.json()["confirmed_by"] == "user:admin-1"
    assert rejected.status_code == 409
    assert rejected.json()["error"]["type"] == "invalid_mapping_transition"
    listed = client.get(f"{PREFIX}/connections/{created['id']}/mappings", headers=admin_headers)
    assert [m["fhir_patient_id"] for m in listed.json()] == ["pat-77"]


def test_conflict_endpoints(client, admin_headers):
    assert client.get(f"{PREFIX}/conflicts", headers=admin_headers).json() == []

    missing = client.post(f"{PREFIX}/conflicts/42/resolve", json={"strategy": "use_local"}, headers=admin_headers)
    invalid = client.post(f"{PREFIX}/conflicts/42/resolve", json={"strategy": "manual"}, headers=admin_headers)

    assert missing.status_code == 404
    assert missing.json()["error"]["type"] == "conflict_not_found"
    assert invalid.status_code == 422


def test_conflict_resolution_over_api(client, admin_headers, seed, store, fhir_server):
    created = _create_connection(
        client,
        admin_headers,
        sync_direction="bidirectional",
        resource_types=["Condition"],
    )
    _seed_mapped_patient(seed, store, created["id"])
    condition = ConditionRecord(code="38341003", display="Hypertension", note="Home readings")
    fhir_server.put_record(condition, "cond-1", subject="Patient/pat-1")
    sync_url = f"{PREFIX}/connections/{created['id']}/sync"
    assert client.post(sync_url, json={}, headers=admin_headers).status_code == 200
    fhir_server.put_record(condition.model_copy(update={"note": "Clinic reading"}), "cond-1", subject="Patient/pat-1")
    row = store.all(ClinicalRecord)[0]
    row.payload = {**row.payload, "note": "Home readings trending down"}
    client.post(sync_url, json={}, headers=admin_headers)

    conflicts = client.get(f"{PREFIX}/conflicts", headers=admin_headers).json()
    assert len(conflicts) == 1
    assert conflicts[0]["resolution_strategy"] == "manual"

    resolve_url = f"{PREFIX}/conflicts/{conflicts[0]['id']}/resolve"
    resolved = client.post(resolve_url, json={"strategy": "use_remote"}, headers=admin_headers)
    again = client.post(resolve_url, json={"strategy": "use_local"}, headers=admin_headers)

    assert resolved.json()["status"] == "resolved"
    assert resolved.json()["resolved_by"] == "user:admin-1"
    assert again.status_code == 409
    assert again.json()["error"]["type"] == "conflict_already_resolved"


def test_audit_query_and_verify(client, admin_headers, viewer_headers):
    created = _create_connection(client, admin_headers)

    events = client.get(f"{PREFIX}/audit", headers=admin_headers).json()
    by_entity = client.get(f"{PREFIX}/audit/connection/{created['id']}", headers=admin_headers).json()
    verified = client.get(f"{PREFIX}/audit/verify", headers=admin_headers).json()

    assert [e["action"] for e in events] == ["connection_created"]
    assert events[0]["actor_id"] == "admin-1"
    assert [e["action"] for e in by_entity] == ["connection_created"]
    assert verified == {"checked": 1, "broken_ids": []}
    assert client.get(f"{PREFIX}/audit", headers=viewer_headers).status_code == 403


def test_audit_window_must_be_ordered(client, admin_headers):
    response = client.get(
        f"{PREFIX}/audit",
        params={"start": "2026-10-02T00:00:00Z", "end": "2026-10-01T00:00:00Z"},
        headers=admin_headers,
    )

    assert response.status_code == 422
