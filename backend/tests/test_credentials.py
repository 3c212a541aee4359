import asyncio
import json

import pytest
from cryptography.fernet import Fernet

from fhirsync.models import AuditEvent, ConnectionCredential
from fhirsync.services import http
from fhirsync.services.credentials import TokenCipher
from fhirsync.services.errors import AuthExpired

TOKEN_ENDPOINT = "https://ehr.example.org/oauth2/token"


class _TokenEndpoint:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {
            "access_token": "fresh-access",
            "refresh_token": "fresh-refresh",
            "expires_in": 3600,
            "scope": "system/*.read",
        }
        self.forms = []

    def __call__(self, method, url, **kwargs):
        self.forms.append(kwargs["data"])
        body = json.dumps(self.payload).encode()
        return _Response(self.status_code, self.payload, body)


class _Response:
    def __init__(self, status_code, payload, content):
        self.status_code = status_code
        self.headers = {}
        self.content = content
        self._payload = payload

    def json(self):
        return self._payload


async def _store_expiring(engine, connection_id, **overrides):
    values = {
        "access_token": "stale-access",
        "refresh_token": "refresh-1",
        "expires_in": 30,
        "token_endpoint": TOKEN_ENDPOINT,
    }
    values.update(overrides)
    return await engine.vault.store_tokens(connection_id, **values)


@pytest.mark.anyio
async def test_tokens_are_encrypted_at_rest(engine, seed, store, cipher):
    connection = await seed.connection()

    credential = await engine.vault.store_tokens(
        connection.id,
        access_token="secret-access",
        refresh_token="secret-refresh",
        expires_in=3600,
        token_endpoint=TOKEN_ENDPOINT,
    )

    assert credential.access_token_encrypted != "secret-access"
    assert cipher.decrypt(credential.access_token_encrypted) == "secret-access"
    assert cipher.decrypt(credential.refresh_token_encrypted) == "secret-refresh"
    events = store.all(AuditEvent)
    assert [e.action for e in events] == ["credential_stored"]
    assert "secret" not in (events[0].details or "")


@pytest.mark.anyio
async def test_fresh_token_is_served_without_refresh(engine, seed, monkeypatch):
    connection = await seed.connection()
    endpoint = _TokenEndpoint()
    monkeypatch.setattr(http, "_send", endpoint)
    await engine.vault.store_tokens(connection.id, access_token="access-1", expires_in=3600)

    assert await engine.vault.get_valid_token(connection.id) == "access-1"
    engine.vault.cache.invalidate(connection.id)
    assert await engine.vault.get_valid_token(connection.id) == "access-1"
    assert endpoint.forms == []


@pytest.mark.anyio
async def test_anonymous_connection_has_no_token(engine, seed):
    connection = await seed.connection()

    assert await engine.vault.get_valid_token(connection.id) is None


@pytest.mark.anyio
async def test_expiring_token_is_refreshed_and_stored(engine, seed, store, monkeypatch, cipher):
    connection = await seed.connection(client_id="platform-client")
    endpoint = _TokenEndpoint()
    monkeypatch.setattr(http, "_send", endpoint)
    await _store_expiring(engine, connection.id)

    token = await engine.vault.get_valid_token(connection.id)

    assert token == "fresh-access"
    assert endpoint.forms == [
        {"grant_type": "refresh_token", "refresh_token": "refresh-1", "client_id": "platform-client"}
    ]
    credential = await store.get_credential(connection.id)
    assert cipher.decrypt(credential.access_token_encrypted) == "fresh-access"
    assert cipher.decrypt(credential.refresh_token_encrypted) == "fresh-refresh"
    assert credential.last_refreshed_at is not None
    assert credential.scope == "system/*.read"
    refresh_events = [e for e in store.all(AuditEvent) if e.action == "credential_refresh"]
    assert [e.outcome for e in refresh_events] == ["success"]


@pytest.mark.anyio
async def test_concurrent_callers_share_one_refresh(engine, seed, monkeypatch):
    connection = await seed.connection()
    endpoint = _TokenEndpoint()
    monkeypatch.setattr(http, "_send", endpoint)
    await _store_expiring(engine, connection.id)

    tokens = await asyncio.gather(*(engine.vault.get_valid_token(connection.id) for _ in range(5)))

    assert set(tokens) == {"fresh-access"}
    assert len(endpoint.forms) == 1


@pytest.mark.anyio
async def test_rejected_refresh_raises_auth_expired(engine, seed, store, monkeypatch):
    connection = await seed.connection()
    monkeypatch.setattr(http, "_send", _TokenEndpoint(400, {"error": "invalid_grant"}))
    await _store_expiring(engine, connection.id)

    with pytest.raises(AuthExpired):
        await engine.vault.get_valid_token(connection.id)

    credential = await store.get_credential(connection.id)
    assert credential.refresh_failures == 1
    failures = [e for e in store.all(AuditEvent) if e.action == "credential_refresh"]
    assert [e.outcome for e in failures] == ["failure"]
    assert engine.vault.cache.get(connection.id) is None


@pytest.mark.anyio
async def test_expired_token_without_refresh_grant(engine, seed):
    connection = await seed.connection()
    await _store_expiring(engine, connection.id, refresh_token=None)

    with pytest.raises(AuthExpired):
        await engine.vault.get_valid_token(connection.id)


@pytest.mark.anyio
async def test_force_refresh_bypasses_fresh_cache(engine, seed, monkeypatch):
    connection = await seed.connection()
    endpoint = _TokenEndpoint()
    monkeypatch.setattr(http, "_send", endpoint)
    await _store_expiring(engine, connection.id, expires_in=3600)

    assert await engine.vault.get_valid_token(connection.id, force_refresh=True) == "fresh-access"
    assert len(endpoint.forms) == 1


@pytest.mark.anyio
async def test_credential_encrypted_with_other_key_is_unusable(engine, seed, store):
    connection = await seed.connection()
    foreign = TokenCipher(Fernet.generate_key())
    await store.add(
        ConnectionCredential(
            connection_id=connection.id,
            access_token_encrypted=foreign.encrypt("access"),
        )
    )

    with pytest.raises(AuthExpired):
        await engine.vault.get_valid_token(connection.id)
