"""Credential vault: encrypted OAuth2 tokens with atomic refresh per connection."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from fhirsync.config import settings
from fhirsync.models import ConnectionCredential, FhirConnection, utcnow
from fhirsync.services.audit import SYSTEM_ACTOR, Actor, AuditRecorder
from fhirsync.services.errors import AuthExpired, ConnectionNotFound, ConnectionUnreachable
from fhirsync.services.http import HttpPolicy, send_request
from fhirsync.services.locks import KeyedLocks
from fhirsync.services.store import SyncStore

logger = logging.getLogger("fhirsync.credentials")


class TokenCipher:
    """Fernet encryption for token material at rest."""

    def __init__(self, key: str | bytes | None = None):
        self._fernet = Fernet(key or settings.credential_encryption_key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            raise AuthExpired("Stored credential cannot be decrypted with the configured key") from exc


@dataclass(frozen=True)
class CachedToken:
    access_token: str = field(repr=False)
    expires_at: Optional[datetime]

    def is_fresh(self, now: datetime, margin: timedelta) -> bool:
        return self.expires_at is None or self.expires_at - margin > now


class TokenCache:
    """Decrypted access tokens keyed by connection id.

    Shared by every pass in the process; callers hold ``lock(connection_id)``
    across read, refresh and write.
    """

    def __init__(self):
        self._tokens: dict[int, CachedToken] = {}
        self._locks = KeyedLocks()

    def lock(self, connection_id: int) -> asyncio.Lock:
        return self._locks.get(connection_id)

    def get(self, connection_id: int) -> Optional[CachedToken]:
        return self._tokens.get(connection_id)

    def put(self, connection_id: int, token: CachedToken) -> None:
        self._tokens[connection_id] = token

    def invalidate(self, connection_id: int) -> None:
        self._tokens.pop(connection_id, None)


class CredentialVault:
    """Hands out valid bearer tokens and never exposes them outside the server."""

    def __init__(
        self,
        store: SyncStore,
        audit: AuditRecorder,
        *,
        cache: TokenCache,
        cipher: Optional[TokenCipher] = None,
        policy: Optional[HttpPolicy] = None,
        refresh_margin_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.cache = cache
        self.cipher = cipher or TokenCipher()
        self.policy = policy or HttpPolicy.from_settings()
        margin = (
            settings.token_refresh_margin_seconds
            if refresh_margin_seconds is None
            else refresh_margin_seconds
        )
        self.refresh_margin = timedelta(seconds=margin)
        self.clock = clock

    async def store_tokens(
        self,
        connection_id: int,
        *,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        token_endpoint: Optional[str] = None,
        client_secret: Optional[str] = None,
        scope: Optional[str] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> ConnectionCredential:
        """Store (or replace) the token set obtained from the authorization flow."""
        connection = await self._connection(connection_id)
        expires_at = self.clock() + timedelta(seconds=expires_in) if expires_in else None
        async with self.cache.lock(connection_id):
            credential = await self.store.get_credential(connection_id)
            if credential is None:
                credential = ConnectionCredential(connection_id=connection_id)
            credential.access_token_encrypted = self.cipher.encrypt(access_token)
            credential.refresh_token_encrypted = (
                self.cipher.encrypt(refresh_token) if refresh_token else None
            )
            if client_secret is not None:
                credential.client_secret_encrypted = self.cipher.encrypt(client_secret)
            credential.token_endpoint = token_endpoint or credential.token_endpoint
            credential.scope = scope
            credential.expires_at = expires_at
            credential.refresh_failures = 0
            await self.store.save(credential)
            self.cache.put(connection_id, CachedToken(access_token, expires_at))

        await self.audit.append(
            action="credential_stored",
            target_type="connection",
            target_id=connection_id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={
                "expires_at": expires_at.isoformat() if expires_at else None,
                "has_refresh_token": refresh_token is not None,
                "scope": scope,
            },
        )
        return credential

    async def get_valid_token(self, connection_id: int, *, force_refresh: bool = False) -> Optional[str]:
        """Return a token valid for at least the refresh margin.

        Returns None for connections without stored credentials (anonymous
        servers). Raises ``AuthExpired`` when a needed refresh fails.
        """
        async with self.cache.lock(connection_id):
            now = self.clock()
            cached = self.cache.get(connection_id)
            if cached is not None and not force_refresh and cached.is_fresh(now, self.refresh_margin):
                return cached.access_token

            credential = await self.store.get_credential(connection_id)
            if credential is None:
                return None
            stored = CachedToken(
                self.cipher.decrypt(credential.access_token_encrypted),
                credential.expires_at,
            )
            if not force_refresh and stored.is_fresh(now, self.refresh_margin):
                self.cache.put(connection_id, stored)
                return stored.access_token

            refreshed = await self._refresh(connection_id, credential)
            self.cache.put(connection_id, refreshed)
            return refreshed.access_token

    async def invalidate(self, connection_id: int) -> None:
        """Drop the cached token, e.g. after the server rejected it."""
        async with self.cache.lock(connection_id):
            self.cache.invalidate(connection_id)

    async def _connection(self, connection_id: int) -> FhirConnection:
        connection = await self.store.get_connection(connection_id)
        if connection is None:
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def _refresh(self, connection_id: int, credential: ConnectionCredential) -> CachedToken:
        connection = await self._connection(connection_id)
        try:
            token = await self._request_refresh(connection, credential)
        except (AuthExpired, ConnectionUnreachable) as exc:
            credential.refresh_failures = (credential.refresh_failures or 0) + 1
            await self.store.save(credential)
            self.cache.invalidate(connection_id)
            logger.warning(
                "Token refresh failed for connection=%s (%s)",
                connection_id,
                exc.code,
            )
            await self.audit.append(
                action="credential_refresh",
                target_type="connection",
                target_id=connection_id,
                tenant_id=connection.tenant_id,
                outcome="failure",
                details={"reason": exc.code, "message": exc.message, "failures": credential.refresh_failures},
            )
            raise

        logger.info("Refreshed access token for connection=%s", connection_id)
        await self.audit.append(
            action="credential_refresh",
            target_type="connection",
            target_id=connection_id,
            tenant_id=connection.tenant_id,
            details={"expires_at": token.expires_at.isoformat() if token.expires_at else None},
        )
        return token

    async def _request_refresh(
        self,
        connection: FhirConnection,
        credential: ConnectionCredential,
    ) -> CachedToken:
        if not credential.refresh_token_encrypted or not credential.token_endpoint:
            raise AuthExpired("Access token expired and no refresh grant is stored")

        refresh_token = self.cipher.decrypt(credential.refresh_token_encrypted)
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        auth = None
        if credential.client_secret_encrypted and connection.client_id:
            auth = (connection.client_id, self.cipher.decrypt(credential.client_secret_encrypted))
        elif connection.client_id:
            form["client_id"] = connection.client_id

        response = await send_request(
            "POST",
            credential.token_endpoint,
            policy=self.policy,
            headers={"Accept": "application/json"},
            data=form,
            auth=auth,
        )
        if response.status_code >= 400:
            raise AuthExpired(f"Token endpoint rejected the refresh grant with HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthExpired("Token endpoint returned a non-JSON response") from exc
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise AuthExpired("Token endpoint response did not include an access token")

        now = self.clock()
        expires_in = payload.get("expires_in")
        expires_at = now + timedelta(seconds=int(expires_in)) if expires_in else None
        credential.access_token_encrypted = self.cipher.encrypt(access_token)
        if payload.get("refresh_token"):
            credential.refresh_token_encrypted = self.cipher.encrypt(payload["refresh_token"])
        if payload.get("scope"):
            credential.scope = payload["scope"]
        credential.expires_at = expires_at
        credential.last_refreshed_at = now
        credential.refresh_failures = 0
        await self.store.save(credential)
        return CachedToken(access_token, expires_at)
