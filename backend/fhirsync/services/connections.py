"""Connection registry: validated CRUD over EHR connections plus connectivity tests."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse

from fhirsync.config import settings
from fhirsync.models import ConnectionStatus, EhrVendor, FhirConnection, utcnow
from fhirsync.schemas.connections import ConnectionCreate, ConnectionUpdate, CredentialUpsert
from fhirsync.services.audit import Actor, AuditRecorder
from fhirsync.services.credentials import CredentialVault
from fhirsync.services.errors import (
    AuthExpired,
    ConnectionNotFound,
    ConnectionUnauthorized,
    ConnectionUnreachable,
    ConnectionValidationError,
    FhirRequestError,
    ResourceNotFound,
)
from fhirsync.services.fhir_client import FhirClient, TokenProvider
from fhirsync.services.locks import CancellationRegistry
from fhirsync.services.store import SyncStore
from fhirsync.services.translator import SUPPORTED_RESOURCE_TYPES

logger = logging.getLogger("fhirsync.connections")

ClientFactory = Callable[[FhirConnection, TokenProvider], FhirClient]

RESOURCE_OWNERS = ("ehr", "community")


def default_client_factory(connection: FhirConnection, token_provider: TokenProvider) -> FhirClient:
    return FhirClient(connection.server_url, token_provider=token_provider)


@dataclass
class ConnectionTestResult:
    connection_id: int
    ok: bool
    checked_at: datetime
    fhir_version: Optional[str] = None
    software: Optional[str] = None
    token_endpoint: Optional[str] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


def _validate_server_url(value: str) -> str:
    url = (value or "").strip().rstrip("/")
    if not url:
        raise ConnectionValidationError("Server URL is required")
    parsed = urlparse(url)
    allowed_schemes = {"https", "http"} if settings.debug else {"https"}
    if parsed.scheme not in allowed_schemes or not parsed.netloc:
        raise ConnectionValidationError("Server URL must be an absolute https:// URL")
    return url


def _validate_vendor(value: str) -> str:
    if value not in {vendor.value for vendor in EhrVendor}:
        raise ConnectionValidationError(f"Unsupported EHR vendor '{value}'")
    return value


def _validate_resource_types(values: Optional[list[str]]) -> list[str]:
    if values is None:
        return list(settings.sync_default_resource_types)
    unsupported = sorted(set(values) - set(SUPPORTED_RESOURCE_TYPES))
    if unsupported:
        raise ConnectionValidationError(f"Unsupported resource types: {', '.join(unsupported)}")
    # Patient first so demographics land before dependent resources.
    return sorted(dict.fromkeys(values), key=lambda item: (item != "Patient", SUPPORTED_RESOURCE_TYPES.index(item)))


def _validate_owners(values: Optional[dict[str, str]]) -> Optional[dict[str, str]]:
    if values is None:
        return None
    for resource_type, owner in values.items():
        if resource_type not in SUPPORTED_RESOURCE_TYPES:
            raise ConnectionValidationError(f"Unsupported resource type '{resource_type}' in owners")
        if owner not in RESOURCE_OWNERS:
            raise ConnectionValidationError(f"Owner for {resource_type} must be 'ehr' or 'community'")
    return dict(values)


class ConnectionRegistry:
    def __init__(
        self,
        store: SyncStore,
        audit: AuditRecorder,
        vault: CredentialVault,
        *,
        cancellations: CancellationRegistry,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.store = store
        self.audit = audit
        self.vault = vault
        self.cancellations = cancellations
        self.client_factory = client_factory

    async def create_connection(
        self,
        payload: ConnectionCreate,
        *,
        tenant_id: str,
        actor: Actor,
    ) -> FhirConnection:
        connection = FhirConnection(
            tenant_id=tenant_id,
            name=payload.name.strip(),
            server_url=_validate_server_url(payload.server_url),
            vendor=_validate_vendor(payload.vendor),
            client_id=payload.client_id,
            status=ConnectionStatus.active.value,
            sync_frequency=payload.sync_frequency,
            sync_direction=payload.sync_direction,
            resource_types=_validate_resource_types(payload.resource_types),
            resource_owners=_validate_owners(payload.resource_owners),
            patient_identifier_system=payload.patient_identifier_system,
        )
        await self.store.add(connection)
        logger.info("Created connection id=%s vendor=%s tenant=%s", connection.id, connection.vendor, tenant_id)
        await self.audit.append(
            action="connection_created",
            target_type="connection",
            target_id=connection.id,
            actor=actor,
            tenant_id=tenant_id,
            details={
                "vendor": connection.vendor,
                "direction": connection.sync_direction,
                "frequency": connection.sync_frequency,
            },
        )
        return connection

    async def get_connection(self, connection_id: int, *, tenant_id: Optional[str] = None) -> FhirConnection:
        connection = await self.store.get_connection(connection_id)
        # Other tenants' connections are reported as missing.
        if connection is None or (tenant_id is not None and connection.tenant_id != tenant_id):
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def list_connections(
        self,
        *,
        tenant_id: str,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> list[FhirConnection]:
        return await self.store.list_connections(
            tenant_id=tenant_id,
            statuses=[status] if status else None,
            skip=skip,
            limit=limit,
        )

    async def update_connection(
        self,
        connection_id: int,
        payload: ConnectionUpdate,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> FhirConnection:
        connection = await self.get_connection(connection_id, tenant_id=tenant_id)
        changes = payload.model_dump(exclude_unset=True)
        if "server_url" in changes:
            changes["server_url"] = _validate_server_url(changes["server_url"])
        if "vendor" in changes:
            changes["vendor"] = _validate_vendor(changes["vendor"])
        if "resource_types" in changes:
            changes["resource_types"] = _validate_resource_types(changes["resource_types"])
        if "resource_owners" in changes:
            changes["resource_owners"] = _validate_owners(changes["resource_owners"])
        for name in ("name", "sync_frequency", "sync_direction"):
            if name in changes and changes[name] is None:
                raise ConnectionValidationError(f"{name} cannot be cleared")
        for name, value in changes.items():
            setattr(connection, name, value)
        await self.store.save(connection)
        await self.audit.append(
            action="connection_updated",
            target_type="connection",
            target_id=connection.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={"fields": sorted(changes)},
        )
        return connection

    async def deactivate_connection(
        self,
        connection_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> FhirConnection:
        """Soft-deactivate; an in-flight pass stops after its current resource."""
        connection = await self.get_connection(connection_id, tenant_id=tenant_id)
        previous = connection.status
        connection.status = ConnectionStatus.inactive.value
        connection.deactivated_at = utcnow()
        await self.store.save(connection)
        self.cancellations.request(connection.id)
        logger.info("Deactivated connection id=%s (was %s)", connection.id, previous)
        await self.audit.append(
            action="connection_deactivated",
            target_type="connection",
            target_id=connection.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={"status_before": previous},
        )
        return connection

    async def reactivate_connection(
        self,
        connection_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> FhirConnection:
        connection = await self.get_connection(connection_id, tenant_id=tenant_id)
        previous = connection.status
        connection.status = ConnectionStatus.active.value
        connection.last_error = None
        connection.deactivated_at = None
        await self.store.save(connection)
        self.cancellations.clear(connection.id)
        await self.audit.append(
            action="connection_reactivated",
            target_type="connection",
            target_id=connection.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={"status_before": previous},
        )
        return connection

    async def store_credentials(
        self,
        connection_id: int,
        payload: CredentialUpsert,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ):
        connection = await self.get_connection(connection_id, tenant_id=tenant_id)
        return await self.vault.store_tokens(
            connection.id,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_in=payload.expires_in,
            token_endpoint=payload.token_endpoint,
            client_secret=payload.client_secret,
            scope=payload.scope,
            actor=actor,
        )

    async def test_connection(
        self,
        connection_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> ConnectionTestResult:
        """Capability check against ``{base}/metadata``.

        Only connectivity status changes: a failure flips an active connection
        to ``error``; success never reactivates one.
        """
        connection = await self.get_connection(connection_id, tenant_id=tenant_id)
        checked_at = utcnow()

        async def _token() -> Optional[str]:
            return await self.vault.get_valid_token(connection.id)

        client = self.client_factory(connection, _token)
        result = ConnectionTestResult(connection_id=connection.id, ok=False, checked_at=checked_at)
        try:
            smart = await client.smart_configuration()
            metadata = await client.capability_statement()
        except (
            AuthExpired,
            ConnectionUnauthorized,
            ConnectionUnreachable,
            FhirRequestError,
            ResourceNotFound,
        ) as exc:
            result.error_code = exc.code
            result.message = exc.message
        else:
            self._apply_capabilities(result, metadata, smart)

        connection.last_tested_at = checked_at
        if not result.ok and connection.status == ConnectionStatus.active.value:
            connection.status = ConnectionStatus.error.value
            connection.last_error = f"{result.error_code}: {result.message}"
        await self.store.save(connection)

        logger.info(
            "Tested connection id=%s ok=%s error=%s",
            connection.id,
            result.ok,
            result.error_code or "-",
        )
        await self.audit.append(
            action="connection_tested",
            target_type="connection",
            target_id=connection.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            outcome="success" if result.ok else "failure",
            details={
                "fhir_version": result.fhir_version,
                "software": result.software,
                "error_code": result.error_code,
                "message": result.message,
            },
        )
        return result

    @staticmethod
    def _apply_capabilities(
        result: ConnectionTestResult,
        metadata: dict[str, Any],
        smart: Optional[dict[str, Any]],
    ) -> None:
        if metadata.get("resourceType") != "CapabilityStatement":
            result.error_code = "invalid_capability_statement"
            result.message = "Metadata endpoint did not return a CapabilityStatement"
            return
        result.ok = True
        result.fhir_version = metadata.get("fhirVersion")
        software = metadata.get("software")
        if isinstance(software, dict):
            result.software = software.get("name")
        if smart:
            result.token_endpoint = smart.get("token_endpoint")
