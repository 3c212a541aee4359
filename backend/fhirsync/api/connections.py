from typing import Optional

from fastapi import APIRouter, Depends, Query

from fhirsync.api.deps import get_current_actor, get_engine, require_admin
from fhirsync.schemas.connections import (
    ConnectionCreate,
    ConnectionResponse,
    ConnectionStatusResponse,
    ConnectionTestResponse,
    ConnectionUpdate,
    CredentialStatusResponse,
    CredentialUpsert,
    SyncLogSummary,
)
from fhirsync.services.audit import Actor
from fhirsync.services.engine import SyncEngine
from fhirsync.services.reporting import clamp_limit

router = APIRouter(prefix="/connections", tags=["Connections"])


@router.post("", response_model=ConnectionResponse, status_code=201)
async def create_connection(
    payload: ConnectionCreate,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Register a new EHR connection for the caller's tenant."""
    return await engine.registry.create_connection(payload, tenant_id=actor.tenant_id, actor=actor)


@router.get("", response_model=list[ConnectionResponse])
async def list_connections(
    status: Optional[str] = Query(None, pattern="^(active|inactive|error)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return await engine.registry.list_connections(
        tenant_id=actor.tenant_id,
        status=status,
        skip=skip,
        limit=clamp_limit(limit),
    )


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return await engine.registry.get_connection(connection_id, tenant_id=actor.tenant_id)


@router.patch("/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: int,
    payload: ConnectionUpdate,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.registry.update_connection(
        connection_id,
        payload,
        actor=actor,
        tenant_id=actor.tenant_id,
    )


@router.post("/{connection_id}/deactivate", response_model=ConnectionResponse)
async def deactivate_connection(
    connection_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Soft-deactivate a connection. A running pass stops after its current resource."""
    return await engine.registry.deactivate_connection(
        connection_id,
        actor=actor,
        tenant_id=actor.tenant_id,
    )


@router.post("/{connection_id}/reactivate", response_model=ConnectionResponse)
async def reactivate_connection(
    connection_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.registry.reactivate_connection(
        connection_id,
        actor=actor,
        tenant_id=actor.tenant_id,
    )


@router.put("/{connection_id}/credentials", response_model=CredentialStatusResponse)
async def store_credentials(
    connection_id: int,
    payload: CredentialUpsert,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Store the token set from the authorization flow. Token values are never returned."""
    credential = await engine.registry.store_credentials(
        connection_id,
        payload,
        actor=actor,
        tenant_id=actor.tenant_id,
    )
    return CredentialStatusResponse(
        connection_id=connection_id,
        has_refresh_token=credential.refresh_token_encrypted is not None,
        expires_at=credential.expires_at,
        scope=credential.scope,
    )


@router.post("/{connection_id}/test", response_model=ConnectionTestResponse)
async def test_connection(
    connection_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    result = await engine.registry.test_connection(
        connection_id,
        actor=actor,
        tenant_id=actor.tenant_id,
    )
    return ConnectionTestResponse(
        connection_id=result.connection_id,
        ok=result.ok,
        checked_at=result.checked_at,
        fhir_version=result.fhir_version,
        software=result.software,
        token_endpoint=result.token_endpoint,
        error_code=result.error_code,
        message=result.message,
    )


@router.get("/{connection_id}/status", response_model=ConnectionStatusResponse)
async def get_connection_status(
    connection_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    """Connection status, latest pass summary and open conflict count."""
    report = await engine.reporting.get_connection_status(connection_id, tenant_id=actor.tenant_id)
    return ConnectionStatusResponse(
        connection_id=report.connection.id,
        name=report.connection.name,
        status=report.connection.status,
        last_sync_at=report.connection.last_sync_at,
        last_error=report.connection.last_error,
        open_conflicts=report.open_conflicts,
        latest_sync=(
            SyncLogSummary.model_validate(report.latest_sync)
            if report.latest_sync is not None
            else None
        ),
    )
