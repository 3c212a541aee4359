from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fhirsync.api.deps import get_current_actor, get_engine, require_admin
from fhirsync.schemas.sync import (
    ConflictResolveRequest,
    ConflictResponse,
    ResourceSyncResponse,
    SyncLogDetailResponse,
    SyncLogResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from fhirsync.services.audit import Actor
from fhirsync.services.engine import SyncEngine
from fhirsync.services.orchestrator import SyncRequest
from fhirsync.services.reporting import clamp_limit

router = APIRouter(tags=["Sync"])


@router.post("/connections/{connection_id}/sync", response_model=SyncTriggerResponse)
async def trigger_sync(
    connection_id: int,
    payload: SyncTriggerRequest,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Run a pass now. A pass already running on the connection is never queued behind."""
    sync_log = await engine.orchestrator.run(
        SyncRequest(
            connection_id=connection_id,
            sync_type=payload.sync_type,
            direction=payload.direction,
            patient_ids=payload.patient_ids,
            actor=actor,
            tenant_id=actor.tenant_id,
        )
    )
    if sync_log is None:
        return SyncTriggerResponse(
            connection_id=connection_id,
            started=False,
            message="A sync pass is already running for this connection",
        )
    return SyncTriggerResponse(
        connection_id=connection_id,
        started=True,
        sync_log=SyncLogResponse.model_validate(sync_log),
    )


@router.get("/connections/{connection_id}/sync-logs", response_model=list[SyncLogResponse])
async def list_sync_logs(
    connection_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    """Recent passes, newest first."""
    return await engine.reporting.get_recent_sync_logs(
        connection_id,
        tenant_id=actor.tenant_id,
        skip=skip,
        limit=clamp_limit(limit),
    )


@router.get("/sync-logs/{sync_log_id}", response_model=SyncLogDetailResponse)
async def get_sync_log(
    sync_log_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    found = await engine.reporting.get_sync_log(sync_log_id, tenant_id=actor.tenant_id)
    if found is None:
        raise HTTPException(status_code=404, detail="Sync log not found")
    sync_log, resources = found
    return SyncLogDetailResponse(
        **SyncLogResponse.model_validate(sync_log).model_dump(),
        resources=[ResourceSyncResponse.model_validate(item) for item in resources],
    )


@router.get("/conflicts", response_model=list[ConflictResponse])
async def list_conflicts(
    connection_id: Optional[int] = None,
    status: Optional[str] = Query("open", pattern="^(open|resolved)$"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return await engine.reporting.get_open_conflicts(
        tenant_id=actor.tenant_id,
        connection_id=connection_id,
        status=status,
        skip=skip,
        limit=clamp_limit(limit),
    )


@router.post("/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
async def resolve_conflict(
    conflict_id: int,
    payload: ConflictResolveRequest,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Apply a resolution strategy; a resolved conflict cannot be resolved again."""
    return await engine.resolver.resolve(
        conflict_id,
        payload.strategy,
        actor=actor,
        tenant_id=actor.tenant_id,
    )
