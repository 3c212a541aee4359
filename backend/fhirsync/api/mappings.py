from typing import Optional

from fastapi import APIRouter, Depends, Query, Response

from fhirsync.api.deps import get_current_actor, get_engine, require_admin
from fhirsync.schemas.mappings import MappingCreate, MappingResolveRequest, MappingResponse
from fhirsync.services.audit import Actor
from fhirsync.services.engine import SyncEngine
from fhirsync.services.reporting import clamp_limit

router = APIRouter(tags=["Patient Mappings"])


@router.get("/connections/{connection_id}/mappings", response_model=list[MappingResponse])
async def list_mappings(
    connection_id: int,
    status: Optional[str] = Query(None, pattern="^(synced|pending|conflict|error)$"),
    include_tombstoned: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(get_current_actor),
):
    return await engine.identity.list_mappings(
        connection_id,
        tenant_id=actor.tenant_id,
        status=status,
        include_tombstoned=include_tombstoned,
        skip=skip,
        limit=clamp_limit(limit),
    )


@router.post("/connections/{connection_id}/mappings/resolve", response_model=MappingResponse)
async def resolve_mapping(
    connection_id: int,
    payload: MappingResolveRequest,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Return the existing mapping or match the patient on the EHR as a pending candidate."""
    return await engine.identity.resolve_or_create_mapping(
        payload.patient_id,
        connection_id,
        actor=actor,
        tenant_id=actor.tenant_id,
    )


@router.post(
    "/connections/{connection_id}/mappings",
    response_model=MappingResponse,
    status_code=201,
)
async def create_mapping(
    connection_id: int,
    payload: MappingCreate,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.identity.create_manual_mapping(
        payload.patient_id,
        connection_id,
        payload.fhir_patient_id,
        actor=actor,
        tenant_id=actor.tenant_id,
    )


@router.post("/mappings/{mapping_id}/confirm", response_model=MappingResponse)
async def confirm_mapping(
    mapping_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.identity.confirm_mapping(mapping_id, actor=actor, tenant_id=actor.tenant_id)


@router.post("/mappings/{mapping_id}/reject", status_code=204)
async def reject_mapping(
    mapping_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    await engine.identity.reject_mapping(mapping_id, actor=actor, tenant_id=actor.tenant_id)
    return Response(status_code=204)


@router.post("/mappings/{mapping_id}/tombstone", response_model=MappingResponse)
async def tombstone_mapping(
    mapping_id: int,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.identity.tombstone_mapping(mapping_id, actor=actor, tenant_id=actor.tenant_id)
