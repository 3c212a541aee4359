from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from fhirsync.api.deps import get_engine, require_admin
from fhirsync.models import utcnow
from fhirsync.schemas.sync import AuditEventResponse, AuditVerifyResponse
from fhirsync.services.audit import Actor, verify_chain
from fhirsync.services.engine import SyncEngine
from fhirsync.services.reporting import clamp_limit

router = APIRouter(prefix="/audit", tags=["Audit"])

DEFAULT_AUDIT_WINDOW = timedelta(days=7)


def _window(start: Optional[datetime], end: Optional[datetime]) -> tuple[datetime, datetime]:
    end = end or utcnow()
    start = start or end - DEFAULT_AUDIT_WINDOW
    if start >= end:
        raise HTTPException(status_code=422, detail="start must be before end")
    return start, end


@router.get("", response_model=list[AuditEventResponse])
async def query_by_date_range(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Audit events in ``[start, end)``, oldest first. Defaults to the last 7 days."""
    start, end = _window(start, end)
    return await engine.audit.query_by_date_range(
        start,
        end,
        tenant_id=actor.tenant_id,
        skip=skip,
        limit=clamp_limit(limit),
    )


@router.get("/verify", response_model=AuditVerifyResponse)
async def verify_audit_chain(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    """Recompute hashes and links for the window; only ids of broken events are returned."""
    start, end = _window(start, end)
    events = []
    skip = 0
    while True:
        page = await engine.audit.query_by_date_range(start, end, skip=skip, limit=1000)
        events.extend(page)
        if len(page) < 1000:
            break
        skip += 1000
    events.sort(key=lambda event: event.id)
    return AuditVerifyResponse(checked=len(events), broken_ids=verify_chain(events))


@router.get("/{target_type}/{target_id}", response_model=list[AuditEventResponse])
async def query_by_entity(
    target_type: str,
    target_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1),
    engine: SyncEngine = Depends(get_engine),
    actor: Actor = Depends(require_admin),
):
    return await engine.audit.query_by_entity(
        target_type,
        target_id,
        tenant_id=actor.tenant_id,
        skip=skip,
        limit=clamp_limit(limit),
    )
