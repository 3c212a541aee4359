"""Append-only audit recorder with a SHA-256 hash chain."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from fhirsync.models import AuditEvent, utcnow
from fhirsync.services.locks import KeyedLocks
from fhirsync.services.store import SyncStore

logger = logging.getLogger("fhirsync.audit")

# Chain links are computed from the latest event, so appends are serialized
# within the process here and across processes by the store's chain lock.
_chain_locks = KeyedLocks()


@dataclass(frozen=True)
class Actor:
    """Who performed an audited action."""

    actor_type: str
    actor_id: str
    tenant_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.actor_type}:{self.actor_id}"


SYSTEM_ACTOR = Actor(actor_type="system", actor_id="fhirsync", role="system")


def _canonical(payload: dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_record_hash(event: AuditEvent) -> str:
    created_at = event.created_at.astimezone(timezone.utc).isoformat() if event.created_at else ""
    body = {
        "tenant_id": event.tenant_id,
        "actor_type": event.actor_type,
        "actor_id": event.actor_id,
        "action": event.action,
        "target_type": event.target_type,
        "target_id": event.target_id,
        "outcome": event.outcome,
        "details": event.details,
        "created_at": created_at,
        "previous_hash": event.previous_hash or "",
    }
    return hashlib.sha256(_canonical(body).encode("utf-8")).hexdigest()


class AuditRecorder:
    """Records credential refreshes, passes, mutations and resolutions.

    Only ``append`` and the query methods exist; stored events are never
    updated or deleted.
    """

    def __init__(self, store: SyncStore):
        self.store = store

    async def append(
        self,
        *,
        action: str,
        target_type: str,
        target_id: Any,
        actor: Actor = SYSTEM_ACTOR,
        tenant_id: Optional[str] = None,
        outcome: str = "success",
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEvent:
        async with _chain_locks.get("audit-chain"):
            await self.store.lock_audit_chain()
            previous = await self.store.last_audit_event()
            event = AuditEvent(
                tenant_id=tenant_id if tenant_id is not None else actor.tenant_id,
                actor_type=actor.actor_type,
                actor_id=actor.actor_id,
                action=action,
                target_type=target_type,
                target_id=str(target_id),
                outcome=outcome,
                details=_canonical(details) if details else None,
                previous_hash=previous.record_hash if previous is not None else None,
                created_at=utcnow(),
            )
            event.record_hash = compute_record_hash(event)
            await self.store.add(event)
        logger.debug(
            "Audit %s %s:%s outcome=%s actor=%s",
            action,
            target_type,
            target_id,
            outcome,
            actor.label,
        )
        return event

    async def query_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return await self.store.query_audit(
            start=start,
            end=end,
            tenant_id=tenant_id,
            skip=skip,
            limit=limit,
        )

    async def query_by_entity(
        self,
        target_type: str,
        target_id: Any,
        *,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return await self.store.query_audit(
            target_type=target_type,
            target_id=str(target_id),
            tenant_id=tenant_id,
            skip=skip,
            limit=limit,
        )


def verify_chain(events: list[AuditEvent]) -> list[int]:
    """Return ids of events whose hash or link does not check out.

    ``events`` must be a contiguous run ordered by id.
    """
    broken: list[int] = []
    previous_hash: Optional[str] = None
    for index, event in enumerate(events):
        if compute_record_hash(event) != event.record_hash:
            broken.append(event.id)
        elif index > 0 and event.previous_hash != previous_hash:
            broken.append(event.id)
        previous_hash = event.record_hash
    return broken
