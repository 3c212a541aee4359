"""Writes to the local clinical record store."""

from __future__ import annotations

import uuid
from typing import Optional

from fhirsync.models import ClinicalRecord
from fhirsync.schemas.records import ClinicalRecordPayload
from fhirsync.services.store import SyncStore


def new_record_key() -> str:
    return uuid.uuid4().hex


async def write_local_record(
    store: SyncStore,
    record: ClinicalRecordPayload,
    *,
    tenant_id: str,
    patient_id: int,
    record_key: Optional[str] = None,
) -> ClinicalRecord:
    """Insert or replace the payload stored under ``record_key``."""
    existing = await store.get_record(record_key) if record_key else None
    payload = record.model_dump(mode="json")
    if existing is not None:
        existing.payload = payload
        return await store.save(existing)
    row = ClinicalRecord(
        tenant_id=tenant_id,
        patient_id=patient_id,
        record_key=record_key or new_record_key(),
        resource_type=record.resource_type,
        payload=payload,
        origin="remote",
    )
    return await store.add(row)
