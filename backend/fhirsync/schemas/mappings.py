"""Schemas for patient identity mappings."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MappingResolveRequest(BaseModel):
    patient_id: int = Field(..., gt=0)


class MappingCreate(BaseModel):
    patient_id: int = Field(..., gt=0)
    fhir_patient_id: str = Field(..., min_length=1, max_length=128)


class MappingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    patient_id: int
    connection_id: int
    fhir_patient_id: str
    sync_status: str
    match_method: str
    last_synced_at: datetime | None = None
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None
    is_tombstoned: bool
    created_at: datetime
