"""Schemas for sync passes, conflicts and the audit trail."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SyncTriggerRequest(BaseModel):
    sync_type: str = Field(default="manual", pattern="^(full|incremental|manual)$")
    direction: str | None = Field(default=None, pattern="^(pull|push|bidirectional)$")
    patient_ids: list[int] | None = None


class SyncErrorEntry(BaseModel):
    resource_type: str
    resource_id: str | None = None
    code: str
    message: str


class SyncLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    connection_id: int
    sync_type: str
    direction: str
    status: str
    records_processed: int
    records_succeeded: int
    records_failed: int
    errors: list[SyncErrorEntry]
    summary: dict[str, Any]
    triggered_by: str | None = None
    started_at: datetime
    completed_at: datetime


class ResourceSyncResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    resource_type: str
    resource_id: str | None = None
    local_record_key: str | None = None
    patient_id: int | None = None
    direction: str
    status: str
    local_version: str | None = None
    remote_version: str | None = None
    error: str | None = None


class SyncLogDetailResponse(SyncLogResponse):
    resources: list[ResourceSyncResponse]


class SyncTriggerResponse(BaseModel):
    connection_id: int
    started: bool
    sync_log: SyncLogResponse | None = None
    message: str | None = None


class ConflictResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    connection_id: int
    patient_id: int
    resource_type: str
    resource_id: str | None = None
    local_record_key: str | None = None
    conflict_type: str
    local_value: dict[str, Any]
    remote_value: dict[str, Any]
    resolution_strategy: str
    status: str
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime


class ConflictResolveRequest(BaseModel):
    strategy: str = Field(..., pattern="^(use_local|use_remote|merge)$")


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str | None = None
    actor_type: str
    actor_id: str
    action: str
    target_type: str
    target_id: str
    outcome: str
    details: str | None = None
    previous_hash: str | None = None
    record_hash: str
    created_at: datetime


class AuditVerifyResponse(BaseModel):
    checked: int
    broken_ids: list[int]
