"""Schemas for connection administration and status reporting."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

_VENDOR_PATTERN = "^(epic|cerner|allscripts|generic)$"
_FREQUENCY_PATTERN = "^(realtime|hourly|daily|manual)$"
_DIRECTION_PATTERN = "^(pull|push|bidirectional)$"
_OWNER_PATTERN = "^(ehr|community)$"


class ConnectionBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    server_url: str = Field(..., min_length=1, max_length=500)
    vendor: str = Field(default="generic", pattern=_VENDOR_PATTERN)
    client_id: str | None = Field(default=None, max_length=200)
    sync_frequency: str = Field(default="manual", pattern=_FREQUENCY_PATTERN)
    sync_direction: str = Field(default="pull", pattern=_DIRECTION_PATTERN)
    resource_types: list[str] | None = None
    resource_owners: dict[str, str] | None = None
    patient_identifier_system: str | None = Field(default=None, max_length=255)


class ConnectionCreate(ConnectionBase):
    pass


class ConnectionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    server_url: str | None = Field(default=None, min_length=1, max_length=500)
    vendor: str | None = Field(default=None, pattern=_VENDOR_PATTERN)
    client_id: str | None = Field(default=None, max_length=200)
    sync_frequency: str | None = Field(default=None, pattern=_FREQUENCY_PATTERN)
    sync_direction: str | None = Field(default=None, pattern=_DIRECTION_PATTERN)
    resource_types: list[str] | None = None
    resource_owners: dict[str, str] | None = None
    patient_identifier_system: str | None = Field(default=None, max_length=255)


class ConnectionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    tenant_id: str
    name: str
    server_url: str
    vendor: str
    client_id: str | None = None
    status: str
    sync_frequency: str
    sync_direction: str
    resource_types: list[str]
    resource_owners: dict[str, str] | None = None
    patient_identifier_system: str | None = None
    last_sync_at: datetime | None = None
    last_tested_at: datetime | None = None
    last_error: str | None = None
    deactivated_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class CredentialUpsert(BaseModel):
    """Token set produced by the SMART authorization flow."""

    access_token: str = Field(..., min_length=1)
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, gt=0)
    token_endpoint: str | None = Field(default=None, max_length=500)
    client_secret: str | None = None
    scope: str | None = Field(default=None, max_length=500)


class CredentialStatusResponse(BaseModel):
    connection_id: int
    has_refresh_token: bool
    expires_at: datetime | None = None
    scope: str | None = None


class ConnectionTestResponse(BaseModel):
    connection_id: int
    ok: bool
    checked_at: datetime
    fhir_version: str | None = None
    software: str | None = None
    token_endpoint: str | None = None
    error_code: str | None = None
    message: str | None = None


class SyncLogSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    direction: str
    status: str
    records_processed: int
    records_succeeded: int
    records_failed: int
    started_at: datetime
    completed_at: datetime


class ConnectionStatusResponse(BaseModel):
    connection_id: int
    name: str
    status: str
    last_sync_at: datetime | None = None
    last_error: str | None = None
    open_conflicts: int
    latest_sync: SyncLogSummary | None = None
