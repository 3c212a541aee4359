"""External EHR connection records and their stored OAuth credentials."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fhirsync.models.base import Base, TimestampMixin


class EhrVendor(StrEnum):
    epic = "epic"
    cerner = "cerner"
    allscripts = "allscripts"
    generic = "generic"


class ConnectionStatus(StrEnum):
    active = "active"
    inactive = "inactive"
    error = "error"


class SyncFrequency(StrEnum):
    realtime = "realtime"
    hourly = "hourly"
    daily = "daily"
    manual = "manual"


class SyncDirection(StrEnum):
    pull = "pull"
    push = "push"
    bidirectional = "bidirectional"


class FhirConnection(Base, TimestampMixin):
    """One external FHIR R4 endpoint owned by a tenant.

    Connections are soft-deactivated and never hard-deleted.
    """

    __tablename__ = "fhir_connections"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    server_url: Mapped[str] = mapped_column(String(500), nullable=False)
    vendor: Mapped[str] = mapped_column(
        String(24),
        nullable=False,
        default=EhrVendor.generic.value,
        comment="epic|cerner|allscripts|generic",
    )
    client_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ConnectionStatus.active.value,
        comment="active|inactive|error",
    )
    sync_frequency: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SyncFrequency.manual.value,
        comment="realtime|hourly|daily|manual",
    )
    sync_direction: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=SyncDirection.pull.value,
        comment="pull|push|bidirectional",
    )
    resource_types: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    resource_owners: Mapped[dict[str, str] | None] = mapped_column(
        JSON,
        nullable=True,
        comment="resource type -> ehr|community; overrides the global default",
    )
    patient_identifier_system: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Identifier system used for deterministic patient matching",
    )
    last_sync_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_tested_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("ix_fhir_connections_tenant_status", "tenant_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<FhirConnection(id={self.id}, vendor='{self.vendor}', status='{self.status}')>"


class ConnectionCredential(Base, TimestampMixin):
    """Encrypted OAuth2 token material for a connection."""

    __tablename__ = "fhir_connection_credentials"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("fhir_connections.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_endpoint: Mapped[str | None] = mapped_column(String(500), nullable=True)
    scope: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    refresh_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<ConnectionCredential(connection_id={self.connection_id})>"
