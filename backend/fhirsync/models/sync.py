"""Write-once artifacts of sync passes: logs, per-resource outcomes and conflicts."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fhirsync.models.base import Base, utcnow


class SyncType(StrEnum):
    full = "full"
    incremental = "incremental"
    manual = "manual"


class SyncStatus(StrEnum):
    success = "success"
    partial = "partial"
    failed = "failed"


class ResourceSyncStatus(StrEnum):
    synced = "synced"
    conflict = "conflict"
    error = "error"
    skipped = "skipped"


class ConflictStrategy(StrEnum):
    use_local = "use_local"
    use_remote = "use_remote"
    merge = "merge"
    manual = "manual"


class ConflictStatus(StrEnum):
    open = "open"
    resolved = "resolved"


class SyncLog(Base):
    """One execution of the orchestrator against one connection.

    Written once when the pass closes and never updated afterwards.
    """

    __tablename__ = "fhir_sync_logs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("fhir_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    sync_type: Mapped[str] = mapped_column(String(16), nullable=False)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="success|partial|failed",
    )
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[list[dict]] = mapped_column(JSON, nullable=False, default=list)
    summary: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    triggered_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_fhir_sync_logs_connection_started", "connection_id", "started_at"),
    )

    def __repr__(self) -> str:
        return f"<SyncLog(id={self.id}, connection_id={self.connection_id}, status='{self.status}')>"


class ResourceSync(Base):
    """Outcome for one resource instance within one pass.

    Rows with status ``synced`` are the baselines used to detect change on
    either side.
    """

    __tablename__ = "fhir_resource_syncs"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    sync_log_id: Mapped[int | None] = mapped_column(
        ForeignKey("fhir_sync_logs.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Null only for baselines written by an administrator resolution",
    )
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("fhir_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    patient_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    local_record_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    direction: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="synced|conflict|error|skipped",
    )
    local_version: Mapped[str | None] = mapped_column(String(80), nullable=True)
    remote_version: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index(
            "ix_fhir_resource_syncs_remote",
            "connection_id",
            "resource_type",
            "resource_id",
        ),
        Index(
            "ix_fhir_resource_syncs_local",
            "connection_id",
            "resource_type",
            "local_record_key",
        ),
    )


class SyncConflict(Base):
    """Divergent concurrent edits to one resource."""

    __tablename__ = "fhir_sync_conflicts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("fhir_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    resource_sync_id: Mapped[int | None] = mapped_column(
        ForeignKey("fhir_resource_syncs.id", ondelete="SET NULL"),
        nullable=True,
    )
    patient_id: Mapped[int] = mapped_column(Integer, nullable=False)
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    local_record_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conflict_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="concurrent_update",
    )
    local_value: Mapped[dict] = mapped_column(JSON, nullable=False)
    remote_value: Mapped[dict] = mapped_column(JSON, nullable=False)
    resolution_strategy: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="use_local|use_remote|merge|manual",
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ConflictStatus.open.value,
        comment="open|resolved",
    )
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_fhir_sync_conflicts_connection_status", "connection_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncConflict(id={self.id}, resource_type='{self.resource_type}', "
            f"status='{self.status}')>"
        )
