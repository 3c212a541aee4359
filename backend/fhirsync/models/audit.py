"""Append-only compliance trail for sync activity."""

from datetime import datetime

from sqlalchemy import DateTime, Index, String, Text, event
from sqlalchemy.orm import Mapped, mapped_column

from fhirsync.models.base import Base, utcnow


class AuditImmutableError(RuntimeError):
    """Raised when code attempts to modify or delete an audit event."""


class AuditEvent(Base):
    """One audited action, chained to its predecessor by hash."""

    __tablename__ = "fhir_audit_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    actor_type: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="system|user",
    )
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="e.g. credential_refresh, sync_completed, conflict_resolved",
    )
    target_type: Mapped[str] = mapped_column(String(40), nullable=False)
    target_id: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="success",
        comment="success|failure|skipped",
    )
    details: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="JSON document; never contains token values",
    )
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    record_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_fhir_audit_events_target", "target_type", "target_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, action={self.action}, target={self.target_type}:{self.target_id})>"


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(_mapper, _connection, target: AuditEvent) -> None:
    raise AuditImmutableError(f"Audit event {target.id} is append-only")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: AuditEvent) -> None:
    raise AuditImmutableError(f"Audit event {target.id} is append-only")
