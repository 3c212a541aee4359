"""Internal patients and their links to external FHIR patients."""

from datetime import date, datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from fhirsync.models.base import Base, TimestampMixin


class MappingStatus(StrEnum):
    synced = "synced"
    pending = "pending"
    conflict = "conflict"
    error = "error"


class Patient(Base, TimestampMixin):
    """Platform patient identity used for matching against EHR servers."""

    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    mrn: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class PatientMapping(Base, TimestampMixin):
    """Link between one internal patient and one FHIR Patient on a connection."""

    __tablename__ = "fhir_patient_mappings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    connection_id: Mapped[int] = mapped_column(
        ForeignKey("fhir_connections.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    fhir_patient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sync_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=MappingStatus.pending.value,
        comment="synced|pending|conflict|error",
    )
    match_method: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="manual",
        comment="identifier|demographics|manual",
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    confirmed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_tombstoned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tombstoned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "patient_id",
            "connection_id",
            name="uq_fhir_patient_mappings_patient_connection",
        ),
        Index(
            "ix_fhir_patient_mappings_connection_fhir_id",
            "connection_id",
            "fhir_patient_id",
        ),
    )

    @property
    def subject_reference(self) -> str:
        return f"Patient/{self.fhir_patient_id}"

    def __repr__(self) -> str:
        return (
            f"<PatientMapping(patient_id={self.patient_id}, connection_id={self.connection_id}, "
            f"status='{self.sync_status}')>"
        )
