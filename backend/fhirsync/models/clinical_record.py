from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fhirsync.models.base import Base, TimestampMixin


class ClinicalRecord(Base, TimestampMixin):
    """Local copy of one clinical record in the internal record shape."""

    __tablename__ = "clinical_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
    )
    record_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    resource_type: Mapped[str] = mapped_column(String(40), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    origin: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="local",
        comment="local|remote",
    )

    __table_args__ = (
        Index("ix_clinical_records_patient_type", "patient_id", "resource_type"),
    )
