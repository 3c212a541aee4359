from fhirsync.models.audit import AuditEvent, AuditImmutableError
from fhirsync.models.base import Base, TimestampMixin, apply_column_defaults, model_to_dict, utcnow
from fhirsync.models.clinical_record import ClinicalRecord
from fhirsync.models.connection import (
    ConnectionCredential,
    ConnectionStatus,
    EhrVendor,
    FhirConnection,
    SyncDirection,
    SyncFrequency,
)
from fhirsync.models.patient import MappingStatus, Patient, PatientMapping
from fhirsync.models.sync import (
    ConflictStatus,
    ConflictStrategy,
    ResourceSync,
    ResourceSyncStatus,
    SyncConflict,
    SyncLog,
    SyncStatus,
    SyncType,
)

__all__ = [
    "AuditEvent",
    "AuditImmutableError",
    "Base",
    "ClinicalRecord",
    "ConflictStatus",
    "ConflictStrategy",
    "ConnectionCredential",
    "ConnectionStatus",
    "EhrVendor",
    "FhirConnection",
    "MappingStatus",
    "Patient",
    "PatientMapping",
    "ResourceSync",
    "ResourceSyncStatus",
    "SyncConflict",
    "SyncDirection",
    "SyncFrequency",
    "SyncLog",
    "SyncStatus",
    "SyncType",
    "TimestampMixin",
    "apply_column_defaults",
    "model_to_dict",
    "utcnow",
]
