"""Persistence gateway for the sync engine.

Services talk to a ``SyncStore`` rather than to a session directly so that
passes can run against PostgreSQL in production and against the in-memory
store in tests and local demos.
"""

from __future__ import annotations

import zlib
from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime
from typing import Optional, Protocol, TypeVar

from sqlalchemy import func, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from fhirsync.models import (
    AuditEvent,
    AuditImmutableError,
    Base,
    ClinicalRecord,
    ConflictStatus,
    ConnectionCredential,
    FhirConnection,
    Patient,
    PatientMapping,
    ResourceSync,
    ResourceSyncStatus,
    SyncConflict,
    SyncLog,
    apply_column_defaults,
    utcnow,
)

ModelT = TypeVar("ModelT", bound=Base)


class SyncStore(Protocol):
    async def add(self, instance: ModelT) -> ModelT:
        ...

    async def save(self, instance: ModelT) -> ModelT:
        ...

    async def delete(self, instance: Base) -> None:
        ...

    async def try_advisory_lock(self, key: int) -> bool:
        ...

    async def get_connection(self, connection_id: int) -> Optional[FhirConnection]:
        ...

    async def list_connections(
        self,
        *,
        tenant_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[FhirConnection]:
        ...

    async def get_credential(self, connection_id: int) -> Optional[ConnectionCredential]:
        ...

    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        ...

    async def get_mapping(self, mapping_id: int) -> Optional[PatientMapping]:
        ...

    async def find_mapping(self, *, patient_id: int, connection_id: int) -> Optional[PatientMapping]:
        ...

    async def find_mapping_by_fhir_id(
        self,
        *,
        connection_id: int,
        fhir_patient_id: str,
    ) -> Optional[PatientMapping]:
        ...

    async def list_mappings(
        self,
        *,
        connection_id: int,
        statuses: Optional[Sequence[str]] = None,
        patient_ids: Optional[Sequence[int]] = None,
        include_tombstoned: bool = False,
        skip: int = 0,
        limit: int = 1000,
    ) -> list[PatientMapping]:
        ...

    async def get_record(self, record_key: str) -> Optional[ClinicalRecord]:
        ...

    async def list_records(
        self,
        *,
        patient_id: int,
        resource_types: Sequence[str],
    ) -> list[ClinicalRecord]:
        ...

    async def latest_baseline(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[ResourceSync]:
        ...

    async def get_sync_log(self, sync_log_id: int) -> Optional[SyncLog]:
        ...

    async def list_sync_logs(self, *, connection_id: int, skip: int = 0, limit: int = 20) -> list[SyncLog]:
        ...

    async def list_resource_syncs(self, sync_log_id: int) -> list[ResourceSync]:
        ...

    async def get_conflict(self, conflict_id: int) -> Optional[SyncConflict]:
        ...

    async def find_open_conflict(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[SyncConflict]:
        ...

    async def list_conflicts(
        self,
        *,
        tenant_id: Optional[str] = None,
        connection_id: Optional[int] = None,
        status: Optional[str] = ConflictStatus.open.value,
        skip: int = 0,
        limit: int = 50,
    ) -> list[SyncConflict]:
        ...

    async def count_open_conflicts(self, *, connection_id: int, patient_id: Optional[int] = None) -> int:
        ...

    async def lock_audit_chain(self) -> None:
        ...

    async def last_audit_event(self) -> Optional[AuditEvent]:
        ...

    async def query_audit(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        ...


class SQLSyncStore:
    """SQLAlchemy-backed store bound to one session (one pass or one request)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, instance: ModelT) -> ModelT:
        self.db.add(instance)
        await self.db.flush()
        return instance

    async def save(self, instance: ModelT) -> ModelT:
        self.db.add(instance)
        await self.db.flush()
        return instance

    async def delete(self, instance: Base) -> None:
        await self.db.delete(instance)
        await self.db.flush()

    async def try_advisory_lock(self, key: int) -> bool:
        # Transaction-scoped: released when the pass's session commits or rolls back.
        result = await self.db.execute(
            text("SELECT pg_try_advisory_xact_lock(:namespace, :key)"),
            {"namespace": _ADVISORY_NAMESPACE, "key": key},
        )
        return bool(result.scalar())

    async def get_connection(self, connection_id: int) -> Optional[FhirConnection]:
        return await self.db.get(FhirConnection, connection_id)

    async def list_connections(
        self,
        *,
        tenant_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[FhirConnection]:
        query = select(FhirConnection)
        if tenant_id is not None:
            query = query.where(FhirConnection.tenant_id == tenant_id)
        if statuses:
            query = query.where(FhirConnection.status.in_(list(statuses)))
        query = query.order_by(FhirConnection.id.asc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_credential(self, connection_id: int) -> Optional[ConnectionCredential]:
        result = await self.db.execute(
            select(ConnectionCredential).where(ConnectionCredential.connection_id == connection_id)
        )
        return result.scalar_one_or_none()

    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        return await self.db.get(Patient, patient_id)

    async def get_mapping(self, mapping_id: int) -> Optional[PatientMapping]:
        return await self.db.get(PatientMapping, mapping_id)

    async def find_mapping(self, *, patient_id: int, connection_id: int) -> Optional[PatientMapping]:
        result = await self.db.execute(
            select(PatientMapping).where(
                PatientMapping.patient_id == patient_id,
                PatientMapping.connection_id == connection_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_mapping_by_fhir_id(
        self,
        *,
        connection_id: int,
        fhir_patient_id: str,
    ) -> Optional[PatientMapping]:
        result = await self.db.execute(
            select(PatientMapping)
            .where(
                PatientMapping.connection_id == connection_id,
                PatientMapping.fhir_patient_id == fhir_patient_id,
                PatientMapping.is_tombstoned.is_(False),
            )
            .order_by(PatientMapping.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_mappings(
        self,
        *,
        connection_id: int,
        statuses: Optional[Sequence[str]] = None,
        patient_ids: Optional[Sequence[int]] = None,
        include_tombstoned: bool = False,
        skip: int = 0,
        limit: int = 1000,
    ) -> list[PatientMapping]:
        query = select(PatientMapping).where(PatientMapping.connection_id == connection_id)
        if statuses:
            query = query.where(PatientMapping.sync_status.in_(list(statuses)))
        if patient_ids:
            query = query.where(PatientMapping.patient_id.in_(list(patient_ids)))
        if not include_tombstoned:
            query = query.where(PatientMapping.is_tombstoned.is_(False))
        query = query.order_by(PatientMapping.id.asc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_record(self, record_key: str) -> Optional[ClinicalRecord]:
        result = await self.db.execute(
            select(ClinicalRecord).where(ClinicalRecord.record_key == record_key)
        )
        return result.scalar_one_or_none()

    async def list_records(
        self,
        *,
        patient_id: int,
        resource_types: Sequence[str],
    ) -> list[ClinicalRecord]:
        result = await self.db.execute(
            select(ClinicalRecord)
            .where(
                ClinicalRecord.patient_id == patient_id,
                ClinicalRecord.resource_type.in_(list(resource_types)),
            )
            .order_by(ClinicalRecord.id.asc())
        )
        return list(result.scalars().all())

    async def latest_baseline(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[ResourceSync]:
        if resource_id is None and local_record_key is None:
            return None
        query = select(ResourceSync).where(
            ResourceSync.connection_id == connection_id,
            ResourceSync.resource_type == resource_type,
            ResourceSync.status == ResourceSyncStatus.synced.value,
        )
        if resource_id is not None:
            query = query.where(ResourceSync.resource_id == resource_id)
        else:
            query = query.where(ResourceSync.local_record_key == local_record_key)
        result = await self.db.execute(query.order_by(ResourceSync.id.desc()).limit(1))
        return result.scalar_one_or_none()

    async def get_sync_log(self, sync_log_id: int) -> Optional[SyncLog]:
        return await self.db.get(SyncLog, sync_log_id)

    async def list_sync_logs(self, *, connection_id: int, skip: int = 0, limit: int = 20) -> list[SyncLog]:
        result = await self.db.execute(
            select(SyncLog)
            .where(SyncLog.connection_id == connection_id)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_resource_syncs(self, sync_log_id: int) -> list[ResourceSync]:
        result = await self.db.execute(
            select(ResourceSync)
            .where(ResourceSync.sync_log_id == sync_log_id)
            .order_by(ResourceSync.id.asc())
        )
        return list(result.scalars().all())

    async def get_conflict(self, conflict_id: int) -> Optional[SyncConflict]:
        return await self.db.get(SyncConflict, conflict_id)

    async def find_open_conflict(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[SyncConflict]:
        keys = []
        if resource_id is not None:
            keys.append(SyncConflict.resource_id == resource_id)
        if local_record_key is not None:
            keys.append(SyncConflict.local_record_key == local_record_key)
        if not keys:
            return None
        result = await self.db.execute(
            select(SyncConflict)
            .where(
                SyncConflict.connection_id == connection_id,
                SyncConflict.resource_type == resource_type,
                SyncConflict.status == ConflictStatus.open.value,
                or_(*keys),
            )
            .order_by(SyncConflict.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_conflicts(
        self,
        *,
        tenant_id: Optional[str] = None,
        connection_id: Optional[int] = None,
        status: Optional[str] = ConflictStatus.open.value,
        skip: int = 0,
        limit: int = 50,
    ) -> list[SyncConflict]:
        query = select(SyncConflict)
        if tenant_id is not None:
            query = query.where(SyncConflict.tenant_id == tenant_id)
        if connection_id is not None:
            query = query.where(SyncConflict.connection_id == connection_id)
        if status is not None:
            query = query.where(SyncConflict.status == status)
        query = query.order_by(SyncConflict.created_at.desc(), SyncConflict.id.desc())
        result = await self.db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())

    async def count_open_conflicts(self, *, connection_id: int, patient_id: Optional[int] = None) -> int:
        query = select(func.count(SyncConflict.id)).where(
            SyncConflict.connection_id == connection_id,
            SyncConflict.status == ConflictStatus.open.value,
        )
        if patient_id is not None:
            query = query.where(SyncConflict.patient_id == patient_id)
        return int(await self.db.scalar(query) or 0)

    async def lock_audit_chain(self) -> None:
        # Blocks until other transactions appending to the chain commit.
        await self.db.execute(
            text("SELECT pg_advisory_xact_lock(:namespace, :key)"),
            {"namespace": _ADVISORY_NAMESPACE, "key": _AUDIT_CHAIN_KEY},
        )

    async def last_audit_event(self) -> Optional[AuditEvent]:
        result = await self.db.execute(select(AuditEvent).order_by(AuditEvent.id.desc()).limit(1))
        return result.scalar_one_or_none()

    async def query_audit(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        query = select(AuditEvent)
        if start is not None:
            query = query.where(AuditEvent.created_at >= start)
        if end is not None:
            query = query.where(AuditEvent.created_at < end)
        if target_type is not None:
            query = query.where(AuditEvent.target_type == target_type)
        if target_id is not None:
            query = query.where(AuditEvent.target_id == target_id)
        if tenant_id is not None:
            query = query.where(AuditEvent.tenant_id == tenant_id)
        query = query.order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        result = await self.db.execute(query.offset(skip).limit(limit))
        return list(result.scalars().all())


# Keeps advisory lock keys for connections apart from other users of the database.
_ADVISORY_NAMESPACE = zlib.crc32(b"fhirsync.connection") & 0x7FFFFFFF
# Connection ids are positive, so the chain lock cannot collide with one.
_AUDIT_CHAIN_KEY = 0


class InMemorySyncStore:
    """In-memory store for tests and local demos."""

    def __init__(self):
        self._rows: dict[type, list[Base]] = defaultdict(list)
        self._next_ids: dict[type, int] = defaultdict(lambda: 1)

    def _all(self, model: type[ModelT]) -> list[ModelT]:
        return list(self._rows[model])

    async def add(self, instance: ModelT) -> ModelT:
        model = type(instance)
        apply_column_defaults(instance)
        if instance not in self._rows[model]:
            if getattr(instance, "id", None) is None:
                instance.id = self._next_ids[model]
            self._next_ids[model] = max(self._next_ids[model], instance.id) + 1
            self._rows[model].append(instance)
        return instance

    async def save(self, instance: ModelT) -> ModelT:
        if isinstance(instance, AuditEvent):
            raise AuditImmutableError(f"Audit event {instance.id} is append-only")
        if hasattr(instance, "updated_at"):
            instance.updated_at = utcnow()
        return await self.add(instance)

    async def delete(self, instance: Base) -> None:
        if isinstance(instance, AuditEvent):
            raise AuditImmutableError(f"Audit event {instance.id} is append-only")
        rows = self._rows[type(instance)]
        if instance in rows:
            rows.remove(instance)

    async def try_advisory_lock(self, key: int) -> bool:
        return True

    async def get_connection(self, connection_id: int) -> Optional[FhirConnection]:
        return next((c for c in self._all(FhirConnection) if c.id == connection_id), None)

    async def list_connections(
        self,
        *,
        tenant_id: Optional[str] = None,
        statuses: Optional[Sequence[str]] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[FhirConnection]:
        connections = self._all(FhirConnection)
        if tenant_id is not None:
            connections = [c for c in connections if c.tenant_id == tenant_id]
        if statuses:
            connections = [c for c in connections if c.status in statuses]
        connections.sort(key=lambda c: c.id)
        return connections[skip : skip + limit]

    async def get_credential(self, connection_id: int) -> Optional[ConnectionCredential]:
        return next(
            (c for c in self._all(ConnectionCredential) if c.connection_id == connection_id),
            None,
        )

    async def get_patient(self, patient_id: int) -> Optional[Patient]:
        return next((p for p in self._all(Patient) if p.id == patient_id), None)

    async def get_mapping(self, mapping_id: int) -> Optional[PatientMapping]:
        return next((m for m in self._all(PatientMapping) if m.id == mapping_id), None)

    async def find_mapping(self, *, patient_id: int, connection_id: int) -> Optional[PatientMapping]:
        return next(
            (
                m
                for m in self._all(PatientMapping)
                if m.patient_id == patient_id and m.connection_id == connection_id
            ),
            None,
        )

    async def find_mapping_by_fhir_id(
        self,
        *,
        connection_id: int,
        fhir_patient_id: str,
    ) -> Optional[PatientMapping]:
        return next(
            (
                m
                for m in self._all(PatientMapping)
                if m.connection_id == connection_id
                and m.fhir_patient_id == fhir_patient_id
                and not m.is_tombstoned
            ),
            None,
        )

    async def list_mappings(
        self,
        *,
        connection_id: int,
        statuses: Optional[Sequence[str]] = None,
        patient_ids: Optional[Sequence[int]] = None,
        include_tombstoned: bool = False,
        skip: int = 0,
        limit: int = 1000,
    ) -> list[PatientMapping]:
        mappings = [m for m in self._all(PatientMapping) if m.connection_id == connection_id]
        if statuses:
            mappings = [m for m in mappings if m.sync_status in statuses]
        if patient_ids:
            mappings = [m for m in mappings if m.patient_id in patient_ids]
        if not include_tombstoned:
            mappings = [m for m in mappings if not m.is_tombstoned]
        mappings.sort(key=lambda m: m.id)
        return mappings[skip : skip + limit]

    async def get_record(self, record_key: str) -> Optional[ClinicalRecord]:
        return next((r for r in self._all(ClinicalRecord) if r.record_key == record_key), None)

    async def list_records(
        self,
        *,
        patient_id: int,
        resource_types: Sequence[str],
    ) -> list[ClinicalRecord]:
        records = [
            r
            for r in self._all(ClinicalRecord)
            if r.patient_id == patient_id and r.resource_type in resource_types
        ]
        return sorted(records, key=lambda r: r.id)

    async def latest_baseline(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[ResourceSync]:
        if resource_id is None and local_record_key is None:
            return None
        candidates = [
            r
            for r in self._all(ResourceSync)
            if r.connection_id == connection_id
            and r.resource_type == resource_type
            and r.status == ResourceSyncStatus.synced.value
            and (
                r.resource_id == resource_id
                if resource_id is not None
                else r.local_record_key == local_record_key
            )
        ]
        return max(candidates, key=lambda r: r.id, default=None)

    async def get_sync_log(self, sync_log_id: int) -> Optional[SyncLog]:
        return next((log for log in self._all(SyncLog) if log.id == sync_log_id), None)

    async def list_sync_logs(self, *, connection_id: int, skip: int = 0, limit: int = 20) -> list[SyncLog]:
        logs = [log for log in self._all(SyncLog) if log.connection_id == connection_id]
        logs.sort(key=lambda log: (log.started_at, log.id), reverse=True)
        return logs[skip : skip + limit]

    async def list_resource_syncs(self, sync_log_id: int) -> list[ResourceSync]:
        return sorted(
            (r for r in self._all(ResourceSync) if r.sync_log_id == sync_log_id),
            key=lambda r: r.id,
        )

    async def get_conflict(self, conflict_id: int) -> Optional[SyncConflict]:
        return next((c for c in self._all(SyncConflict) if c.id == conflict_id), None)

    async def find_open_conflict(
        self,
        *,
        connection_id: int,
        resource_type: str,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[SyncConflict]:
        for conflict in sorted(self._all(SyncConflict), key=lambda c: c.id):
            if (
                conflict.connection_id != connection_id
                or conflict.resource_type != resource_type
                or conflict.status != ConflictStatus.open.value
            ):
                continue
            if resource_id is not None and conflict.resource_id == resource_id:
                return conflict
            if local_record_key is not None and conflict.local_record_key == local_record_key:
                return conflict
        return None

    async def list_conflicts(
        self,
        *,
        tenant_id: Optional[str] = None,
        connection_id: Optional[int] = None,
        status: Optional[str] = ConflictStatus.open.value,
        skip: int = 0,
        limit: int = 50,
    ) -> list[SyncConflict]:
        conflicts = self._all(SyncConflict)
        if tenant_id is not None:
            conflicts = [c for c in conflicts if c.tenant_id == tenant_id]
        if connection_id is not None:
            conflicts = [c for c in conflicts if c.connection_id == connection_id]
        if status is not None:
            conflicts = [c for c in conflicts if c.status == status]
        conflicts.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return conflicts[skip : skip + limit]

    async def count_open_conflicts(self, *, connection_id: int, patient_id: Optional[int] = None) -> int:
        return sum(
            1
            for c in self._all(SyncConflict)
            if c.connection_id == connection_id
            and c.status == ConflictStatus.open.value
            and (patient_id is None or c.patient_id == patient_id)
        )

    async def lock_audit_chain(self) -> None:
        return None

    async def last_audit_event(self) -> Optional[AuditEvent]:
        return max(self._all(AuditEvent), key=lambda e: e.id, default=None)

    async def query_audit(
        self,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = self._all(AuditEvent)
        if start is not None:
            events = [e for e in events if e.created_at >= start]
        if end is not None:
            events = [e for e in events if e.created_at < end]
        if target_type is not None:
            events = [e for e in events if e.target_type == target_type]
        if target_id is not None:
            events = [e for e in events if e.target_id == target_id]
        if tenant_id is not None:
            events = [e for e in events if e.tenant_id == tenant_id]
        events.sort(key=lambda e: (e.created_at, e.id))
        return events[skip : skip + limit]

    def all(self, model: type[ModelT]) -> list[ModelT]:
        """Snapshot of every stored row of ``model``."""
        return self._all(model)

    def clear(self) -> None:
        self._rows.clear()
        self._next_ids.clear()
