"""Conflict detection outcomes, ownership policy and administrator resolution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fhirsync.config import settings
from fhirsync.models import (
    ConflictStatus,
    ConflictStrategy,
    FhirConnection,
    MappingStatus,
    ResourceSync,
    ResourceSyncStatus,
    SyncConflict,
    SyncDirection,
    utcnow,
)
from fhirsync.schemas.records import ClinicalRecordPayload
from fhirsync.services.audit import Actor, AuditRecorder, SYSTEM_ACTOR
from fhirsync.services.connections import ClientFactory, default_client_factory
from fhirsync.services.credentials import CredentialVault
from fhirsync.services.errors import (
    RESOURCE_LEVEL_ERRORS,
    ConflictAlreadyResolved,
    ConflictNotFound,
    ConnectionNotFound,
    InvalidResolutionStrategy,
    SyncInProgress,
    SyncServiceError,
)
from fhirsync.services.fhir_client import FhirClient
from fhirsync.services.local_records import write_local_record
from fhirsync.services.locks import SingleFlight
from fhirsync.services.store import SyncStore
from fhirsync.services.translator import parse_record, to_fhir
from fhirsync.services.versioning import carry_local_only, compute_version_marker, merge_records

logger = logging.getLogger("fhirsync.conflicts")

OWNER_STRATEGIES = {
    "ehr": ConflictStrategy.use_remote.value,
    "community": ConflictStrategy.use_local.value,
}

RESOLUTION_STRATEGIES = (
    ConflictStrategy.use_local.value,
    ConflictStrategy.use_remote.value,
    ConflictStrategy.merge.value,
)


def strategy_for(connection: FhirConnection, resource_type: str) -> str:
    """Ownership policy: EHR-owned types take the remote value, community-owned
    types keep the local value, anything else waits for an administrator."""
    owners = {**settings.sync_resource_owners, **(connection.resource_owners or {})}
    return OWNER_STRATEGIES.get(owners.get(resource_type, ""), ConflictStrategy.manual.value)


@dataclass
class Divergence:
    """Both sides of one resource moved past the last baseline."""

    connection: FhirConnection
    patient_id: int
    resource_type: str
    resource_id: str
    local_record_key: str
    subject_reference: Optional[str]
    local: ClinicalRecordPayload
    remote: ClinicalRecordPayload


@dataclass
class DivergenceOutcome:
    conflict: SyncConflict
    strategy: str
    resolved: bool
    local_version: str
    remote_version: str
    wrote_local: bool = False
    wrote_remote: bool = False
    error: Optional[str] = None


@dataclass
class AppliedResolution:
    local_version: str
    remote_version: str
    wrote_local: bool
    wrote_remote: bool


class ConflictResolver:
    def __init__(
        self,
        store: SyncStore,
        audit: AuditRecorder,
        vault: CredentialVault,
        *,
        single_flight: SingleFlight,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.store = store
        self.audit = audit
        self.vault = vault
        self.single_flight = single_flight
        self.client_factory = client_factory

    async def handle_divergence(self, divergence: Divergence, client: FhirClient) -> DivergenceOutcome:
        """Record a conflict and apply the owner policy when one is configured.

        Manual conflicts stay open and nothing is written to either side. An
        owner policy whose write is rejected falls back to a manual conflict;
        connection-level failures propagate without recording anything.
        """
        connection = divergence.connection
        strategy = strategy_for(connection, divergence.resource_type)
        conflict = SyncConflict(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            patient_id=divergence.patient_id,
            resource_type=divergence.resource_type,
            resource_id=divergence.resource_id,
            local_record_key=divergence.local_record_key,
            local_value=divergence.local.model_dump(mode="json"),
            remote_value=divergence.remote.model_dump(mode="json"),
            resolution_strategy=strategy,
            status=ConflictStatus.open.value,
        )

        if strategy == ConflictStrategy.manual.value:
            return await self._queue(divergence, conflict)

        try:
            applied = await self._apply(
                connection,
                client,
                strategy,
                conflict,
                local=divergence.local,
                remote=divergence.remote,
                subject_reference=divergence.subject_reference,
            )
        except RESOURCE_LEVEL_ERRORS as exc:
            logger.warning(
                "Applying %s to %s/%s failed on connection=%s: %s; queueing for review",
                strategy,
                divergence.resource_type,
                divergence.resource_id,
                connection.id,
                exc.code,
            )
            conflict.resolution_strategy = ConflictStrategy.manual.value
            return await self._queue(divergence, conflict, failed_strategy=strategy, error=exc)

        await self.store.add(conflict)
        await self._close(conflict, strategy, SYSTEM_ACTOR)
        logger.info(
            "Auto-resolved conflict id=%s %s/%s with %s",
            conflict.id,
            divergence.resource_type,
            divergence.resource_id,
            strategy,
        )
        await self.audit.append(
            action="conflict_auto_resolved",
            target_type="sync_conflict",
            target_id=conflict.id,
            tenant_id=connection.tenant_id,
            details={
                "connection_id": connection.id,
                "resource_type": divergence.resource_type,
                "resource_id": divergence.resource_id,
                "strategy": strategy,
                "wrote_local": applied.wrote_local,
                "wrote_remote": applied.wrote_remote,
            },
        )
        return DivergenceOutcome(
            conflict=conflict,
            strategy=strategy,
            resolved=True,
            local_version=applied.local_version,
            remote_version=applied.remote_version,
            wrote_local=applied.wrote_local,
            wrote_remote=applied.wrote_remote,
        )

    async def _queue(
        self,
        divergence: Divergence,
        conflict: SyncConflict,
        *,
        failed_strategy: Optional[str] = None,
        error: Optional[SyncServiceError] = None,
    ) -> DivergenceOutcome:
        connection = divergence.connection
        local_version = compute_version_marker(divergence.local)
        remote_version = compute_version_marker(divergence.remote)
        await self.store.add(conflict)
        await self._mark_mapping(connection.id, divergence.patient_id, MappingStatus.conflict.value)
        logger.info(
            "Queued manual conflict id=%s %s/%s connection=%s",
            conflict.id,
            divergence.resource_type,
            divergence.resource_id,
            connection.id,
        )
        details = {
            "connection_id": connection.id,
            "resource_type": divergence.resource_type,
            "resource_id": divergence.resource_id,
            "local_version": local_version,
            "remote_version": remote_version,
        }
        if error is not None:
            details.update(failed_strategy=failed_strategy, error_code=error.code)
        await self.audit.append(
            action="conflict_queued",
            target_type="sync_conflict",
            target_id=conflict.id,
            tenant_id=connection.tenant_id,
            details=details,
        )
        return DivergenceOutcome(
            conflict=conflict,
            strategy=conflict.resolution_strategy,
            resolved=False,
            local_version=local_version,
            remote_version=remote_version,
            error=f"{error.code}: {error.message}" if error is not None else None,
        )

    async def get_conflict(self, conflict_id: int, *, tenant_id: Optional[str] = None) -> SyncConflict:
        conflict = await self.store.get_conflict(conflict_id)
        if conflict is None or (tenant_id is not None and conflict.tenant_id != tenant_id):
            raise ConflictNotFound(f"Conflict {conflict_id} not found")
        return conflict

    async def resolve(
        self,
        conflict_id: int,
        strategy: str,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> SyncConflict:
        """Apply an administrator's decision, write a new baseline and close the conflict.

        Raises ``ConflictAlreadyResolved`` without touching any state when the
        conflict is already closed.
        """
        conflict = await self.get_conflict(conflict_id, tenant_id=tenant_id)
        if conflict.status == ConflictStatus.resolved.value:
            raise ConflictAlreadyResolved(f"Conflict {conflict.id} was already resolved")
        if strategy not in RESOLUTION_STRATEGIES:
            raise InvalidResolutionStrategy(
                f"Strategy must be one of {', '.join(RESOLUTION_STRATEGIES)}"
            )

        # Shares the pass guard so a resolution never races a pass on the same connection.
        if not self.single_flight.try_acquire(conflict.connection_id):
            raise SyncInProgress(
                f"A sync pass is running on connection {conflict.connection_id}; retry when it finishes"
            )
        try:
            connection = await self.store.get_connection(conflict.connection_id)
            if connection is None:
                raise ConnectionNotFound(f"Connection {conflict.connection_id} not found")
            local = parse_record(conflict.local_value)
            remote = parse_record(conflict.remote_value)
            mapping = await self.store.find_mapping(
                patient_id=conflict.patient_id,
                connection_id=connection.id,
            )
            subject_reference = (
                mapping.subject_reference
                if mapping is not None and conflict.resource_type != "Patient"
                else None
            )

            async def _token() -> Optional[str]:
                return await self.vault.get_valid_token(connection.id)

            client = self.client_factory(connection, _token)
            applied = await self._apply(
                connection,
                client,
                strategy,
                conflict,
                local=local,
                remote=remote,
                subject_reference=subject_reference,
            )
            baseline = ResourceSync(
                sync_log_id=None,
                connection_id=connection.id,
                patient_id=conflict.patient_id,
                resource_type=conflict.resource_type,
                resource_id=conflict.resource_id,
                local_record_key=conflict.local_record_key,
                direction="resolution",
                status=ResourceSyncStatus.synced.value,
                local_version=applied.local_version,
                remote_version=applied.remote_version,
            )
            await self.store.add(baseline)
            await self._close(conflict, strategy, actor)
            if not await self.store.count_open_conflicts(
                connection_id=connection.id,
                patient_id=conflict.patient_id,
            ):
                await self._mark_mapping(connection.id, conflict.patient_id, MappingStatus.synced.value)
        finally:
            self.single_flight.release(conflict.connection_id)

        logger.info("Conflict id=%s resolved with %s by %s", conflict.id, strategy, actor.label)
        await self.audit.append(
            action="conflict_resolved",
            target_type="sync_conflict",
            target_id=conflict.id,
            actor=actor,
            tenant_id=conflict.tenant_id,
            details={
                "strategy": strategy,
                "resource_type": conflict.resource_type,
                "resource_id": conflict.resource_id,
                "baseline_id": baseline.id,
                "wrote_local": applied.wrote_local,
                "wrote_remote": applied.wrote_remote,
            },
        )
        return conflict

    async def _apply(
        self,
        connection: FhirConnection,
        client: FhirClient,
        strategy: str,
        conflict: SyncConflict,
        *,
        local: ClinicalRecordPayload,
        remote: ClinicalRecordPayload,
        subject_reference: Optional[str],
    ) -> AppliedResolution:
        # Writes respect the connection direction: a pull-only connection is
        # never written remotely and a push-only one never locally.
        can_write_local = connection.sync_direction != SyncDirection.push.value
        can_write_remote = connection.sync_direction != SyncDirection.pull.value

        if strategy == ConflictStrategy.use_remote.value:
            local_target: Optional[ClinicalRecordPayload] = carry_local_only(remote, local)
            remote_target: Optional[ClinicalRecordPayload] = None
        elif strategy == ConflictStrategy.use_local.value:
            local_target = None
            remote_target = local
        else:
            merged = merge_records(local, remote)
            local_target = merged
            remote_target = merged

        wrote_local = wrote_remote = False
        local_version = compute_version_marker(local)
        remote_version = compute_version_marker(remote)

        if remote_target is not None and can_write_remote and conflict.resource_id:
            await client.update(
                conflict.resource_type,
                conflict.resource_id,
                to_fhir(
                    remote_target,
                    conflict.resource_type,
                    resource_id=conflict.resource_id,
                    subject_reference=subject_reference,
                ),
            )
            remote_version = compute_version_marker(remote_target)
            wrote_remote = True

        if local_target is not None and can_write_local:
            await write_local_record(
                self.store,
                local_target,
                tenant_id=connection.tenant_id,
                patient_id=conflict.patient_id,
                record_key=conflict.local_record_key,
            )
            local_version = compute_version_marker(local_target)
            wrote_local = True

        return AppliedResolution(
            local_version=local_version,
            remote_version=remote_version,
            wrote_local=wrote_local,
            wrote_remote=wrote_remote,
        )

    async def _close(self, conflict: SyncConflict, strategy: str, actor: Actor) -> None:
        conflict.status = ConflictStatus.resolved.value
        conflict.resolution_strategy = strategy
        conflict.resolved_by = actor.label
        conflict.resolved_at = utcnow()
        await self.store.save(conflict)

    async def _mark_mapping(self, connection_id: int, patient_id: int, status: str) -> None:
        mapping = await self.store.find_mapping(patient_id=patient_id, connection_id=connection_id)
        if mapping is None or mapping.is_tombstoned or mapping.sync_status == status:
            return
        if status == MappingStatus.synced.value and mapping.sync_status != MappingStatus.conflict.value:
            return
        mapping.sync_status = status
        await self.store.save(mapping)
