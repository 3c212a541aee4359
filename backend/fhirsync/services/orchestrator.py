"""Sync orchestrator: one pull, push or bidirectional pass for one connection.

A pass moves through ``started -> fetching -> translating -> writing ->
(conflicted | completed) -> closed``. Failures on a single resource are
recorded and the pass moves on; failures to authenticate or to reach the
server abort the pass. The ``SyncLog`` and its ``ResourceSync`` rows are
written once, when the pass closes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional, TypeVar

from fhirsync.config import settings
from fhirsync.logging import bind_request_id, new_correlation_id
from fhirsync.models import (
    ConnectionStatus,
    FhirConnection,
    MappingStatus,
    PatientMapping,
    ResourceSync,
    ResourceSyncStatus,
    SyncConflict,
    SyncDirection,
    SyncLog,
    SyncStatus,
    SyncType,
    utcnow,
)
from fhirsync.schemas.records import ClinicalRecordPayload
from fhirsync.services.audit import SYSTEM_ACTOR, Actor, AuditRecorder
from fhirsync.services.conflicts import ConflictResolver, Divergence
from fhirsync.services.connections import ClientFactory, default_client_factory
from fhirsync.services.credentials import CredentialVault
from fhirsync.services.errors import (
    CONNECTION_LEVEL_ERRORS,
    RESOURCE_LEVEL_ERRORS,
    AuthExpired,
    ConnectionNotActive,
    ConnectionNotFound,
    ConnectionUnauthorized,
    ConnectionValidationError,
    SyncServiceError,
    TranslationError,
)
from fhirsync.services.fhir_client import FhirClient
from fhirsync.services.local_records import write_local_record
from fhirsync.services.locks import CancellationRegistry, SingleFlight
from fhirsync.services.store import SyncStore
from fhirsync.services.translator import from_fhir, parse_record, to_fhir
from fhirsync.services.versioning import carry_local_only, compute_version_marker

logger = logging.getLogger("fhirsync.orchestrator")

T = TypeVar("T")

SUMMARY_TYPE_KEYS = {
    "Patient": "patients",
    "Observation": "observations",
    "Encounter": "encounters",
}

_MAPPING_BATCH = 500

# Extra search filters per resource type on top of the patient filter.
SEARCH_FILTERS: dict[str, dict[str, str]] = {
    "CarePlan": {"status": "active,on-hold"},
}


class PassState(StrEnum):
    started = "started"
    fetching = "fetching"
    translating = "translating"
    writing = "writing"
    conflicted = "conflicted"
    completed = "completed"
    closed = "closed"


class PassCancelled(Exception):
    """Raised between resources once the connection was deactivated."""


@dataclass
class SyncRequest:
    connection_id: int
    sync_type: str = SyncType.manual.value
    direction: Optional[str] = None
    patient_ids: Optional[list[int]] = None
    actor: Actor = SYSTEM_ACTOR
    tenant_id: Optional[str] = None


def _new_summary() -> dict[str, int]:
    return {
        "patients": 0,
        "observations": 0,
        "encounters": 0,
        "other_resources": 0,
        "created": 0,
        "updated": 0,
        "pushed": 0,
        "unchanged": 0,
        "conflicts": 0,
        "blocked": 0,
    }


@dataclass
class PassContext:
    connection: FhirConnection
    client: FhirClient
    direction: str
    sync_type: str
    actor: Actor
    started_at: datetime
    state: PassState = PassState.started
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=_new_summary)
    resource_syncs: list[ResourceSync] = field(default_factory=list)
    conflicts: list[tuple[ResourceSync, SyncConflict]] = field(default_factory=list)
    baselines: dict[tuple[str, str, str], ResourceSync] = field(default_factory=dict)
    pulled_keys: set[str] = field(default_factory=set)
    touched_patients: set[int] = field(default_factory=set)
    cancelled: bool = False
    aborted: Optional[SyncServiceError] = None
    auth_retry_used: bool = False
    unauthorized_retry_used: bool = False
    force_refresh: bool = False

    def move(self, state: PassState) -> None:
        if self.state != state:
            logger.debug("Pass connection=%s %s -> %s", self.connection.id, self.state, state)
            self.state = state

    def count_type(self, resource_type: str) -> None:
        self.summary[SUMMARY_TYPE_KEYS.get(resource_type, "other_resources")] += 1


class SyncOrchestrator:
    def __init__(
        self,
        store: SyncStore,
        audit: AuditRecorder,
        vault: CredentialVault,
        resolver: ConflictResolver,
        *,
        single_flight: SingleFlight,
        cancellations: CancellationRegistry,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.store = store
        self.audit = audit
        self.vault = vault
        self.resolver = resolver
        self.single_flight = single_flight
        self.cancellations = cancellations
        self.client_factory = client_factory

    async def run(self, request: SyncRequest) -> Optional[SyncLog]:
        """Run one pass and return its SyncLog.

        Returns None when another pass already holds the connection; the
        attempt is logged and audited, never queued.
        """
        connection = await self.store.get_connection(request.connection_id)
        if connection is None or (
            request.tenant_id is not None and connection.tenant_id != request.tenant_id
        ):
            raise ConnectionNotFound(f"Connection {request.connection_id} not found")
        if connection.status != ConnectionStatus.active.value:
            raise ConnectionNotActive(
                f"Connection {connection.id} is {connection.status}; reactivate it before syncing"
            )
        direction = self._direction(connection, request.direction)

        if not self.single_flight.try_acquire(connection.id):
            await self._skip(connection, request, "in_process")
            return None
        try:
            if settings.sync_advisory_locks and not await self.store.try_advisory_lock(connection.id):
                await self._skip(connection, request, "advisory_lock")
                return None
            with bind_request_id(new_correlation_id(f"sync-{connection.id}")):
                return await self._run_pass(connection, request, direction)
        finally:
            self.single_flight.release(connection.id)

    @staticmethod
    def _direction(connection: FhirConnection, requested: Optional[str]) -> str:
        configured = connection.sync_direction
        if requested is None or requested == configured:
            return configured
        if configured == SyncDirection.bidirectional.value and requested in (
            SyncDirection.pull.value,
            SyncDirection.push.value,
        ):
            return requested
        raise ConnectionValidationError(
            f"Connection {connection.id} is configured for {configured} sync only"
        )

    async def _skip(self, connection: FhirConnection, request: SyncRequest, guard: str) -> None:
        logger.info(
            "Skipping sync for connection=%s; a pass is already running (%s)",
            connection.id,
            guard,
        )
        await self.audit.append(
            action="sync_skipped",
            target_type="connection",
            target_id=connection.id,
            actor=request.actor,
            tenant_id=connection.tenant_id,
            outcome="skipped",
            details={"reason": "pass_in_progress", "guard": guard, "sync_type": request.sync_type},
        )

    async def _run_pass(
        self,
        connection: FhirConnection,
        request: SyncRequest,
        direction: str,
    ) -> SyncLog:
        ctx: Optional[PassContext] = None

        async def _token() -> Optional[str]:
            return await self._acquire_token(ctx)

        ctx = PassContext(
            connection=connection,
            client=self.client_factory(connection, _token),
            direction=direction,
            sync_type=request.sync_type,
            actor=request.actor,
            started_at=utcnow(),
        )
        logger.info(
            "Starting %s %s sync for connection=%s",
            request.sync_type,
            direction,
            connection.id,
        )
        try:
            # Fail fast on credentials before touching any patient.
            await self._acquire_token(ctx)
            mappings = await self._mappings(connection, request.patient_ids)
            if direction in (SyncDirection.pull.value, SyncDirection.bidirectional.value):
                for mapping in mappings:
                    await self._pull_patient(ctx, mapping)
            # Push only starts after every pulled resource has its conflict state settled.
            if direction in (SyncDirection.push.value, SyncDirection.bidirectional.value):
                for mapping in mappings:
                    await self._push_patient(ctx, mapping)
        except PassCancelled:
            ctx.cancelled = True
            logger.warning("Sync for connection=%s cancelled after deactivation", connection.id)
        except SyncServiceError as exc:
            ctx.aborted = exc
            logger.error("Sync for connection=%s aborted: %s (%s)", connection.id, exc.code, exc.message)
        except Exception as exc:
            ctx.aborted = SyncServiceError("Unexpected failure while syncing")
            logger.exception("Sync for connection=%s failed unexpectedly: %s", connection.id, exc)
        return await self._close(ctx)

    async def _acquire_token(self, ctx: Optional[PassContext]) -> Optional[str]:
        """Token for this pass; one retry on ``AuthExpired``, the second aborts."""
        if ctx is None:
            return None
        force, ctx.force_refresh = ctx.force_refresh, False
        try:
            return await self.vault.get_valid_token(ctx.connection.id, force_refresh=force)
        except AuthExpired:
            if ctx.auth_retry_used:
                raise
            ctx.auth_retry_used = True
            logger.warning("Token refresh failed for connection=%s; retrying once", ctx.connection.id)
            return await self.vault.get_valid_token(ctx.connection.id, force_refresh=True)

    async def _remote(self, ctx: PassContext, call: Callable[[], Awaitable[T]]) -> T:
        """Run a client call, retrying once with a fresh token after a 401/403."""
        try:
            return await call()
        except ConnectionUnauthorized:
            if ctx.unauthorized_retry_used:
                raise
            ctx.unauthorized_retry_used = True
            logger.warning("Server rejected the token for connection=%s; refreshing", ctx.connection.id)
            await self.vault.invalidate(ctx.connection.id)
            ctx.force_refresh = True
            return await call()

    async def _mappings(
        self,
        connection: FhirConnection,
        patient_ids: Optional[list[int]],
    ) -> list[PatientMapping]:
        # Pending candidates wait for confirmation; conflicted patients still
        # sync, with the conflicted resources blocked individually.
        statuses = [MappingStatus.synced.value, MappingStatus.conflict.value]
        mappings: list[PatientMapping] = []
        skip = 0
        while True:
            batch = await self.store.list_mappings(
                connection_id=connection.id,
                statuses=statuses,
                patient_ids=patient_ids,
                skip=skip,
                limit=_MAPPING_BATCH,
            )
            mappings.extend(batch)
            if len(batch) < _MAPPING_BATCH:
                return mappings
            skip += _MAPPING_BATCH

    def _check_cancelled(self, ctx: PassContext) -> None:
        if self.cancellations.is_requested(ctx.connection.id):
            raise PassCancelled()

    # -- baselines --------------------------------------------------------

    async def _baseline(
        self,
        ctx: PassContext,
        resource_type: str,
        *,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> Optional[ResourceSync]:
        if resource_id is not None:
            cached = ctx.baselines.get((resource_type, "remote", resource_id))
        else:
            cached = ctx.baselines.get((resource_type, "local", local_record_key or ""))
        if cached is not None:
            return cached
        return await self.store.latest_baseline(
            connection_id=ctx.connection.id,
            resource_type=resource_type,
            resource_id=resource_id,
            local_record_key=local_record_key,
        )

    def _record(
        self,
        ctx: PassContext,
        *,
        direction: str,
        status: str,
        resource_type: str,
        patient_id: Optional[int],
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
        local_version: Optional[str] = None,
        remote_version: Optional[str] = None,
        error: Optional[str] = None,
    ) -> ResourceSync:
        entry = ResourceSync(
            connection_id=ctx.connection.id,
            patient_id=patient_id,
            resource_type=resource_type,
            resource_id=resource_id,
            local_record_key=local_record_key,
            direction=direction,
            status=status,
            local_version=local_version,
            remote_version=remote_version,
            error=error,
            created_at=utcnow(),
        )
        ctx.resource_syncs.append(entry)
        ctx.processed += 1
        if status == ResourceSyncStatus.error.value:
            ctx.failed += 1
        else:
            ctx.succeeded += 1
        ctx.count_type(resource_type)
        if status == ResourceSyncStatus.synced.value:
            if resource_id is not None:
                ctx.baselines[(resource_type, "remote", resource_id)] = entry
            if local_record_key is not None:
                ctx.baselines[(resource_type, "local", local_record_key)] = entry
        return entry

    def _record_failure(
        self,
        ctx: PassContext,
        exc: SyncServiceError,
        *,
        direction: str,
        resource_type: str,
        patient_id: Optional[int],
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> None:
        logger.warning(
            "%s %s/%s failed on connection=%s: %s",
            direction,
            resource_type,
            resource_id or local_record_key or "-",
            ctx.connection.id,
            exc.code,
        )
        ctx.errors.append(
            {
                "resource_type": resource_type,
                "resource_id": resource_id or local_record_key,
                "code": exc.code,
                "message": exc.message,
            }
        )
        self._record(
            ctx,
            direction=direction,
            status=ResourceSyncStatus.error.value,
            resource_type=resource_type,
            patient_id=patient_id,
            resource_id=resource_id,
            local_record_key=local_record_key,
            error=f"{exc.code}: {exc.message}",
        )

    async def _blocked(
        self,
        ctx: PassContext,
        *,
        direction: str,
        resource_type: str,
        patient_id: int,
        resource_id: Optional[str] = None,
        local_record_key: Optional[str] = None,
    ) -> bool:
        conflict = await self.store.find_open_conflict(
            connection_id=ctx.connection.id,
            resource_type=resource_type,
            resource_id=resource_id,
            local_record_key=local_record_key,
        )
        if conflict is None:
            return False
        ctx.summary["blocked"] += 1
        self._record(
            ctx,
            direction=direction,
            status=ResourceSyncStatus.skipped.value,
            resource_type=resource_type,
            patient_id=patient_id,
            resource_id=resource_id or conflict.resource_id,
            local_record_key=local_record_key or conflict.local_record_key,
            error=f"Blocked by open conflict {conflict.id}",
        )
        return True

    async def _diverged(
        self,
        ctx: PassContext,
        *,
        direction: str,
        mapping: PatientMapping,
        resource_type: str,
        resource_id: str,
        local_record_key: str,
        local: ClinicalRecordPayload,
        remote: ClinicalRecordPayload,
    ) -> None:
        outcome = await self.resolver.handle_divergence(
            Divergence(
                connection=ctx.connection,
                patient_id=mapping.patient_id,
                resource_type=resource_type,
                resource_id=resource_id,
                local_record_key=local_record_key,
                subject_reference=self._subject(mapping, resource_type),
                local=local,
                remote=remote,
            ),
            ctx.client,
        )
        ctx.summary["conflicts"] += 1
        entry = self._record(
            ctx,
            direction=direction,
            status=ResourceSyncStatus.synced.value if outcome.resolved else ResourceSyncStatus.conflict.value,
            resource_type=resource_type,
            patient_id=mapping.patient_id,
            resource_id=resource_id,
            local_record_key=local_record_key,
            local_version=outcome.local_version,
            remote_version=outcome.remote_version,
            error=outcome.error,
        )
        ctx.conflicts.append((entry, outcome.conflict))
        if outcome.wrote_local or outcome.wrote_remote:
            await self._audit_mutation(
                ctx,
                "resource_conflict_applied",
                resource_type,
                resource_id,
                local_record_key,
                strategy=outcome.strategy,
            )

    @staticmethod
    def _subject(mapping: PatientMapping, resource_type: str) -> Optional[str]:
        return None if resource_type == "Patient" else mapping.subject_reference

    async def _audit_mutation(
        self,
        ctx: PassContext,
        action: str,
        resource_type: str,
        resource_id: Optional[str],
        local_record_key: Optional[str],
        **details: Any,
    ) -> None:
        await self.audit.append(
            action=action,
            target_type=resource_type,
            target_id=resource_id or local_record_key,
            actor=ctx.actor,
            tenant_id=ctx.connection.tenant_id,
            details={
                "connection_id": ctx.connection.id,
                "local_record_key": local_record_key,
                **details,
            },
        )

    # -- pull -------------------------------------------------------------

    async def _fetch(
        self,
        ctx: PassContext,
        mapping: PatientMapping,
        resource_type: str,
    ) -> list[dict[str, Any]]:
        client = ctx.client
        if resource_type == "Patient":
            return [await self._remote(ctx, lambda: client.read("Patient", mapping.fhir_patient_id))]
        params = {"patient": mapping.fhir_patient_id, **SEARCH_FILTERS.get(resource_type, {})}
        last_sync_at = ctx.connection.last_sync_at
        if ctx.sync_type == SyncType.incremental.value and last_sync_at is not None:
            params["_lastUpdated"] = f"ge{last_sync_at.isoformat()}"
        return await self._remote(ctx, lambda: client.search(resource_type, params))

    async def _pull_patient(self, ctx: PassContext, mapping: PatientMapping) -> None:
        ctx.touched_patients.add(mapping.patient_id)
        for resource_type in ctx.connection.resource_types or []:
            self._check_cancelled(ctx)
            ctx.move(PassState.fetching)
            try:
                resources = await self._fetch(ctx, mapping, resource_type)
            except RESOURCE_LEVEL_ERRORS as exc:
                self._record_failure(
                    ctx,
                    exc,
                    direction=SyncDirection.pull.value,
                    resource_type=resource_type,
                    patient_id=mapping.patient_id,
                    resource_id=mapping.fhir_patient_id if resource_type == "Patient" else None,
                )
                continue
            for resource in resources:
                self._check_cancelled(ctx)
                resource_id = resource.get("id")
                try:
                    await self._pull_resource(ctx, mapping, resource_type, resource)
                except RESOURCE_LEVEL_ERRORS as exc:
                    self._record_failure(
                        ctx,
                        exc,
                        direction=SyncDirection.pull.value,
                        resource_type=resource_type,
                        patient_id=mapping.patient_id,
                        resource_id=resource_id,
                    )

    async def _pull_resource(
        self,
        ctx: PassContext,
        mapping: PatientMapping,
        resource_type: str,
        resource: dict[str, Any],
    ) -> None:
        direction = SyncDirection.pull.value
        resource_id = resource.get("id")
        ctx.move(PassState.translating)
        if not resource_id:
            raise TranslationError(f"{resource_type} in search results has no id")
        remote = from_fhir(resource)
        remote_version = compute_version_marker(remote)

        if await self._blocked(
            ctx,
            direction=direction,
            resource_type=resource_type,
            patient_id=mapping.patient_id,
            resource_id=resource_id,
        ):
            return

        baseline = await self._baseline(ctx, resource_type, resource_id=resource_id)
        ctx.move(PassState.writing)
        if baseline is None:
            row = await write_local_record(
                self.store,
                remote,
                tenant_id=ctx.connection.tenant_id,
                patient_id=mapping.patient_id,
            )
            ctx.summary["created"] += 1
            ctx.pulled_keys.add(row.record_key)
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.synced.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=resource_id,
                local_record_key=row.record_key,
                local_version=remote_version,
                remote_version=remote_version,
            )
            await self._audit_mutation(ctx, "resource_pulled", resource_type, resource_id, row.record_key, change="created")
            return

        record_key = baseline.local_record_key
        if baseline.remote_version == remote_version:
            if record_key:
                ctx.pulled_keys.add(record_key)
            ctx.summary["unchanged"] += 1
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.skipped.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=resource_id,
                local_record_key=record_key,
                local_version=baseline.local_version,
                remote_version=remote_version,
            )
            return

        row = await self.store.get_record(record_key) if record_key else None
        local = parse_record(row.payload) if row is not None else None
        local_version = compute_version_marker(local) if local is not None else None

        if local is None or local_version == baseline.local_version:
            updated = await write_local_record(
                self.store,
                carry_local_only(remote, local),
                tenant_id=ctx.connection.tenant_id,
                patient_id=mapping.patient_id,
                record_key=record_key,
            )
            ctx.summary["updated"] += 1
            ctx.pulled_keys.add(updated.record_key)
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.synced.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=resource_id,
                local_record_key=updated.record_key,
                local_version=remote_version,
                remote_version=remote_version,
            )
            await self._audit_mutation(ctx, "resource_pulled", resource_type, resource_id, updated.record_key, change="updated")
            return

        ctx.pulled_keys.add(row.record_key)
        if local_version == remote_version:
            # Both sides made the same edit.
            ctx.summary["unchanged"] += 1
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.synced.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=resource_id,
                local_record_key=row.record_key,
                local_version=local_version,
                remote_version=remote_version,
            )
            return

        await self._diverged(
            ctx,
            direction=direction,
            mapping=mapping,
            resource_type=resource_type,
            resource_id=resource_id,
            local_record_key=row.record_key,
            local=local,
            remote=remote,
        )

    # -- push -------------------------------------------------------------

    async def _push_patient(self, ctx: PassContext, mapping: PatientMapping) -> None:
        ctx.touched_patients.add(mapping.patient_id)
        rows = await self.store.list_records(
            patient_id=mapping.patient_id,
            resource_types=list(ctx.connection.resource_types or []),
        )
        for row in rows:
            self._check_cancelled(ctx)
            try:
                await self._push_record(ctx, mapping, row.record_key, row.resource_type, row.payload)
            except RESOURCE_LEVEL_ERRORS as exc:
                self._record_failure(
                    ctx,
                    exc,
                    direction=SyncDirection.push.value,
                    resource_type=row.resource_type,
                    patient_id=mapping.patient_id,
                    local_record_key=row.record_key,
                )

    async def _push_record(
        self,
        ctx: PassContext,
        mapping: PatientMapping,
        record_key: str,
        resource_type: str,
        payload: dict[str, Any],
    ) -> None:
        direction = SyncDirection.push.value
        ctx.move(PassState.translating)
        local = parse_record(payload)
        local_version = compute_version_marker(local)
        baseline = await self._baseline(ctx, resource_type, local_record_key=record_key)

        if baseline is not None and baseline.local_version == local_version:
            if record_key in ctx.pulled_keys:
                # Settled by this pass's pull; not an outcome of its own.
                return
            ctx.summary["unchanged"] += 1
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.skipped.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=baseline.resource_id,
                local_record_key=record_key,
                local_version=local_version,
                remote_version=baseline.remote_version,
            )
            return

        if await self._blocked(
            ctx,
            direction=direction,
            resource_type=resource_type,
            patient_id=mapping.patient_id,
            local_record_key=record_key,
        ):
            return

        client = ctx.client
        subject = self._subject(mapping, resource_type)
        remote_id = baseline.resource_id if baseline is not None else None
        if remote_id is None and resource_type == "Patient":
            remote_id = mapping.fhir_patient_id

        ctx.move(PassState.writing)
        if remote_id is None:
            resource = to_fhir(local, resource_type, subject_reference=subject)
            created = await self._remote(ctx, lambda: client.create(resource_type, resource))
            ctx.summary["pushed"] += 1
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.synced.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=created["id"],
                local_record_key=record_key,
                local_version=local_version,
                remote_version=local_version,
            )
            await self._audit_mutation(ctx, "resource_pushed", resource_type, created["id"], record_key, change="created")
            return

        current = await self._remote(ctx, lambda: client.read(resource_type, remote_id))
        remote = from_fhir(current)
        remote_version = compute_version_marker(remote)

        if remote_version == local_version:
            ctx.summary["unchanged"] += 1
            self._record(
                ctx,
                direction=direction,
                status=ResourceSyncStatus.synced.value,
                resource_type=resource_type,
                patient_id=mapping.patient_id,
                resource_id=remote_id,
                local_record_key=record_key,
                local_version=local_version,
                remote_version=remote_version,
            )
            return

        # Without a baseline there is no common ancestor, so any difference is a conflict.
        if baseline is None or baseline.remote_version != remote_version:
            await self._diverged(
                ctx,
                direction=direction,
                mapping=mapping,
                resource_type=resource_type,
                resource_id=remote_id,
                local_record_key=record_key,
                local=local,
                remote=remote,
            )
            return

        resource = to_fhir(local, resource_type, resource_id=remote_id, subject_reference=subject)
        await self._remote(ctx, lambda: client.update(resource_type, remote_id, resource))
        ctx.summary["pushed"] += 1
        self._record(
            ctx,
            direction=direction,
            status=ResourceSyncStatus.synced.value,
            resource_type=resource_type,
            patient_id=mapping.patient_id,
            resource_id=remote_id,
            local_record_key=record_key,
            local_version=local_version,
            remote_version=local_version,
        )
        await self._audit_mutation(ctx, "resource_pushed", resource_type, remote_id, record_key, change="updated")

    # -- close ------------------------------------------------------------

    @staticmethod
    def _terminal_status(ctx: PassContext) -> str:
        if ctx.aborted is not None or (ctx.processed > 0 and ctx.failed == ctx.processed):
            return SyncStatus.failed.value
        if ctx.failed or ctx.cancelled:
            return SyncStatus.partial.value
        return SyncStatus.success.value

    async def _close(self, ctx: PassContext) -> SyncLog:
        connection = ctx.connection
        has_open_conflict = any(not c.resolved_at for _, c in ctx.conflicts)
        ctx.move(PassState.conflicted if has_open_conflict else PassState.completed)
        status = self._terminal_status(ctx)
        errors = list(ctx.errors)
        if ctx.aborted is not None:
            errors.append(
                {
                    "resource_type": "Connection",
                    "resource_id": str(connection.id),
                    "code": ctx.aborted.code,
                    "message": ctx.aborted.message,
                }
            )

        sync_log = SyncLog(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            sync_type=ctx.sync_type,
            direction=ctx.direction,
            status=status,
            records_processed=ctx.processed,
            records_succeeded=ctx.succeeded,
            records_failed=ctx.failed,
            errors=errors,
            summary={**ctx.summary, "cancelled": ctx.cancelled},
            triggered_by=ctx.actor.label,
            started_at=ctx.started_at,
            completed_at=utcnow(),
        )
        await self.store.add(sync_log)
        for entry in ctx.resource_syncs:
            entry.sync_log_id = sync_log.id
            await self.store.add(entry)
        for entry, conflict in ctx.conflicts:
            conflict.resource_sync_id = entry.id
            await self.store.save(conflict)

        if ctx.aborted is not None and isinstance(ctx.aborted, CONNECTION_LEVEL_ERRORS):
            connection.status = ConnectionStatus.error.value
            connection.last_error = f"{ctx.aborted.code}: {ctx.aborted.message}"
        elif status == SyncStatus.success.value:
            # Incremental passes filter on this, so only clean passes advance it.
            if connection.last_sync_at is None or connection.last_sync_at < ctx.started_at:
                connection.last_sync_at = ctx.started_at
        await self.store.save(connection)

        if ctx.aborted is None:
            await self._settle_mappings(ctx)

        ctx.move(PassState.closed)
        logger.info(
            "Sync for connection=%s closed status=%s processed=%d succeeded=%d failed=%d",
            connection.id,
            status,
            ctx.processed,
            ctx.succeeded,
            ctx.failed,
        )
        await self.audit.append(
            action="sync_failed" if status == SyncStatus.failed.value else "sync_completed",
            target_type="sync_log",
            target_id=sync_log.id,
            actor=ctx.actor,
            tenant_id=connection.tenant_id,
            outcome="failure" if status == SyncStatus.failed.value else "success",
            details={
                "connection_id": connection.id,
                "status": status,
                "direction": ctx.direction,
                "sync_type": ctx.sync_type,
                "processed": ctx.processed,
                "succeeded": ctx.succeeded,
                "failed": ctx.failed,
                "cancelled": ctx.cancelled,
                "abort_code": ctx.aborted.code if ctx.aborted is not None else None,
            },
        )
        return sync_log

    async def _settle_mappings(self, ctx: PassContext) -> None:
        for patient_id in sorted(ctx.touched_patients):
            mapping = await self.store.find_mapping(
                patient_id=patient_id,
                connection_id=ctx.connection.id,
            )
            if mapping is None or mapping.is_tombstoned:
                continue
            open_conflicts = await self.store.count_open_conflicts(
                connection_id=ctx.connection.id,
                patient_id=patient_id,
            )
            mapping.sync_status = (
                MappingStatus.conflict.value if open_conflicts else MappingStatus.synced.value
            )
            mapping.last_synced_at = ctx.started_at
            await self.store.save(mapping)
