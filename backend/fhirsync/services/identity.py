"""Patient identity mapping between internal patients and FHIR Patient ids."""

from __future__ import annotations

import logging
from typing import Optional

from fhirsync.models import FhirConnection, MappingStatus, Patient, PatientMapping, utcnow
from fhirsync.services.audit import Actor, AuditRecorder, SYSTEM_ACTOR
from fhirsync.services.connections import ClientFactory, default_client_factory
from fhirsync.services.credentials import CredentialVault
from fhirsync.services.errors import (
    ConnectionNotFound,
    InvalidMappingTransition,
    MappingNotFound,
    NoMatchFound,
    PatientNotFound,
)
from fhirsync.services.store import SyncStore

logger = logging.getLogger("fhirsync.identity")


class PatientIdentityMapper:
    """Resolves internal patients to FHIR Patient ids per connection.

    Automatic matching only ever produces ``pending`` candidates; an
    administrator confirms them before any pass touches the patient.
    """

    def __init__(
        self,
        store: SyncStore,
        audit: AuditRecorder,
        vault: CredentialVault,
        *,
        client_factory: ClientFactory = default_client_factory,
    ):
        self.store = store
        self.audit = audit
        self.vault = vault
        self.client_factory = client_factory

    async def _connection(self, connection_id: int, tenant_id: Optional[str]) -> FhirConnection:
        connection = await self.store.get_connection(connection_id)
        if connection is None or (tenant_id is not None and connection.tenant_id != tenant_id):
            raise ConnectionNotFound(f"Connection {connection_id} not found")
        return connection

    async def _patient(self, patient_id: int, tenant_id: str) -> Patient:
        patient = await self.store.get_patient(patient_id)
        if patient is None or patient.tenant_id != tenant_id:
            raise PatientNotFound(f"Patient {patient_id} not found")
        return patient

    async def get_mapping(self, mapping_id: int, *, tenant_id: Optional[str] = None) -> PatientMapping:
        mapping = await self.store.get_mapping(mapping_id)
        if mapping is None or (tenant_id is not None and mapping.tenant_id != tenant_id):
            raise MappingNotFound(f"Mapping {mapping_id} not found")
        return mapping

    async def list_mappings(
        self,
        connection_id: int,
        *,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        include_tombstoned: bool = False,
        skip: int = 0,
        limit: int = 50,
    ) -> list[PatientMapping]:
        connection = await self._connection(connection_id, tenant_id)
        return await self.store.list_mappings(
            connection_id=connection.id,
            statuses=[status] if status else None,
            include_tombstoned=include_tombstoned,
            skip=skip,
            limit=limit,
        )

    async def resolve_or_create_mapping(
        self,
        patient_id: int,
        connection_id: int,
        *,
        actor: Actor = SYSTEM_ACTOR,
        tenant_id: Optional[str] = None,
    ) -> PatientMapping:
        """Return the live mapping or match the patient on the remote server.

        Raises ``NoMatchFound`` when the search yields zero or several
        candidates, or a candidate already linked to another patient.
        """
        connection = await self._connection(connection_id, tenant_id)
        patient = await self._patient(patient_id, connection.tenant_id)

        existing = await self.store.find_mapping(patient_id=patient.id, connection_id=connection.id)
        if existing is not None and not existing.is_tombstoned:
            return existing

        params, method = self._match_params(connection, patient)

        async def _token() -> Optional[str]:
            return await self.vault.get_valid_token(connection.id)

        client = self.client_factory(connection, _token)
        candidates = await client.search("Patient", params)
        candidate_ids = sorted({c["id"] for c in candidates if c.get("id")})
        if len(candidate_ids) != 1:
            logger.info(
                "Patient match on connection=%s by %s found %d candidates",
                connection.id,
                method,
                len(candidate_ids),
            )
            await self._audit_no_match(connection, patient, method, actor, f"{len(candidate_ids)} candidates")
            raise NoMatchFound(
                f"Patient {patient.id} matched {len(candidate_ids)} remote patients by {method}; "
                "create the mapping manually"
            )

        fhir_patient_id = candidate_ids[0]
        taken = await self.store.find_mapping_by_fhir_id(
            connection_id=connection.id,
            fhir_patient_id=fhir_patient_id,
        )
        if taken is not None and taken.patient_id != patient.id:
            await self._audit_no_match(connection, patient, method, actor, "candidate already mapped")
            raise NoMatchFound(
                f"Remote patient {fhir_patient_id} is already mapped to another patient"
            )

        mapping = await self._upsert_pending(existing, connection, patient, fhir_patient_id, method)
        await self.audit.append(
            action="mapping_candidate_created",
            target_type="patient_mapping",
            target_id=mapping.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={
                "connection_id": connection.id,
                "patient_id": patient.id,
                "fhir_patient_id": fhir_patient_id,
                "match_method": method,
            },
        )
        return mapping

    async def create_manual_mapping(
        self,
        patient_id: int,
        connection_id: int,
        fhir_patient_id: str,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> PatientMapping:
        connection = await self._connection(connection_id, tenant_id)
        patient = await self._patient(patient_id, connection.tenant_id)
        existing = await self.store.find_mapping(patient_id=patient.id, connection_id=connection.id)
        if existing is not None and not existing.is_tombstoned:
            raise InvalidMappingTransition(
                f"Patient {patient.id} already has a {existing.sync_status} mapping on this connection"
            )
        taken = await self.store.find_mapping_by_fhir_id(
            connection_id=connection.id,
            fhir_patient_id=fhir_patient_id,
        )
        if taken is not None and taken.patient_id != patient.id:
            raise InvalidMappingTransition(
                f"Remote patient {fhir_patient_id} is already mapped to another patient"
            )
        mapping = await self._upsert_pending(existing, connection, patient, fhir_patient_id, "manual")
        await self.audit.append(
            action="mapping_created",
            target_type="patient_mapping",
            target_id=mapping.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            details={
                "connection_id": connection.id,
                "patient_id": patient.id,
                "fhir_patient_id": fhir_patient_id,
            },
        )
        return mapping

    async def confirm_mapping(
        self,
        mapping_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> PatientMapping:
        mapping = await self.get_mapping(mapping_id, tenant_id=tenant_id)
        if mapping.is_tombstoned or mapping.sync_status != MappingStatus.pending.value:
            raise InvalidMappingTransition(
                f"Only pending mappings can be confirmed (mapping {mapping.id} is {mapping.sync_status})"
            )
        mapping.sync_status = MappingStatus.synced.value
        mapping.confirmed_by = actor.label
        mapping.confirmed_at = utcnow()
        await self.store.save(mapping)
        await self.audit.append(
            action="mapping_confirmed",
            target_type="patient_mapping",
            target_id=mapping.id,
            actor=actor,
            tenant_id=mapping.tenant_id,
            details={"fhir_patient_id": mapping.fhir_patient_id},
        )
        return mapping

    async def reject_mapping(
        self,
        mapping_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> None:
        """Remove a pending candidate."""
        mapping = await self.get_mapping(mapping_id, tenant_id=tenant_id)
        if mapping.is_tombstoned or mapping.sync_status != MappingStatus.pending.value:
            raise InvalidMappingTransition(
                f"Only pending mappings can be rejected (mapping {mapping.id} is {mapping.sync_status})"
            )
        details = {
            "connection_id": mapping.connection_id,
            "patient_id": mapping.patient_id,
            "fhir_patient_id": mapping.fhir_patient_id,
        }
        await self.store.delete(mapping)
        await self.audit.append(
            action="mapping_rejected",
            target_type="patient_mapping",
            target_id=mapping_id,
            actor=actor,
            tenant_id=mapping.tenant_id,
            details=details,
        )

    async def tombstone_mapping(
        self,
        mapping_id: int,
        *,
        actor: Actor,
        tenant_id: Optional[str] = None,
    ) -> PatientMapping:
        mapping = await self.get_mapping(mapping_id, tenant_id=tenant_id)
        if mapping.is_tombstoned:
            raise InvalidMappingTransition(f"Mapping {mapping.id} is already tombstoned")
        mapping.is_tombstoned = True
        mapping.tombstoned_at = utcnow()
        await self.store.save(mapping)
        await self.audit.append(
            action="mapping_tombstoned",
            target_type="patient_mapping",
            target_id=mapping.id,
            actor=actor,
            tenant_id=mapping.tenant_id,
            details={"status_before": mapping.sync_status},
        )
        return mapping

    async def resolve_internal(self, connection_id: int, fhir_patient_id: str) -> Optional[int]:
        """Reverse lookup: internal patient id for a FHIR Patient id."""
        mapping = await self.store.find_mapping_by_fhir_id(
            connection_id=connection_id,
            fhir_patient_id=fhir_patient_id,
        )
        return mapping.patient_id if mapping is not None else None

    @staticmethod
    def _match_params(connection: FhirConnection, patient: Patient) -> tuple[dict[str, str], str]:
        if connection.patient_identifier_system and patient.mrn:
            return (
                {"identifier": f"{connection.patient_identifier_system}|{patient.mrn}"},
                "identifier",
            )
        if not patient.birth_date:
            raise NoMatchFound(
                f"Patient {patient.id} has no identifier or birth date to match on"
            )
        return (
            {
                "family": patient.last_name,
                "given": patient.first_name,
                "birthdate": patient.birth_date.isoformat(),
            },
            "demographics",
        )

    async def _upsert_pending(
        self,
        existing: Optional[PatientMapping],
        connection: FhirConnection,
        patient: Patient,
        fhir_patient_id: str,
        method: str,
    ) -> PatientMapping:
        # A tombstoned row is revived in place; the pair stays unique.
        mapping = existing or PatientMapping(
            tenant_id=connection.tenant_id,
            patient_id=patient.id,
            connection_id=connection.id,
        )
        mapping.fhir_patient_id = fhir_patient_id
        mapping.sync_status = MappingStatus.pending.value
        mapping.match_method = method
        mapping.is_tombstoned = False
        mapping.tombstoned_at = None
        mapping.confirmed_by = None
        mapping.confirmed_at = None
        if existing is None:
            await self.store.add(mapping)
        else:
            await self.store.save(mapping)
        logger.info(
            "Pending mapping id=%s patient=%s connection=%s method=%s",
            mapping.id,
            patient.id,
            connection.id,
            method,
        )
        return mapping

    async def _audit_no_match(
        self,
        connection: FhirConnection,
        patient: Patient,
        method: str,
        actor: Actor,
        reason: str,
    ) -> None:
        await self.audit.append(
            action="mapping_match_failed",
            target_type="patient",
            target_id=patient.id,
            actor=actor,
            tenant_id=connection.tenant_id,
            outcome="failure",
            details={"connection_id": connection.id, "match_method": method, "reason": reason},
        )
