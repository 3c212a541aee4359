"""Internal clinical record shapes stored in ``ClinicalRecord.payload``.

Each shape is tagged by ``resource_type`` so a stored payload always parses
back into exactly one variant.
"""

from datetime import date, datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator


def _normalize_timestamp(value: Optional[datetime]) -> Optional[datetime]:
    # FHIR instants are exchanged at second precision in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


class InternalRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PatientRecord(InternalRecord):
    resource_type: Literal["Patient"] = "Patient"
    mrn: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    birth_date: Optional[date] = None
    gender: Literal["male", "female", "other", "unknown"] = "unknown"
    phone: Optional[str] = None
    email: Optional[str] = None
    address_line: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    # Local-only
    caregiver_email: Optional[str] = None
    preferred_contact_time: Optional[str] = None


class ObservationComponent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    display: Optional[str] = None
    value: Optional[float] = None
    unit: Optional[str] = None


class ObservationRecord(InternalRecord):
    resource_type: Literal["Observation"] = "Observation"
    code: str
    code_system: str = "http://loinc.org"
    display: Optional[str] = None
    category: Optional[str] = None
    status: str = "final"
    effective_at: Optional[datetime] = None
    value: Optional[float] = None
    unit: Optional[str] = None
    value_text: Optional[str] = None
    interpretation: Optional[str] = None
    components: list[ObservationComponent] = Field(default_factory=list)
    note: Optional[str] = None
    # Local-only
    device_id: Optional[str] = None
    entry_source: Optional[str] = None

    @field_validator("effective_at")
    @classmethod
    def normalize_effective_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _normalize_timestamp(value)

    @model_validator(mode="after")
    def check_single_value(self) -> "ObservationRecord":
        if self.value_text is not None and (self.value is not None or self.unit is not None):
            raise ValueError("value_text cannot be combined with a quantity value")
        return self


class EncounterRecord(InternalRecord):
    resource_type: Literal["Encounter"] = "Encounter"
    status: str = "finished"
    encounter_class: str = "AMB"
    type_text: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    reason: Optional[str] = None
    provider_name: Optional[str] = None
    facility: Optional[str] = None
    # Local-only
    internal_notes: Optional[str] = None

    @field_validator("period_start", "period_end")
    @classmethod
    def normalize_period(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _normalize_timestamp(value)


class ConditionRecord(InternalRecord):
    resource_type: Literal["Condition"] = "Condition"
    code: Optional[str] = None
    code_system: str = "http://snomed.info/sct"
    display: Optional[str] = None
    clinical_status: str = "active"
    verification_status: str = "confirmed"
    category: str = "problem-list-item"
    onset_date: Optional[date] = None
    abatement_date: Optional[date] = None
    note: Optional[str] = None
    # Local-only
    community_tags: list[str] = Field(default_factory=list)


class ImmunizationRecord(InternalRecord):
    resource_type: Literal["Immunization"] = "Immunization"
    vaccine_code: str
    vaccine_display: Optional[str] = None
    status: str = "completed"
    occurrence_at: Optional[datetime] = None
    primary_source: bool = True
    lot_number: Optional[str] = None
    dose_value: Optional[float] = None
    dose_unit: Optional[str] = None
    site: Optional[str] = None
    route: Optional[str] = None
    performer: Optional[str] = None
    note: Optional[str] = None
    # Local-only
    reminder_sent: bool = False

    @field_validator("occurrence_at")
    @classmethod
    def normalize_occurrence_at(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _normalize_timestamp(value)


class MedicationStatementRecord(InternalRecord):
    resource_type: Literal["MedicationStatement"] = "MedicationStatement"
    medication_code: Optional[str] = None
    medication_display: Optional[str] = None
    status: str = "active"
    dosage_text: Optional[str] = None
    dose_value: Optional[float] = None
    dose_unit: Optional[str] = None
    route: Optional[str] = None
    effective_date: Optional[date] = None
    note: Optional[str] = None
    # Local-only: populated by document extraction on the platform side.
    ai_confidence: Optional[float] = None
    needs_review: bool = False

    @model_validator(mode="after")
    def check_medication(self) -> "MedicationStatementRecord":
        if not self.medication_code and not self.medication_display:
            raise ValueError("medication_code or medication_display is required")
        return self


class CarePlanActivity(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Optional[str] = None
    status: str = "not-started"
    description: Optional[str] = None
    scheduled_start: Optional[date] = None
    scheduled_end: Optional[date] = None


class CarePlanRecord(InternalRecord):
    resource_type: Literal["CarePlan"] = "CarePlan"
    status: str = "active"
    intent: str = "plan"
    categories: list[str] = Field(default_factory=list)
    title: Optional[str] = None
    description: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    author: Optional[str] = None
    care_team: Optional[str] = None
    addresses: list[str] = Field(default_factory=list)
    goals: list[str] = Field(default_factory=list)
    activities: list[CarePlanActivity] = Field(default_factory=list)
    note: Optional[str] = None
    # Local-only
    patient_goal_notes: Optional[str] = None
    shared_with_caregiver: bool = False


ClinicalRecordPayload = Annotated[
    Union[
        PatientRecord,
        ObservationRecord,
        EncounterRecord,
        ConditionRecord,
        ImmunizationRecord,
        MedicationStatementRecord,
        CarePlanRecord,
    ],
    Field(discriminator="resource_type"),
]

clinical_record_adapter: TypeAdapter[ClinicalRecordPayload] = TypeAdapter(ClinicalRecordPayload)
