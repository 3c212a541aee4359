"""Pure conversion between internal clinical records and FHIR R4 resources.

``to_fhir`` and ``from_fhir`` cover the same resource type set. Converting a
record to FHIR and back reproduces it except for the fields listed in
``LOCAL_ONLY_FIELDS``, which never leave the platform.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from pydantic import ValidationError

from fhirsync.schemas import fhir
from fhirsync.schemas.records import (
    CarePlanActivity,
    CarePlanRecord,
    ClinicalRecordPayload,
    ConditionRecord,
    EncounterRecord,
    ImmunizationRecord,
    MedicationStatementRecord,
    ObservationComponent,
    ObservationRecord,
    PatientRecord,
    clinical_record_adapter,
)
from fhirsync.services.errors import TranslationError, UnsupportedResourceType

SUPPORTED_RESOURCE_TYPES: tuple[str, ...] = (
    "Patient",
    "Observation",
    "Encounter",
    "Condition",
    "Immunization",
    "MedicationStatement",
    "CarePlan",
)

LOCAL_ONLY_FIELDS: dict[str, frozenset[str]] = {
    "Patient": frozenset({"caregiver_email", "preferred_contact_time"}),
    "Observation": frozenset({"device_id", "entry_source"}),
    "Encounter": frozenset({"internal_notes"}),
    "Condition": frozenset({"community_tags"}),
    "Immunization": frozenset({"reminder_sent"}),
    "MedicationStatement": frozenset({"ai_confidence", "needs_review"}),
    "CarePlan": frozenset({"patient_goal_notes", "shared_with_caregiver"}),
}

MRN_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"
OBSERVATION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/observation-category"
INTERPRETATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ObservationInterpretation"
ENCOUNTER_CLASS_SYSTEM = "http://terminology.hl7.org/CodeSystem/v3-ActCode"
CONDITION_CLINICAL_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-clinical"
CONDITION_VERIFICATION_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-ver-status"
CONDITION_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/condition-category"
CVX_SYSTEM = "http://hl7.org/fhir/sid/cvx"
RXNORM_SYSTEM = "http://www.nlm.nih.gov/research/umls/rxnorm"
UCUM_SYSTEM = "http://unitsofmeasure.org"


def _ensure_supported(resource_type: Any) -> str:
    if resource_type not in SUPPORTED_RESOURCE_TYPES:
        raise UnsupportedResourceType(f"Resource type {resource_type!r} is not supported")
    return resource_type


def _validation_summary(exc: ValidationError) -> str:
    # Locations only: error inputs may carry patient data.
    locations = sorted({".".join(str(part) for part in error["loc"]) or "<root>" for error in exc.errors()})
    return ", ".join(locations[:8])


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _coerce_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = _coerce_datetime(value)
    if dt is not None:
        return dt.date()
    if isinstance(value, str):
        text = value.strip()
        if len(text) >= 10:
            try:
                return date.fromisoformat(text[:10])
            except ValueError:
                return None
    return None


def _parse_datetime(value: str | None, element: str) -> datetime | None:
    if value is None:
        return None
    parsed = _coerce_datetime(value)
    if parsed is None:
        # Year or year-month precision is legal FHIR; anchor it to the first day.
        parsed_date = _coerce_date(value) or _parse_partial_date(value)
        if parsed_date is None:
            raise TranslationError(f"Element {element} is not a valid dateTime")
        parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=UTC)
    return parsed


def _parse_date(value: str | None, element: str) -> date | None:
    if value is None:
        return None
    parsed = _coerce_date(value) or _parse_partial_date(value)
    if parsed is None:
        raise TranslationError(f"Element {element} is not a valid date")
    return parsed


def _parse_partial_date(value: str) -> date | None:
    parts = value.strip().split("-")
    try:
        if len(parts) == 1 and len(parts[0]) == 4:
            return date(int(parts[0]), 1, 1)
        if len(parts) == 2:
            return date(int(parts[0]), int(parts[1]), 1)
    except ValueError:
        return None
    return None


def _fhir_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    as_utc = value.astimezone(UTC)
    return as_utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _fhir_date(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _first(items: list[Any] | None) -> Any | None:
    return items[0] if items else None


def _primary_coding(concept: fhir.CodeableConcept | None) -> fhir.Coding | None:
    if concept is None or not concept.coding:
        return None
    for coding in concept.coding:
        if coding.code or coding.display:
            return coding
    return None


def _concept_code(concept: fhir.CodeableConcept | None) -> str | None:
    coding = _primary_coding(concept)
    if coding is not None and coding.code:
        return coding.code
    return concept.text if concept is not None else None


def _concept_display(concept: fhir.CodeableConcept | None) -> str | None:
    if concept is None:
        return None
    coding = _primary_coding(concept)
    if coding is not None and coding.display:
        return coding.display
    return concept.text


def _coded_concept(
    system: str | None,
    code: str | None,
    display: str | None,
) -> fhir.CodeableConcept | None:
    if code is None and display is None:
        return None
    coding = [fhir.Coding(system=system, code=code, display=display)] if code is not None else None
    return fhir.CodeableConcept(coding=coding, text=display)


def _text_concept(text: str | None) -> fhir.CodeableConcept | None:
    return fhir.CodeableConcept(text=text) if text is not None else None


def _notes(text: str | None) -> list[fhir.Annotation] | None:
    return [fhir.Annotation(text=text)] if text is not None else None


def _note_text(notes: list[fhir.Annotation] | None) -> str | None:
    if not notes:
        return None
    parts = [note.text for note in notes if note.text]
    return "\n".join(parts) if parts else None


def _quantity(value: float | None, unit: str | None) -> fhir.Quantity | None:
    if value is None and unit is None:
        return None
    return fhir.Quantity(
        value=value,
        unit=unit,
        system=UCUM_SYSTEM if unit is not None else None,
        code=unit,
    )


def _reference(reference: str | None) -> fhir.Reference | None:
    return fhir.Reference(reference=reference) if reference else None


# -- toFhir -----------------------------------------------------------------


def _patient_to_fhir(record: PatientRecord, **_: Any) -> fhir.FhirPatient:
    identifier = None
    if record.mrn is not None:
        identifier = [
            fhir.Identifier(
                type=fhir.CodeableConcept(coding=[fhir.Coding(system=MRN_TYPE_SYSTEM, code="MR")]),
                value=record.mrn,
            )
        ]
    name = None
    if record.first_name is not None or record.last_name is not None:
        name = [
            fhir.HumanName(
                use="official",
                family=record.last_name,
                given=[record.first_name] if record.first_name is not None else None,
            )
        ]
    telecom = [
        fhir.ContactPoint(system=system, value=value)
        for system, value in (("phone", record.phone), ("email", record.email))
        if value is not None
    ]
    address = None
    if any(v is not None for v in (record.address_line, record.city, record.state, record.postal_code)):
        address = [
            fhir.Address(
                line=[record.address_line] if record.address_line is not None else None,
                city=record.city,
                state=record.state,
                postal_code=record.postal_code,
            )
        ]
    return fhir.FhirPatient(
        identifier=identifier,
        name=name,
        telecom=telecom or None,
        gender=record.gender,
        birth_date=_fhir_date(record.birth_date),
        address=address,
    )


def _observation_to_fhir(record: ObservationRecord, *, subject: str | None) -> fhir.FhirObservation:
    category = None
    if record.category is not None:
        category = [
            fhir.CodeableConcept(
                coding=[fhir.Coding(system=OBSERVATION_CATEGORY_SYSTEM, code=record.category)]
            )
        ]
    interpretation = None
    if record.interpretation is not None:
        interpretation = [
            fhir.CodeableConcept(
                coding=[fhir.Coding(system=INTERPRETATION_SYSTEM, code=record.interpretation)]
            )
        ]
    components = [
        fhir.ObservationComponent(
            code=_coded_concept(record.code_system, component.code, component.display),
            value_quantity=_quantity(component.value, component.unit),
        )
        for component in record.components
    ]
    return fhir.FhirObservation(
        status=record.status,
        category=category,
        code=_coded_concept(record.code_system, record.code, record.display),
        subject=_reference(subject),
        effective_date_time=_fhir_timestamp(record.effective_at),
        value_quantity=_quantity(record.value, record.unit),
        value_string=record.value_text,
        interpretation=interpretation,
        component=components or None,
        note=_notes(record.note),
    )


def _encounter_to_fhir(record: EncounterRecord, *, subject: str | None) -> fhir.FhirEncounter:
    period = None
    if record.period_start is not None or record.period_end is not None:
        period = fhir.Period(
            start=_fhir_timestamp(record.period_start),
            end=_fhir_timestamp(record.period_end),
        )
    participant = None
    if record.provider_name is not None:
        participant = [
            fhir.EncounterParticipant(individual=fhir.Reference(display=record.provider_name))
        ]
    return fhir.FhirEncounter(
        status=record.status,
        class_=fhir.Coding(system=ENCOUNTER_CLASS_SYSTEM, code=record.encounter_class),
        type=[fhir.CodeableConcept(text=record.type_text)] if record.type_text is not None else None,
        subject=_reference(subject),
        period=period,
        reason_code=[fhir.CodeableConcept(text=record.reason)] if record.reason is not None else None,
        participant=participant,
        service_provider=fhir.Reference(display=record.facility) if record.facility is not None else None,
    )


def _condition_to_fhir(record: ConditionRecord, *, subject: str | None) -> fhir.FhirCondition:
    return fhir.FhirCondition(
        clinical_status=_coded_concept(CONDITION_CLINICAL_SYSTEM, record.clinical_status, None),
        verification_status=_coded_concept(
            CONDITION_VERIFICATION_SYSTEM, record.verification_status, None
        ),
        category=[_coded_concept(CONDITION_CATEGORY_SYSTEM, record.category, None)],
        code=_coded_concept(record.code_system, record.code, record.display),
        subject=_reference(subject),
        onset_date_time=_fhir_date(record.onset_date),
        abatement_date_time=_fhir_date(record.abatement_date),
        note=_notes(record.note),
    )


def _immunization_to_fhir(record: ImmunizationRecord, *, subject: str | None) -> fhir.FhirImmunization:
    performer = None
    if record.performer is not None:
        performer = [fhir.ImmunizationPerformer(actor=fhir.Reference(display=record.performer))]
    return fhir.FhirImmunization(
        status=record.status,
        vaccine_code=_coded_concept(CVX_SYSTEM, record.vaccine_code, record.vaccine_display),
        patient=_reference(subject),
        occurrence_date_time=_fhir_timestamp(record.occurrence_at),
        primary_source=record.primary_source,
        lot_number=record.lot_number,
        site=_text_concept(record.site),
        route=_text_concept(record.route),
        dose_quantity=_quantity(record.dose_value, record.dose_unit),
        performer=performer,
        note=_notes(record.note),
    )


def _medication_to_fhir(
    record: MedicationStatementRecord,
    *,
    subject: str | None,
) -> fhir.FhirMedicationStatement:
    dosage = None
    dose = _quantity(record.dose_value, record.dose_unit)
    if record.dosage_text is not None or record.route is not None or dose is not None:
        dosage = [
            fhir.Dosage(
                text=record.dosage_text,
                route=_text_concept(record.route),
                dose_and_rate=[fhir.DoseAndRate(dose_quantity=dose)] if dose is not None else None,
            )
        ]
    return fhir.FhirMedicationStatement(
        status=record.status,
        medication_codeable_concept=_coded_concept(
            RXNORM_SYSTEM, record.medication_code, record.medication_display
        ),
        subject=_reference(subject),
        effective_date_time=_fhir_date(record.effective_date),
        dosage=dosage,
        note=_notes(record.note),
    )


def _care_plan_to_fhir(record: CarePlanRecord, *, subject: str | None) -> fhir.FhirCarePlan:
    period = None
    if record.period_start is not None or record.period_end is not None:
        period = fhir.Period(start=_fhir_date(record.period_start), end=_fhir_date(record.period_end))
    activities = []
    for activity in record.activities:
        scheduled = None
        if activity.scheduled_start is not None or activity.scheduled_end is not None:
            scheduled = fhir.Period(
                start=_fhir_date(activity.scheduled_start),
                end=_fhir_date(activity.scheduled_end),
            )
        activities.append(
            fhir.CarePlanActivity(
                detail=fhir.CarePlanActivityDetail(
                    kind=activity.kind,
                    status=activity.status,
                    description=activity.description,
                    scheduled_period=scheduled,
                )
            )
        )
    return fhir.FhirCarePlan(
        status=record.status,
        intent=record.intent,
        category=[_coded_concept(None, code, None) for code in record.categories] or None,
        title=record.title,
        description=record.description,
        subject=_reference(subject),
        period=period,
        author=fhir.Reference(display=record.author) if record.author is not None else None,
        care_team=[fhir.Reference(display=record.care_team)] if record.care_team is not None else None,
        addresses=[fhir.Reference(display=text) for text in record.addresses] or None,
        goal=[fhir.Reference(display=text) for text in record.goals] or None,
        activity=activities or None,
        note=_notes(record.note),
    )


_TO_FHIR = {
    "Patient": _patient_to_fhir,
    "Observation": _observation_to_fhir,
    "Encounter": _encounter_to_fhir,
    "Condition": _condition_to_fhir,
    "Immunization": _immunization_to_fhir,
    "MedicationStatement": _medication_to_fhir,
    "CarePlan": _care_plan_to_fhir,
}


def to_fhir(
    record: ClinicalRecordPayload,
    resource_type: str,
    *,
    resource_id: str | None = None,
    subject_reference: str | None = None,
) -> dict[str, Any]:
    """Render an internal record as FHIR JSON.

    ``subject_reference`` (``Patient/<id>``) links non-Patient resources to
    their patient on the target server.
    """
    _ensure_supported(resource_type)
    if record.resource_type != resource_type:
        raise TranslationError(
            f"Record of type {record.resource_type} cannot be rendered as {resource_type}"
        )
    resource = _TO_FHIR[resource_type](record, subject=subject_reference)
    resource.id = resource_id
    return resource.model_dump(by_alias=True, exclude_none=True, mode="json")


# -- fromFhir ---------------------------------------------------------------


def _patient_from_fhir(resource: fhir.FhirPatient) -> PatientRecord:
    mrn = None
    for identifier in resource.identifier or []:
        if _concept_code(identifier.type) == "MR" and identifier.value:
            mrn = identifier.value
            break
    if mrn is None:
        mrn = next((item.value for item in resource.identifier or [] if item.value), None)

    names = resource.name or []
    name = next((item for item in names if item.use == "official"), _first(names))
    telecom = {point.system: point.value for point in reversed(resource.telecom or [])}
    address = _first(resource.address)
    return PatientRecord(
        mrn=mrn,
        first_name=_first(name.given) if name is not None else None,
        last_name=name.family if name is not None else None,
        birth_date=_parse_date(resource.birth_date, "Patient.birthDate"),
        gender=resource.gender or "unknown",
        phone=telecom.get("phone"),
        email=telecom.get("email"),
        address_line=_first(address.line) if address is not None else None,
        city=address.city if address is not None else None,
        state=address.state if address is not None else None,
        postal_code=address.postal_code if address is not None else None,
    )


def _observation_from_fhir(resource: fhir.FhirObservation) -> ObservationRecord:
    coding = _primary_coding(resource.code)
    if coding is None or not coding.code:
        raise TranslationError("Element Observation.code has no coded value")

    value = unit = value_text = None
    if resource.value_quantity is not None:
        value = resource.value_quantity.value
        unit = resource.value_quantity.unit or resource.value_quantity.code
    elif resource.value_string is not None:
        value_text = resource.value_string
    elif resource.value_codeable_concept is not None:
        value_text = _concept_display(resource.value_codeable_concept)

    components = []
    for component in resource.component or []:
        component_coding = _primary_coding(component.code)
        if component_coding is None or not component_coding.code:
            continue
        quantity = component.value_quantity
        components.append(
            ObservationComponent(
                code=component_coding.code,
                display=_concept_display(component.code),
                value=quantity.value if quantity is not None else None,
                unit=(quantity.unit or quantity.code) if quantity is not None else None,
            )
        )

    return ObservationRecord(
        code=coding.code,
        code_system=coding.system or "http://loinc.org",
        display=_concept_display(resource.code),
        category=_concept_code(_first(resource.category)),
        status=resource.status,
        effective_at=_parse_datetime(resource.effective_date_time, "Observation.effectiveDateTime"),
        value=value,
        unit=unit,
        value_text=value_text,
        interpretation=_concept_code(_first(resource.interpretation)),
        components=components,
        note=_note_text(resource.note),
    )


def _encounter_from_fhir(resource: fhir.FhirEncounter) -> EncounterRecord:
    period = resource.period or fhir.Period()
    participant = _first(resource.participant)
    return EncounterRecord(
        status=resource.status,
        encounter_class=(resource.class_.code if resource.class_ and resource.class_.code else "AMB"),
        type_text=_concept_display(_first(resource.type)),
        period_start=_parse_datetime(period.start, "Encounter.period.start"),
        period_end=_parse_datetime(period.end, "Encounter.period.end"),
        reason=_concept_display(_first(resource.reason_code)),
        provider_name=(
            participant.individual.display
            if participant is not None and participant.individual is not None
            else None
        ),
        facility=resource.service_provider.display if resource.service_provider else None,
    )


def _condition_from_fhir(resource: fhir.FhirCondition) -> ConditionRecord:
    coding = _primary_coding(resource.code)
    return ConditionRecord(
        code=coding.code if coding is not None else None,
        code_system=(coding.system if coding is not None and coding.system else "http://snomed.info/sct"),
        display=_concept_display(resource.code),
        clinical_status=_concept_code(resource.clinical_status) or "active",
        verification_status=_concept_code(resource.verification_status) or "confirmed",
        category=_concept_code(_first(resource.category)) or "problem-list-item",
        onset_date=_parse_date(resource.onset_date_time, "Condition.onsetDateTime"),
        abatement_date=_parse_date(resource.abatement_date_time, "Condition.abatementDateTime"),
        note=_note_text(resource.note),
    )


def _immunization_from_fhir(resource: fhir.FhirImmunization) -> ImmunizationRecord:
    vaccine_code = _concept_code(resource.vaccine_code)
    if not vaccine_code:
        raise TranslationError("Element Immunization.vaccineCode has no coded value")
    performer = _first(resource.performer)
    dose = resource.dose_quantity
    return ImmunizationRecord(
        vaccine_code=vaccine_code,
        vaccine_display=_concept_display(resource.vaccine_code),
        status=resource.status,
        occurrence_at=_parse_datetime(resource.occurrence_date_time, "Immunization.occurrenceDateTime"),
        primary_source=True if resource.primary_source is None else resource.primary_source,
        lot_number=resource.lot_number,
        dose_value=dose.value if dose is not None else None,
        dose_unit=(dose.unit or dose.code) if dose is not None else None,
        site=_concept_display(resource.site),
        route=_concept_display(resource.route),
        performer=(
            performer.actor.display if performer is not None and performer.actor is not None else None
        ),
        note=_note_text(resource.note),
    )


def _medication_from_fhir(resource: fhir.FhirMedicationStatement) -> MedicationStatementRecord:
    dosage = _first(resource.dosage)
    dose_and_rate = _first(dosage.dose_and_rate) if dosage is not None else None
    dose = dose_and_rate.dose_quantity if dose_and_rate is not None else None
    coding = _primary_coding(resource.medication_codeable_concept)
    return MedicationStatementRecord(
        medication_code=coding.code if coding is not None else None,
        medication_display=_concept_display(resource.medication_codeable_concept),
        status=resource.status,
        dosage_text=dosage.text if dosage is not None else None,
        dose_value=dose.value if dose is not None else None,
        dose_unit=(dose.unit or dose.code) if dose is not None else None,
        route=_concept_display(dosage.route) if dosage is not None else None,
        effective_date=_parse_date(resource.effective_date_time, "MedicationStatement.effectiveDateTime"),
        note=_note_text(resource.note),
    )


def _care_plan_activity_from_fhir(activity: fhir.CarePlanActivity) -> CarePlanActivity | None:
    detail = activity.detail
    if detail is None:
        return None
    scheduled = detail.scheduled_period
    if scheduled is None and detail.scheduled_timing is not None:
        repeat = detail.scheduled_timing.repeat
        scheduled = repeat.bounds_period if repeat is not None else None
    scheduled = scheduled or fhir.Period()
    return CarePlanActivity(
        kind=detail.kind,
        status=detail.status,
        description=detail.description,
        scheduled_start=_parse_date(scheduled.start, "CarePlan.activity.detail.scheduled.start"),
        scheduled_end=_parse_date(scheduled.end, "CarePlan.activity.detail.scheduled.end"),
    )


def _care_plan_from_fhir(resource: fhir.FhirCarePlan) -> CarePlanRecord:
    period = resource.period or fhir.Period()
    care_team = _first(resource.care_team)
    activities = [_care_plan_activity_from_fhir(activity) for activity in resource.activity or []]
    return CarePlanRecord(
        status=resource.status,
        intent=resource.intent,
        categories=[code for code in (_concept_code(c) for c in resource.category or []) if code],
        title=resource.title,
        description=resource.description,
        period_start=_parse_date(period.start, "CarePlan.period.start"),
        period_end=_parse_date(period.end, "CarePlan.period.end"),
        author=resource.author.display if resource.author is not None else None,
        care_team=care_team.display if care_team is not None else None,
        addresses=[ref.display for ref in resource.addresses or [] if ref.display],
        goals=[ref.display for ref in resource.goal or [] if ref.display],
        activities=[activity for activity in activities if activity is not None],
        note=_note_text(resource.note),
    )


_FROM_FHIR = {
    "Patient": _patient_from_fhir,
    "Observation": _observation_from_fhir,
    "Encounter": _encounter_from_fhir,
    "Condition": _condition_from_fhir,
    "Immunization": _immunization_from_fhir,
    "MedicationStatement": _medication_from_fhir,
    "CarePlan": _care_plan_from_fhir,
}


def from_fhir(resource: dict[str, Any]) -> ClinicalRecordPayload:
    """Validate FHIR JSON and convert it to the internal record shape."""
    if not isinstance(resource, dict):
        raise TranslationError("FHIR resource is not a JSON object")
    resource_type = resource.get("resourceType")
    if resource_type is None:
        raise TranslationError("FHIR resource has no resourceType")
    _ensure_supported(resource_type)
    label = f"{resource_type}/{resource.get('id') or '<new>'}"
    try:
        typed = fhir.fhir_resource_adapter.validate_python(resource)
    except ValidationError as exc:
        raise TranslationError(f"{label} failed validation at {_validation_summary(exc)}") from exc
    try:
        return _FROM_FHIR[resource_type](typed)
    except ValidationError as exc:
        raise TranslationError(
            f"{label} does not map to an internal record ({_validation_summary(exc)})"
        ) from exc


def parse_record(payload: dict[str, Any]) -> ClinicalRecordPayload:
    """Validate a stored internal payload."""
    resource_type = payload.get("resource_type") if isinstance(payload, dict) else None
    _ensure_supported(resource_type)
    try:
        return clinical_record_adapter.validate_python(payload)
    except ValidationError as exc:
        raise TranslationError(
            f"Stored {resource_type} record is invalid at {_validation_summary(exc)}"
        ) from exc
