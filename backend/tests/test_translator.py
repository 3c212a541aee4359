from datetime import date, datetime, timezone

import pytest

from fhirsync.schemas.records import (
    CarePlanActivity,
    CarePlanRecord,
    ConditionRecord,
    EncounterRecord,
    ImmunizationRecord,
    MedicationStatementRecord,
    ObservationComponent,
    ObservationRecord,
    PatientRecord,
)
from fhirsync.services.errors import TranslationError, UnsupportedResourceType
from fhirsync.services.translator import (
    LOCAL_ONLY_FIELDS,
    SUPPORTED_RESOURCE_TYPES,
    from_fhir,
    parse_record,
    to_fhir,
)

SAMPLES = {
    "Patient": PatientRecord(
        mrn="MRN-1001",
        first_name="Ana",
        last_name="Lopez",
        birth_date=date(1980, 5, 17),
        gender="female",
        phone="555-0100",
        email="ana@example.org",
        address_line="1 Main St",
        city="Springfield",
        state="IL",
        postal_code="62701",
        caregiver_email="son@example.org",
        preferred_contact_time="morning",
    ),
    "Observation": ObservationRecord(
        code="85354-9",
        display="Blood pressure panel",
        category="vital-signs",
        status="final",
        effective_at=datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc),
        interpretation="H",
        components=[
            ObservationComponent(code="8480-6", display="Systolic", value=142.0, unit="mm[Hg]"),
            ObservationComponent(code="8462-4", display="Diastolic", value=91.0, unit="mm[Hg]"),
        ],
        note="Taken after exercise",
        device_id="cuff-17",
        entry_source="home",
    ),
    "Encounter": EncounterRecord(
        status="finished",
        encounter_class="AMB",
        type_text="Office visit",
        period_start=datetime(2026, 2, 10, 14, 0, tzinfo=timezone.utc),
        period_end=datetime(2026, 2, 10, 14, 45, tzinfo=timezone.utc),
        reason="Follow-up",
        provider_name="Dr. Ray",
        facility="Main Clinic",
        internal_notes="Bring interpreter",
    ),
    "Condition": ConditionRecord(
        code="44054006",
        display="Type 2 diabetes mellitus",
        clinical_status="active",
        verification_status="confirmed",
        onset_date=date(2019, 8, 1),
        note="Diet controlled",
        community_tags=["support-group"],
    ),
    "Immunization": ImmunizationRecord(
        vaccine_code="208",
        vaccine_display="COVID-19 mRNA",
        occurrence_at=datetime(2025, 10, 2, 11, 15, tzinfo=timezone.utc),
        lot_number="EK5730",
        dose_value=0.3,
        dose_unit="mL",
        site="Left deltoid",
        route="Intramuscular",
        performer="Nurse Kim",
        reminder_sent=True,
    ),
    "MedicationStatement": MedicationStatementRecord(
        medication_code="860975",
        medication_display="Metformin 500 MG Oral Tablet",
        dosage_text="1 tablet twice daily",
        dose_value=500.0,
        dose_unit="mg",
        route="Oral",
        effective_date=date(2024, 1, 15),
        ai_confidence=0.82,
        needs_review=True,
    ),
    "CarePlan": CarePlanRecord(
        status="active",
        intent="plan",
        categories=["assess-plan"],
        title="Diabetes management",
        description="Lower HbA1c below 7%",
        period_start=date(2026, 1, 1),
        period_end=date(2026, 12, 31),
        author="Dr. Ray",
        care_team="Endocrinology team",
        addresses=["Type 2 diabetes mellitus"],
        goals=["HbA1c below 7%"],
        activities=[
            CarePlanActivity(
                kind="ServiceRequest",
                status="scheduled",
                description="Quarterly HbA1c test",
                scheduled_start=date(2026, 3, 1),
                scheduled_end=date(2026, 3, 31),
            ),
            CarePlanActivity(status="in-progress", description="Daily walk"),
        ],
        note="Reviewed with patient",
        patient_goal_notes="Wants to run a 5k",
        shared_with_caregiver=True,
    ),
}


def _shared(record):
    return record.model_dump(exclude=set(LOCAL_ONLY_FIELDS[record.resource_type]))


def test_samples_cover_every_supported_type():
    assert set(SAMPLES) == set(SUPPORTED_RESOURCE_TYPES)


@pytest.mark.parametrize("resource_type", SUPPORTED_RESOURCE_TYPES)
def test_round_trip_preserves_shared_fields(resource_type):
    record = SAMPLES[resource_type]

    resource = to_fhir(record, resource_type, resource_id="r-1", subject_reference="Patient/pat-1")
    restored = from_fhir(resource)

    assert resource["resourceType"] == resource_type
    assert resource["id"] == "r-1"
    assert type(restored) is type(record)
    assert _shared(restored) == _shared(record)


@pytest.mark.parametrize("resource_type", SUPPORTED_RESOURCE_TYPES)
def test_local_only_fields_never_leave_the_platform(resource_type):
    record = SAMPLES[resource_type]
    defaults = type(record)(**_minimal_fields(resource_type))

    restored = from_fhir(to_fhir(record, resource_type))

    for name in LOCAL_ONLY_FIELDS[resource_type]:
        assert getattr(restored, name) == getattr(defaults, name)


def _minimal_fields(resource_type):
    return {
        "Observation": {"code": "x"},
        "Immunization": {"vaccine_code": "x"},
        "MedicationStatement": {"medication_code": "x"},
    }.get(resource_type, {})


def test_subject_reference_uses_patient_element_for_immunization():
    resource = to_fhir(SAMPLES["Immunization"], "Immunization", subject_reference="Patient/pat-9")

    assert resource["patient"] == {"reference": "Patient/pat-9"}
    assert "subject" not in resource


def test_patient_resource_carries_no_subject():
    resource = to_fhir(SAMPLES["Patient"], "Patient", subject_reference="Patient/pat-9")

    assert "subject" not in resource
    assert resource["birthDate"] == "1980-05-17"
    assert resource["identifier"][0]["value"] == "MRN-1001"


def test_unsupported_resource_type_is_rejected():
    with pytest.raises(UnsupportedResourceType):
        from_fhir({"resourceType": "AllergyIntolerance", "id": "a-1"})

    with pytest.raises(UnsupportedResourceType):
        to_fhir(SAMPLES["Condition"], "Procedure")


def test_observation_without_coded_value_is_a_translation_error():
    resource = {
        "resourceType": "Observation",
        "id": "obs-bad",
        "status": "final",
        "code": {"text": "Something measured"},
    }

    with pytest.raises(TranslationError) as exc_info:
        from_fhir(resource)

    assert "Observation.code" in exc_info.value.message


def test_missing_required_element_reports_location_only():
    resource = {"resourceType": "Observation", "id": "obs-2", "code": {"coding": [{"code": "1"}]}}

    with pytest.raises(TranslationError) as exc_info:
        from_fhir(resource)

    assert "status" in exc_info.value.message


def test_invalid_datetime_is_a_translation_error():
    resource = to_fhir(SAMPLES["Encounter"], "Encounter")
    resource["period"]["start"] = "last tuesday"

    with pytest.raises(TranslationError):
        from_fhir(resource)


def test_partial_precision_dates_are_anchored_to_first_day():
    resource = to_fhir(SAMPLES["Condition"], "Condition")
    resource["onsetDateTime"] = "2019-08"

    restored = from_fhir(resource)

    assert restored.onset_date == date(2019, 8, 1)


def test_record_cannot_be_rendered_as_another_type():
    with pytest.raises(TranslationError):
        to_fhir(SAMPLES["Condition"], "Observation")


def test_parse_record_validates_stored_payload():
    payload = SAMPLES["MedicationStatement"].model_dump(mode="json")

    assert parse_record(payload) == SAMPLES["MedicationStatement"]

    payload.pop("medication_code")
    payload.pop("medication_display")
    with pytest.raises(TranslationError):
        parse_record(payload)


def test_care_plan_reads_activity_schedule_from_timing_bounds():
    resource = {
        "resourceType": "CarePlan",
        "id": "cp-1",
        "status": "on-hold",
        "intent": "plan",
        "category": [{"coding": [{"system": "http://snomed.info/sct", "code": "734163000", "display": "Care plan"}]}],
        "subject": {"reference": "Patient/pat-1"},
        "careTeam": [{"display": "Cardiology"}, {"display": "Primary care"}],
        "activity": [
            {
                "detail": {
                    "status": "scheduled",
                    "description": "Cardiac rehab",
                    "scheduledTiming": {"repeat": {"boundsPeriod": {"start": "2026-04-01", "end": "2026-06-30"}}},
                }
            },
            {"reference": {"reference": "ServiceRequest/sr-1"}},
        ],
    }

    restored = from_fhir(resource)

    assert restored.status == "on-hold"
    assert restored.categories == ["734163000"]
    assert restored.care_team == "Cardiology"
    assert restored.activities == [
        CarePlanActivity(
            status="scheduled",
            description="Cardiac rehab",
            scheduled_start=date(2026, 4, 1),
            scheduled_end=date(2026, 6, 30),
        )
    ]
