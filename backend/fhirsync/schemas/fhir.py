"""FHIR R4 resource shapes validated at the server boundary.

Only the elements the engine maps are modelled; anything else a server
returns is ignored. Date and dateTime elements stay strings here and are
parsed by the translator, since FHIR allows partial precision.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class FhirElement(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Coding(FhirElement):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(FhirElement):
    coding: Optional[list[Coding]] = None
    text: Optional[str] = None


class Quantity(FhirElement):
    value: Optional[float] = None
    unit: Optional[str] = None
    system: Optional[str] = None
    code: Optional[str] = None


class Reference(FhirElement):
    reference: Optional[str] = None
    display: Optional[str] = None


class Annotation(FhirElement):
    text: str


class Identifier(FhirElement):
    type: Optional[CodeableConcept] = None
    system: Optional[str] = None
    value: Optional[str] = None


class HumanName(FhirElement):
    use: Optional[str] = None
    family: Optional[str] = None
    given: Optional[list[str]] = None
    text: Optional[str] = None


class ContactPoint(FhirElement):
    system: Optional[str] = None
    value: Optional[str] = None
    use: Optional[str] = None


class Address(FhirElement):
    line: Optional[list[str]] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None


class Period(FhirElement):
    start: Optional[str] = None
    end: Optional[str] = None


class Meta(FhirElement):
    version_id: Optional[str] = None
    last_updated: Optional[str] = None


class FhirResource(FhirElement):
    id: Optional[str] = None
    meta: Optional[Meta] = None


class FhirPatient(FhirResource):
    resource_type: Literal["Patient"] = "Patient"
    identifier: Optional[list[Identifier]] = None
    name: Optional[list[HumanName]] = None
    telecom: Optional[list[ContactPoint]] = None
    gender: Optional[Literal["male", "female", "other", "unknown"]] = None
    birth_date: Optional[str] = None
    address: Optional[list[Address]] = None


class ObservationComponent(FhirElement):
    code: CodeableConcept
    value_quantity: Optional[Quantity] = None


class FhirObservation(FhirResource):
    resource_type: Literal["Observation"] = "Observation"
    status: str
    category: Optional[list[CodeableConcept]] = None
    code: CodeableConcept
    subject: Optional[Reference] = None
    effective_date_time: Optional[str] = None
    value_quantity: Optional[Quantity] = None
    value_string: Optional[str] = None
    value_codeable_concept: Optional[CodeableConcept] = None
    interpretation: Optional[list[CodeableConcept]] = None
    component: Optional[list[ObservationComponent]] = None
    note: Optional[list[Annotation]] = None


class EncounterParticipant(FhirElement):
    individual: Optional[Reference] = None


class FhirEncounter(FhirResource):
    resource_type: Literal["Encounter"] = "Encounter"
    status: str
    class_: Optional[Coding] = Field(default=None, alias="class")
    type: Optional[list[CodeableConcept]] = None
    subject: Optional[Reference] = None
    period: Optional[Period] = None
    reason_code: Optional[list[CodeableConcept]] = None
    participant: Optional[list[EncounterParticipant]] = None
    service_provider: Optional[Reference] = None


class FhirCondition(FhirResource):
    resource_type: Literal["Condition"] = "Condition"
    clinical_status: Optional[CodeableConcept] = None
    verification_status: Optional[CodeableConcept] = None
    category: Optional[list[CodeableConcept]] = None
    code: Optional[CodeableConcept] = None
    subject: Optional[Reference] = None
    onset_date_time: Optional[str] = None
    abatement_date_time: Optional[str] = None
    note: Optional[list[Annotation]] = None


class ImmunizationPerformer(FhirElement):
    actor: Optional[Reference] = None


class FhirImmunization(FhirResource):
    resource_type: Literal["Immunization"] = "Immunization"
    status: str
    vaccine_code: CodeableConcept
    patient: Optional[Reference] = None
    occurrence_date_time: Optional[str] = None
    primary_source: Optional[bool] = None
    lot_number: Optional[str] = None
    site: Optional[CodeableConcept] = None
    route: Optional[CodeableConcept] = None
    dose_quantity: Optional[Quantity] = None
    performer: Optional[list[ImmunizationPerformer]] = None
    note: Optional[list[Annotation]] = None


class DoseAndRate(FhirElement):
    dose_quantity: Optional[Quantity] = None


class Dosage(FhirElement):
    text: Optional[str] = None
    route: Optional[CodeableConcept] = None
    dose_and_rate: Optional[list[DoseAndRate]] = None


class FhirMedicationStatement(FhirResource):
    resource_type: Literal["MedicationStatement"] = "MedicationStatement"
    status: str
    medication_codeable_concept: Optional[CodeableConcept] = None
    subject: Optional[Reference] = None
    effective_date_time: Optional[str] = None
    dosage: Optional[list[Dosage]] = None
    note: Optional[list[Annotation]] = None


class TimingRepeat(FhirElement):
    bounds_period: Optional[Period] = None


class Timing(FhirElement):
    repeat: Optional[TimingRepeat] = None


class CarePlanActivityDetail(FhirElement):
    kind: Optional[str] = None
    status: str
    description: Optional[str] = None
    scheduled_period: Optional[Period] = None
    scheduled_timing: Optional[Timing] = None


class CarePlanActivity(FhirElement):
    detail: Optional[CarePlanActivityDetail] = None


class FhirCarePlan(FhirResource):
    resource_type: Literal["CarePlan"] = "CarePlan"
    status: str
    intent: str
    category: Optional[list[CodeableConcept]] = None
    title: Optional[str] = None
    description: Optional[str] = None
    subject: Optional[Reference] = None
    period: Optional[Period] = None
    author: Optional[Reference] = None
    care_team: Optional[list[Reference]] = None
    addresses: Optional[list[Reference]] = None
    goal: Optional[list[Reference]] = None
    activity: Optional[list[CarePlanActivity]] = None
    note: Optional[list[Annotation]] = None


AnyFhirResource = Annotated[
    Union[
        FhirPatient,
        FhirObservation,
        FhirEncounter,
        FhirCondition,
        FhirImmunization,
        FhirMedicationStatement,
        FhirCarePlan,
    ],
    Field(discriminator="resource_type"),
]

fhir_resource_adapter: TypeAdapter[AnyFhirResource] = TypeAdapter(AnyFhirResource)
