"""Per-type descriptors consumed by :class:`~dentalcore.repositories.base.EntityRepository`."""

from typing import Any
from typing import Dict

from sqlalchemy.orm import selectinload

from dentalcore.models import models
from dentalcore.repositories.base import EntityDescriptor
from dentalcore.repositories.base import ParentLink
from dentalcore.repositories.base import Reference
from dentalcore.schemas import schemas

# Identifier namespaces and their rendered prefixes (``DP-000001`` …)
PATIENT_IDS = "patient"
DOCTOR_IDS = "doctor"
INSURANCE_COMPANY_IDS = "insurance_company"
BILLING_IDS = "billing"

ID_PREFIXES = {
    PATIENT_IDS: "DP",
    DOCTOR_IDS: "DR",
    INSURANCE_COMPANY_IDS: "IC",
    BILLING_IDS: "PB",
}

MIDDLE_NAME_PLACEHOLDER = "N/A"


def _normalise_patient(values: Dict[str, Any]) -> Dict[str, Any]:
    # The natural key includes the middle name, so "no middle name" needs one
    # canonical spelling.
    if "middle_name" in values and not (values["middle_name"] or "").strip():
        values["middle_name"] = MIDDLE_NAME_PLACEHOLDER
    return values


def _derive_billing_totals(values: Dict[str, Any]) -> Dict[str, Any]:
    cash = values.get("paid_cash_amount") or 0.0
    insurance = values.get("paid_insurance_amount") or 0.0
    values["paid_cash_amount"] = cash
    values["paid_insurance_amount"] = insurance
    values["total_received"] = cash + insurance
    if values.get("billing_amount") is not None:
        values["balance"] = values["billing_amount"] - values["total_received"]
    return values


def _patient_link() -> ParentLink:
    return ParentLink(
        field="patient_id",
        model=models.Patient,
        label="Patient",
        cache_key="patient_cache:{patient_id}",
        collection_key="patients_cache",
    )


_DOCTOR_REF = Reference(field="doctor_id", model=models.Doctor, label="Doctor")


DOCTOR = EntityDescriptor(
    name="doctor",
    label="Doctor",
    model=models.Doctor,
    schema=schemas.Doctor,
    collection_key="doctors_cache",
    id_namespace=DOCTOR_IDS,
    natural_key=("first_name", "last_name"),
    mutable_columns=("first_name", "last_name"),
)

INSURANCE_COMPANY = EntityDescriptor(
    name="insurance_company",
    label="InsuranceCompany",
    model=models.InsuranceCompany,
    schema=schemas.InsuranceCompany,
    collection_key="insurance_companies_cache",
    id_namespace=INSURANCE_COMPANY_IDS,
    natural_key=("name",),
    mutable_columns=("name",),
)

PATIENT = EntityDescriptor(
    name="patient",
    label="Patient",
    model=models.Patient,
    schema=schemas.Patient,
    collection_key="patients_cache",
    id_namespace=PATIENT_IDS,
    natural_key=("first_name", "middle_name", "last_name", "date_of_birth"),
    mutable_columns=(
        "first_name",
        "middle_name",
        "last_name",
        "sex",
        "date_of_birth",
        "insured",
        "cash",
        "insurance_company",
        "scheme",
        "cover_limit",
        "occupation",
        "place_of_work",
        "phone",
        "email",
        "address",
    ),
    prepare=_normalise_patient,
    load_options=(
        selectinload(models.Patient.emergency_contacts),
        selectinload(models.Patient.examinations),
        selectinload(models.Patient.billings),
        selectinload(models.Patient.treatment_plans),
        selectinload(models.Patient.appointments),
    ),
    order_by=(models.Patient.created_at.desc(), models.Patient.id.desc()),
)

EMERGENCY_CONTACT = EntityDescriptor(
    name="emergency_contact",
    label="EmergencyContact",
    model=models.EmergencyContact,
    schema=schemas.EmergencyContact,
    collection_key="emergency_contacts_cache",
    identity="{patient_id}_{id}",
    natural_key=("patient_id", "phone"),
    mutable_columns=("name", "phone", "relationship"),
    parent=_patient_link(),
)

EXAMINATION = EntityDescriptor(
    name="examination",
    label="Examination",
    model=models.Examination,
    schema=schemas.Examination,
    collection_key="examinations_cache",
    identity="{patient_id}:{id}",
    create_lock_fields=("patient_id",),
    mutable_columns=("report",),
    parent=_patient_link(),
)

BILLING = EntityDescriptor(
    name="billing",
    label="Billing",
    model=models.Billing,
    schema=schemas.Billing,
    collection_key="billings_cache",
    identity="{billing_id}",
    pk="billing_id",
    id_namespace=BILLING_IDS,
    create_lock_fields=("patient_id",),
    mutable_columns=(
        "doctor_id",
        "procedure",
        "billing_amount",
        "paid_cash_amount",
        "paid_insurance_amount",
        "balance",
        "total_received",
    ),
    parent=_patient_link(),
    references=(_DOCTOR_REF,),
    derive=_derive_billing_totals,
)

TREATMENT_PLAN = EntityDescriptor(
    name="treatment_plan",
    label="TreatmentPlan",
    model=models.TreatmentPlan,
    schema=schemas.TreatmentPlan,
    collection_key="treatment_plans_cache",
    identity="{patient_id}:{id}",
    create_lock_fields=("patient_id",),
    mutable_columns=("plan",),
    parent=_patient_link(),
)

APPOINTMENT = EntityDescriptor(
    name="appointment",
    label="Appointment",
    model=models.Appointment,
    schema=schemas.Appointment,
    collection_key="appointments_cache",
    identity="{patient_id}_{id}",
    natural_key=("patient_id", "doctor_id", "date_time"),
    mutable_columns=("doctor_id", "date_time", "status"),
    parent=_patient_link(),
    references=(_DOCTOR_REF,),
)

# Dependents removed together with their patient, in cascade order
PATIENT_DEPENDENTS = (
    EMERGENCY_CONTACT,
    EXAMINATION,
    BILLING,
    TREATMENT_PLAN,
    APPOINTMENT,
)
