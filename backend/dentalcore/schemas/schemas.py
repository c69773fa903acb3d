from datetime import datetime
from typing import List
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict

# ---------------------------------------------------------------------------
# Every *read* schema doubles as the cache document format: repositories
# serialise with ``model_dump_json`` and restore with ``model_validate_json``.
# ---------------------------------------------------------------------------


class _ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Doctor schemas
class DoctorBase(BaseModel):
    first_name: str
    last_name: str


class DoctorCreate(DoctorBase):
    pass


class Doctor(DoctorBase, _ORMModel):
    id: str
    created_at: Optional[datetime] = None


# Insurance company schemas
class InsuranceCompanyBase(BaseModel):
    name: str


class InsuranceCompanyCreate(InsuranceCompanyBase):
    pass


class InsuranceCompany(InsuranceCompanyBase, _ORMModel):
    id: str


# ------------------------------------------------------------
# Patient dependents
# ------------------------------------------------------------


class EmergencyContactBase(BaseModel):
    patient_id: str
    name: str
    phone: str
    relationship: str


class EmergencyContactCreate(EmergencyContactBase):
    pass


class EmergencyContact(EmergencyContactBase, _ORMModel):
    id: int


class ExaminationBase(BaseModel):
    patient_id: str
    report: str


class ExaminationCreate(ExaminationBase):
    pass


class Examination(ExaminationBase, _ORMModel):
    id: int
    created_at: Optional[datetime] = None


class BillingBase(BaseModel):
    patient_id: str
    doctor_id: str
    procedure: str
    billing_amount: float
    paid_cash_amount: float = 0.0
    paid_insurance_amount: float = 0.0


class BillingCreate(BillingBase):
    pass


class Billing(BillingBase, _ORMModel):
    billing_id: str
    balance: float = 0.0
    total_received: float = 0.0
    created_at: Optional[datetime] = None


class TreatmentPlanBase(BaseModel):
    patient_id: str
    plan: str


class TreatmentPlanCreate(TreatmentPlanBase):
    pass


class TreatmentPlan(TreatmentPlanBase, _ORMModel):
    id: int
    created_at: Optional[datetime] = None


class AppointmentBase(BaseModel):
    patient_id: str
    doctor_id: str
    date_time: str
    status: str = "scheduled"  # scheduled | fulfilled | cancelled


class AppointmentCreate(AppointmentBase):
    pass


class Appointment(AppointmentBase, _ORMModel):
    id: int
    created_at: Optional[datetime] = None


# ------------------------------------------------------------
# Patient (aggregate root)
# ------------------------------------------------------------


class PatientBase(BaseModel):
    first_name: str
    middle_name: Optional[str] = None
    last_name: str
    sex: str  # Male | Female | Other
    date_of_birth: str
    insured: bool = False
    cash: bool = False
    insurance_company: Optional[str] = None
    scheme: Optional[str] = None
    cover_limit: Optional[float] = None
    occupation: Optional[str] = None
    place_of_work: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None


class PatientCreate(PatientBase):
    pass


class Patient(PatientBase, _ORMModel):
    """Patient document including every dependent collection."""

    id: str
    created_at: Optional[datetime] = None

    emergency_contacts: List[EmergencyContact] = []
    examinations: List[Examination] = []
    billings: List[Billing] = []
    treatment_plans: List[TreatmentPlan] = []
    appointments: List[Appointment] = []
