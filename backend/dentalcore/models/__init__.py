from dentalcore.models.models import Appointment
from dentalcore.models.models import Billing
from dentalcore.models.models import Doctor
from dentalcore.models.models import EmergencyContact
from dentalcore.models.models import Examination
from dentalcore.models.models import InsuranceCompany
from dentalcore.models.models import Patient
from dentalcore.models.models import SequenceCounter
from dentalcore.models.models import TreatmentPlan

__all__ = [
    "Appointment",
    "Billing",
    "Doctor",
    "EmergencyContact",
    "Examination",
    "InsuranceCompany",
    "Patient",
    "SequenceCounter",
    "TreatmentPlan",
]
