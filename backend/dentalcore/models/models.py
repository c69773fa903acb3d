from sqlalchemy import Boolean
from sqlalchemy import CheckConstraint

# SQLAlchemy core imports
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship

# Local helpers
from dentalcore.database import Base
from dentalcore.utils.time import utc_now_naive

# ---------------------------------------------------------------------------
# Sequence counters – one row per identifier namespace
# ---------------------------------------------------------------------------


class SequenceCounter(Base):
    """Last value issued for a ``<PREFIX>-000123`` identifier namespace."""

    __tablename__ = "sequence_counter"

    namespace = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


class Doctor(Base):
    __tablename__ = "doctor"

    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=False)
    last_name = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utc_now_naive)

    appointments = relationship("Appointment", back_populates="doctor")
    billings = relationship("Billing", back_populates="doctor")


class InsuranceCompany(Base):
    __tablename__ = "insurance_company"

    id = Column(String, primary_key=True)
    name = Column(String, unique=True, nullable=False)


# ---------------------------------------------------------------------------
# Patient – aggregate root
# ---------------------------------------------------------------------------


class Patient(Base):
    """A patient record and the owner of every clinical dependent row.

    Dependents are deleted explicitly by the aggregate repository (it needs
    their identities to invalidate cache keys), so the relationships carry no
    ORM-level cascade.
    """

    __tablename__ = "patient"
    __table_args__ = (CheckConstraint("sex IN ('Male', 'Female', 'Other')", name="ck_patient_sex"),)

    id = Column(String, primary_key=True)

    # Identity ---------------------------------------------------------------
    first_name = Column(String, nullable=False)
    middle_name = Column(String, nullable=True)
    last_name = Column(String, nullable=False, index=True)
    sex = Column(String, nullable=False)
    date_of_birth = Column(String, nullable=False, index=True)

    # Payment ----------------------------------------------------------------
    insured = Column(Boolean, nullable=False, default=False)
    cash = Column(Boolean, nullable=False, default=False)
    insurance_company = Column(String, nullable=True)
    scheme = Column(String, nullable=True)
    cover_limit = Column(Float, nullable=True)

    # Contact ----------------------------------------------------------------
    occupation = Column(String, nullable=True)
    place_of_work = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    address = Column(String, nullable=True)

    created_at = Column(DateTime, default=utc_now_naive)

    emergency_contacts = relationship("EmergencyContact", back_populates="patient")
    examinations = relationship("Examination", back_populates="patient")
    billings = relationship("Billing", back_populates="patient")
    treatment_plans = relationship("TreatmentPlan", back_populates="patient")
    appointments = relationship("Appointment", back_populates="patient")


# ---------------------------------------------------------------------------
# Patient dependents
# ---------------------------------------------------------------------------


class EmergencyContact(Base):
    __tablename__ = "emergency_contact"
    __table_args__ = (UniqueConstraint("patient_id", "phone", name="idx_patient_phone"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patient.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phone = Column(String, nullable=False)

    # Declared before the ``relationship`` column shadows the ORM helper
    patient = relationship("Patient", back_populates="emergency_contacts")

    relationship = Column(String, nullable=False)


class Examination(Base):
    __tablename__ = "examination"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patient.id"), nullable=False, index=True)
    report = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now_naive)

    patient = relationship("Patient", back_populates="examinations")


class Billing(Base):
    """One billed procedure.

    ``balance`` and ``total_received`` are derived from the amount columns by
    the repository on every write.
    """

    __tablename__ = "billing"

    billing_id = Column(String, primary_key=True)
    patient_id = Column(String, ForeignKey("patient.id"), nullable=False, index=True)
    doctor_id = Column(String, ForeignKey("doctor.id"), nullable=False, index=True)
    procedure = Column(String, nullable=False)
    billing_amount = Column(Float, nullable=False)
    paid_cash_amount = Column(Float, nullable=False, default=0.0)
    paid_insurance_amount = Column(Float, nullable=False, default=0.0)
    balance = Column(Float, nullable=False, default=0.0)
    total_received = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utc_now_naive)

    patient = relationship("Patient", back_populates="billings")
    doctor = relationship("Doctor", back_populates="billings")


class TreatmentPlan(Base):
    __tablename__ = "treatment_plan"

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patient.id"), nullable=False, index=True)
    plan = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now_naive)

    patient = relationship("Patient", back_populates="treatment_plans")


class Appointment(Base):
    __tablename__ = "appointment"
    __table_args__ = (
        CheckConstraint("status IN ('scheduled', 'fulfilled', 'cancelled')", name="ck_appointment_status"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    patient_id = Column(String, ForeignKey("patient.id"), nullable=False, index=True)
    doctor_id = Column(String, ForeignKey("doctor.id"), nullable=False, index=True)
    date_time = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default="scheduled")
    created_at = Column(DateTime, default=utc_now_naive)

    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")
