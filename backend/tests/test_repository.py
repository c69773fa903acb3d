"""Generic entity repository: round trips, duplicates, invalidation and degradation."""

import json
import time
from unittest.mock import MagicMock

import pytest
import redis

from dentalcore.exceptions import DuplicateEntity
from dentalcore.exceptions import NotFound
from dentalcore.exceptions import PersistenceFailed
from dentalcore.exceptions import ReadTimeout
from dentalcore.models import models
from dentalcore.repositories import entities
from dentalcore.repositories.base import EntityRepository
from dentalcore.schemas import schemas
from dentalcore.services.cache import CacheLayer


@pytest.fixture
def cache_calls(container, monkeypatch):
    """Record every invalidation the cache layer receives, in order."""
    calls = []
    original_delete = container.cache.delete
    original_delete_matching = container.cache.delete_matching

    def delete(key):
        calls.append(("delete", key))
        return original_delete(key)

    def delete_matching(pattern):
        calls.append(("delete_matching", pattern))
        return original_delete_matching(pattern)

    monkeypatch.setattr(container.cache, "delete", delete)
    monkeypatch.setattr(container.cache, "delete_matching", delete_matching)
    return calls


class TestCreateAndRead:
    def test_create_assigns_sequential_ids(self, container):
        first = container.doctors.create(schemas.DoctorCreate(first_name="Peter", last_name="Kamau"))
        second = container.doctors.create({"first_name": "Grace", "last_name": "Achieng"})

        assert first.id == "DR-000001"
        assert second.id == "DR-000002"
        assert first.created_at is not None

    def test_create_then_get_round_trip(self, container, redis_client):
        created = container.insurance_companies.create(schemas.InsuranceCompanyCreate(name="Jubilee"))

        from_store = container.insurance_companies.get_by_id(created.id)
        assert from_store == created
        assert redis_client.exists(f"insurance_company_cache:{created.id}") == 1

        from_cache = container.insurance_companies.get_by_id(created.id)
        assert from_cache == created

    def test_cached_document_is_served_without_store(self, container, sample_doctor, monkeypatch):
        container.doctors.get_by_id(sample_doctor.id)

        def fail(*_args, **_kwargs):
            raise AssertionError("backing store should not be queried on a cache hit")

        monkeypatch.setattr(container.store, "read", fail)
        assert container.doctors.get_by_id(sample_doctor.id).last_name == "Kamau"

    def test_get_missing_raises_not_found(self, container, redis_client):
        with pytest.raises(NotFound):
            container.doctors.get_by_id("DR-999999")

        assert redis_client.exists("doctor_cache:DR-999999") == 0

    def test_pattern_delete_falls_through_and_repopulates(self, container, sample_doctor, redis_client):
        container.doctors.get_by_id(sample_doctor.id)
        container.cache.delete_matching("doctor_cache*")
        assert redis_client.exists(f"doctor_cache:{sample_doctor.id}") == 0

        assert container.doctors.get_by_id(sample_doctor.id) == sample_doctor
        assert redis_client.exists(f"doctor_cache:{sample_doctor.id}") == 1

    def test_unreadable_cache_entry_is_replaced(self, container, sample_doctor, redis_client):
        redis_client.set(f"doctor_cache:{sample_doctor.id}", "not json")

        assert container.doctors.get_by_id(sample_doctor.id) == sample_doctor
        cached = json.loads(redis_client.get(f"doctor_cache:{sample_doctor.id}"))
        assert cached["id"] == sample_doctor.id

    def test_get_all_caches_collection(self, container, sample_doctor, redis_client):
        doctors = container.doctors.get_all()
        assert [d.id for d in doctors] == [sample_doctor.id]
        assert json.loads(redis_client.get("doctors_cache"))[0]["id"] == sample_doctor.id

    def test_empty_collection_is_cached(self, container, redis_client):
        assert container.treatment_plans.get_all() == []
        assert redis_client.get("treatment_plans_cache") == "[]"
        assert container.treatment_plans.get_all() == []

    def test_create_invalidates_collection(self, container, sample_doctor, redis_client):
        container.doctors.get_all()
        container.doctors.create(schemas.DoctorCreate(first_name="Grace", last_name="Achieng"))

        assert redis_client.exists("doctors_cache") == 0
        assert len(container.doctors.get_all()) == 2

    def test_dependent_lookup_needs_parent(self, container):
        with pytest.raises(ValueError):
            container.emergency_contacts.get_by_id(1)

    def test_billing_lookup_without_parent(self, container, sample_patient, sample_doctor):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id,
                doctor_id=sample_doctor.id,
                procedure="Scaling",
                billing_amount=5000,
                paid_cash_amount=1500,
                paid_insurance_amount=2000,
            )
        )

        assert bill.billing_id == "PB-000001"
        assert bill.total_received == 3500
        assert bill.balance == 1500
        assert container.billings.get_by_id(bill.billing_id) == bill


class TestDuplicatesAndReferences:
    def test_duplicate_natural_key_rejected(self, container, sample_doctor, db_session):
        with pytest.raises(DuplicateEntity) as exc_info:
            container.doctors.create(schemas.DoctorCreate(first_name="Peter", last_name="Kamau"))

        assert exc_info.value.retryable is False
        assert db_session.query(models.Doctor).count() == 1
        # The rejected create did not consume an identifier
        assert container.sequences.current("doctor") == 1

    def test_missing_middle_name_normalised(self, make_patient, container):
        patient = make_patient(middle_name="")
        assert patient.middle_name == "N/A"

        with pytest.raises(DuplicateEntity):
            make_patient(middle_name=None)

    def test_emergency_contact_duplicate_phone(self, container, sample_patient):
        contact = schemas.EmergencyContactCreate(
            patient_id=sample_patient.id, name="Otieno Snr", phone="0700000001", relationship="Father"
        )
        container.emergency_contacts.create(contact)

        with pytest.raises(DuplicateEntity):
            container.emergency_contacts.create(contact)

    def test_dependent_requires_existing_patient(self, container):
        with pytest.raises(NotFound) as exc_info:
            container.examinations.create(schemas.ExaminationCreate(patient_id="DP-000404", report="Caries 36"))

        assert exc_info.value.entity == "Patient"

    def test_appointment_requires_existing_doctor(self, container, sample_patient):
        with pytest.raises(NotFound) as exc_info:
            container.appointments.create(
                schemas.AppointmentCreate(
                    patient_id=sample_patient.id, doctor_id="DR-000404", date_time="2026-11-02T09:00"
                )
            )

        assert exc_info.value.entity == "Doctor"


class TestPersistenceFailure:
    def test_failed_insert_rolls_back_sequence(self, make_patient, container, db_session):
        with pytest.raises(PersistenceFailed) as exc_info:
            make_patient(sex="Unknown")

        error = exc_info.value
        assert error.rollback_attempted is True
        assert error.rollback_succeeded is True
        assert container.sequences.current("patient") == 0
        assert db_session.query(models.Patient).count() == 0

        assert make_patient().id == "DP-000001"

    def test_failed_insert_does_not_invalidate(self, container, sample_patient, sample_doctor, redis_client):
        container.appointments.get_all()

        with pytest.raises(PersistenceFailed):
            container.appointments.create(
                schemas.AppointmentCreate(
                    patient_id=sample_patient.id,
                    doctor_id=sample_doctor.id,
                    date_time="2026-11-02T09:00",
                    status="lost",
                )
            )

        assert redis_client.exists("appointments_cache") == 1


class TestUpdate:
    def test_update_applies_mutable_columns(self, container, sample_doctor):
        container.doctors.get_by_id(sample_doctor.id)

        container.doctors.update(sample_doctor.model_copy(update={"last_name": "Mwangi"}))

        assert container.doctors.get_by_id(sample_doctor.id).last_name == "Mwangi"

    def test_update_rederives_billing_totals(self, container, sample_patient, sample_doctor):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id,
                doctor_id=sample_doctor.id,
                procedure="Extraction",
                billing_amount=3000,
            )
        )
        assert bill.balance == 3000

        container.billings.update(bill.model_copy(update={"paid_cash_amount": 1000.0}))

        updated = container.billings.get_by_id(bill.billing_id)
        assert updated.total_received == 1000
        assert updated.balance == 2000

    def test_partial_billing_update_keeps_stored_amounts(self, container, sample_patient, sample_doctor):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id,
                doctor_id=sample_doctor.id,
                procedure="Scaling",
                billing_amount=5000,
                paid_cash_amount=1000,
                paid_insurance_amount=2000,
            )
        )

        container.billings.update({"billing_id": bill.billing_id, "paid_cash_amount": 1500})

        updated = container.billings.get_by_id(bill.billing_id)
        assert updated.paid_cash_amount == 1500
        assert updated.paid_insurance_amount == 2000
        assert updated.total_received == 3500
        assert updated.balance == 1500

    def test_billing_totals_cannot_be_overwritten(self, container, sample_patient, sample_doctor):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id, doctor_id=sample_doctor.id, procedure="Filling", billing_amount=2500
            )
        )

        container.billings.update({"billing_id": bill.billing_id, "balance": 0, "total_received": 2500})

        updated = container.billings.get_by_id(bill.billing_id)
        assert updated.total_received == 0
        assert updated.balance == 2500

    def test_billing_update_without_owner_refreshes_patient_document(self, container, sample_patient, sample_doctor):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id, doctor_id=sample_doctor.id, procedure="Scaling", billing_amount=5000
            )
        )
        assert container.patients.get_by_id(sample_patient.id).billings[0].procedure == "Scaling"
        container.patients.get_all()

        container.billings.update({"billing_id": bill.billing_id, "procedure": "Extraction"})

        assert container.billings.get_by_id(bill.billing_id).procedure == "Extraction"
        assert container.patients.get_by_id(sample_patient.id).billings[0].procedure == "Extraction"
        assert container.patients.get_all()[0].billings[0].procedure == "Extraction"

    def test_partial_dependent_update(self, container, sample_patient, cache_calls):
        contact = container.emergency_contacts.create(
            schemas.EmergencyContactCreate(
                patient_id=sample_patient.id, name="Otieno Snr", phone="0700000001", relationship="Father"
            )
        )
        cache_calls.clear()

        container.emergency_contacts.update(
            {"id": contact.id, "patient_id": sample_patient.id, "relationship": "Uncle"}
        )

        stored = container.emergency_contacts.get_by_id(contact.id, sample_patient.id)
        assert (stored.name, stored.phone, stored.relationship) == ("Otieno Snr", "0700000001", "Uncle")
        assert cache_calls == [
            ("delete", f"emergency_contact_cache:{sample_patient.id}_{contact.id}"),
            ("delete_matching", "emergency_contacts_cache*"),
            ("delete", f"patient_cache:{sample_patient.id}"),
            ("delete_matching", "patients_cache*"),
        ]

    def test_update_missing_raises_not_found(self, container, redis_client):
        ghost = schemas.Doctor(id="DR-000404", first_name="No", last_name="Body")

        with pytest.raises(NotFound):
            container.doctors.update(ghost)

        # Update never creates rows
        with pytest.raises(NotFound):
            container.doctors.get_by_id("DR-000404")

    def test_update_invalidation_order(self, container, sample_patient, cache_calls):
        contact = container.emergency_contacts.create(
            schemas.EmergencyContactCreate(
                patient_id=sample_patient.id, name="Otieno Snr", phone="0700000001", relationship="Father"
            )
        )
        cache_calls.clear()

        container.emergency_contacts.update(contact.model_copy(update={"relationship": "Uncle"}))

        assert cache_calls == [
            ("delete", f"emergency_contact_cache:{sample_patient.id}_{contact.id}"),
            ("delete_matching", "emergency_contacts_cache*"),
            ("delete", f"patient_cache:{sample_patient.id}"),
            ("delete_matching", "patients_cache*"),
        ]

    def test_dependent_change_refreshes_patient_document(self, container, sample_patient):
        assert container.patients.get_by_id(sample_patient.id).examinations == []

        container.examinations.create(schemas.ExaminationCreate(patient_id=sample_patient.id, report="Caries 36"))

        patient = container.patients.get_by_id(sample_patient.id)
        assert [e.report for e in patient.examinations] == ["Caries 36"]


class TestDelete:
    def test_delete_removes_row_and_cache(self, container, sample_patient, redis_client):
        plan = container.treatment_plans.create(
            schemas.TreatmentPlanCreate(patient_id=sample_patient.id, plan="Root canal 46")
        )
        container.treatment_plans.get_by_id(plan.id, sample_patient.id)
        container.patients.get_by_id(sample_patient.id)

        container.treatment_plans.delete(plan.id, sample_patient.id)

        assert redis_client.exists(f"treatment_plan_cache:{sample_patient.id}:{plan.id}") == 0
        assert redis_client.exists(f"patient_cache:{sample_patient.id}") == 0
        with pytest.raises(NotFound):
            container.treatment_plans.get_by_id(plan.id, sample_patient.id)

    def test_delete_missing_raises_and_keeps_cache(self, container, sample_doctor, cache_calls):
        container.doctors.get_all()
        cache_calls.clear()

        with pytest.raises(NotFound):
            container.doctors.delete("DR-000404")

        assert cache_calls == []

    def test_delete_billing_invalidates_owner(self, container, sample_patient, sample_doctor, cache_calls):
        bill = container.billings.create(
            schemas.BillingCreate(
                patient_id=sample_patient.id, doctor_id=sample_doctor.id, procedure="Filling", billing_amount=2500
            )
        )
        cache_calls.clear()

        container.billings.delete(bill.billing_id)

        assert ("delete", f"patient_cache:{sample_patient.id}") in cache_calls


class TestDegradedCollaborators:
    def test_reads_survive_cache_outage(self, container, sample_doctor):
        client = MagicMock(spec=redis.Redis)
        client.get.side_effect = redis.exceptions.ConnectionError("Connection refused")
        client.set.side_effect = redis.exceptions.ConnectionError("Connection refused")
        repo = EntityRepository(
            entities.DOCTOR, container.store, CacheLayer(client), container.locks, container.sequences
        )

        assert repo.get_by_id(sample_doctor.id) == sample_doctor
        assert repo.get_all() == [sample_doctor]

    def test_slow_store_read_times_out(self, container, sample_doctor, monkeypatch):
        def slow_load(session, values):
            time.sleep(0.5)

        monkeypatch.setattr(container.doctors, "_load_one", slow_load)
        monkeypatch.setattr(container.store, "read_timeout", 0.05)

        with pytest.raises(ReadTimeout) as exc_info:
            container.doctors.get_by_id(sample_doctor.id)

        assert exc_info.value.retryable is True
