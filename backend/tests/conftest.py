import fakeredis
import pytest

from dentalcore.config import get_settings
from dentalcore.main import Container
from dentalcore.schemas.schemas import DoctorCreate
from dentalcore.schemas.schemas import PatientCreate


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings for a throw-away file database.

    A file (not ``:memory:``) database lets every worker thread open its own
    connection, which the concurrency tests rely on.  Lock retries are short
    and plentiful so contended tests finish quickly.
    """
    monkeypatch.setenv("TESTING", "1")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'dentalcore.db'}")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.setenv("LOCK_TTL_SECONDS", "10")
    monkeypatch.setenv("LOCK_RETRY_ATTEMPTS", "100")
    monkeypatch.setenv("LOCK_RETRY_DELAY_SECONDS", "0.02")
    monkeypatch.setenv("READ_TIMEOUT_SECONDS", "5")
    return get_settings()


@pytest.fixture
def redis_client():
    """In-process redis with Lua support (needed by the lock release script)."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    client.close()


@pytest.fixture
def container(settings, redis_client):
    c = Container.from_settings(settings, redis_client=redis_client)
    c.init()
    yield c
    c.close()


@pytest.fixture
def db_session(container):
    session = container.store.session_factory()
    yield session
    session.close()


_PATIENT_DEFAULTS = {
    "first_name": "Amina",
    "middle_name": "Wanjiru",
    "last_name": "Otieno",
    "sex": "Female",
    "date_of_birth": "1990-04-12",
    "insured": True,
    "cash": False,
    "insurance_company": "IC-000001",
    "phone": "0712345678",
}


@pytest.fixture
def make_patient(container):
    """Factory creating a patient; keyword arguments override the defaults."""

    def _make(**overrides):
        return container.patients.create(PatientCreate(**{**_PATIENT_DEFAULTS, **overrides}))

    return _make


@pytest.fixture
def sample_patient(make_patient):
    return make_patient()


@pytest.fixture
def sample_doctor(container):
    return container.doctors.create(DoctorCreate(first_name="Peter", last_name="Kamau"))
