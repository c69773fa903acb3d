"""Process entry point: builds and owns every shared resource.

Nothing below this module holds a global client.  The container creates the
backing store and the redis pool once, hands them to each repository, and is
the only place that opens (``init``) or closes (``close``) them.

Usage::

    container = Container.from_settings(get_settings())
    container.init()
    try:
        doctor = container.doctors.create(DoctorCreate(first_name="Ada", last_name="Okafor"))
    finally:
        container.close()
"""

from __future__ import annotations

import logging
from typing import Dict
from typing import Optional

import redis
from sqlalchemy.pool import StaticPool

from dentalcore.cache_client import make_redis
from dentalcore.config import Settings
from dentalcore.database import Store
from dentalcore.database import create_store
from dentalcore.database import initialize_database
from dentalcore.repositories import entities
from dentalcore.repositories.base import EntityRepository
from dentalcore.repositories.patient import PatientRepository
from dentalcore.services.cache import CacheLayer
from dentalcore.services.locks import LockManager
from dentalcore.services.locks import LockPolicy
from dentalcore.services.sequences import SequenceAllocator

logger = logging.getLogger(__name__)

_IN_MEMORY_SQLITE = "sqlite://"


def configure_logging(settings: Settings) -> None:
    """Install the root handler at ``LOG_LEVEL`` (falls back to INFO)."""

    log_level = getattr(logging, settings.log_level.upper(), None)
    if not isinstance(log_level, int):
        log_level = logging.INFO
    logging.basicConfig(level=log_level, format="%(levelname)s - %(name)s - %(message)s", handlers=[logging.StreamHandler()])


class Container:
    """Wires store, cache, locks and sequences into the entity repositories."""

    def __init__(
        self,
        store: Store,
        redis_client: redis.Redis,
        *,
        lock_policy: Optional[LockPolicy] = None,
        cache_ttl: int,
        aggregate_lock_ttl: float,
    ):
        self.store = store
        self.redis = redis_client
        self.cache = CacheLayer(redis_client, default_ttl=cache_ttl)
        self.locks = LockManager(redis_client, lock_policy)
        self.sequences = SequenceAllocator(store.session_factory, entities.ID_PREFIXES)

        def repo(descriptor) -> EntityRepository:
            return EntityRepository(descriptor, store, self.cache, self.locks, self.sequences)

        self.doctors = repo(entities.DOCTOR)
        self.insurance_companies = repo(entities.INSURANCE_COMPANY)
        self.emergency_contacts = repo(entities.EMERGENCY_CONTACT)
        self.examinations = repo(entities.EXAMINATION)
        self.billings = repo(entities.BILLING)
        self.treatment_plans = repo(entities.TREATMENT_PLAN)
        self.appointments = repo(entities.APPOINTMENT)

        self.patients = PatientRepository(
            entities.PATIENT,
            store,
            self.cache,
            self.locks,
            self.sequences,
            dependents=[
                self.emergency_contacts,
                self.examinations,
                self.billings,
                self.treatment_plans,
                self.appointments,
            ],
            aggregate_lock_ttl=aggregate_lock_ttl,
        )

    @classmethod
    def from_settings(cls, settings: Settings, *, redis_client: Optional[redis.Redis] = None) -> "Container":
        """Build every collaborator from *settings*.

        *redis_client* replaces the pooled client built from ``REDIS_URL``
        (tests pass a fake server here).
        """
        db_url = settings.database_url
        engine_kwargs = {"pool_size": settings.db_pool_size, "max_overflow": settings.db_max_overflow}
        if not db_url and settings.testing:
            db_url = _IN_MEMORY_SQLITE
            engine_kwargs = {"poolclass": StaticPool}

        store = create_store(
            db_url,
            read_timeout=settings.read_timeout_seconds,
            read_workers=settings.read_workers,
            **engine_kwargs,
        )

        policy = LockPolicy(
            ttl=settings.lock_ttl_seconds,
            attempts=settings.lock_retry_attempts,
            delay=settings.lock_retry_delay_seconds,
        )

        return cls(
            store,
            redis_client if redis_client is not None else make_redis(settings),
            lock_policy=policy,
            cache_ttl=settings.cache_ttl_seconds,
            aggregate_lock_ttl=settings.aggregate_lock_ttl_seconds,
        )

    def init(self) -> Dict[str, bool]:
        """Create the schema and sequence rows, then probe both collaborators."""

        initialize_database(self.store.engine)
        for namespace in entities.ID_PREFIXES:
            self.sequences.ensure(namespace)

        health = {"store": self.store.ping(), "cache": self.cache.ping()}
        if not health["store"]:
            raise RuntimeError("Backing store is unreachable")
        if not health["cache"]:
            # Locks need redis; reads alone can limp along without it
            logger.error("Cache / lock store is unreachable; writes will fail until it recovers")

        logger.info(f"dentalcore initialised (store={health['store']}, cache={health['cache']})")
        return health

    def close(self) -> None:
        self.store.close()
        try:
            self.redis.close()
        except redis.RedisError as exc:
            logger.warning(f"Error closing redis client: {exc}")
        logger.info("dentalcore shut down")
