"""Patient aggregate repository.

A patient owns five dependent collections.  Deleting the patient deletes all
of them under a single aggregate lock, in two explicit phases inside one
transaction:

1. *gather* – enumerate every dependent row of the patient and drop its
   specific cache key (the key is derived from the row identity, so it has to
   be read before the row disappears);
2. *delete* – bulk-delete each dependent type, then the patient row.

After the commit the patient key and every affected collection key are
invalidated.  A failure anywhere inside the transaction rolls the whole
cascade back; the keys already dropped in phase 1 only cost extra misses.
"""

import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentalcore.database import Store
from dentalcore.exceptions import NotFound
from dentalcore.exceptions import PersistenceFailed
from dentalcore.repositories.base import EntityRepository
from dentalcore.repositories.base import EntityDescriptor
from dentalcore.services.cache import CacheLayer
from dentalcore.services.locks import LockManager
from dentalcore.services.sequences import SequenceAllocator

logger = logging.getLogger(__name__)


class PatientRepository(EntityRepository):
    """:class:`EntityRepository` for the aggregate root plus the cascading delete."""

    def __init__(
        self,
        descriptor: EntityDescriptor,
        store: Store,
        cache: CacheLayer,
        locks: LockManager,
        sequences: SequenceAllocator,
        dependents: Sequence[EntityRepository],
        *,
        cache_ttl: Optional[int] = None,
        aggregate_lock_ttl: float = 60.0,
    ):
        super().__init__(descriptor, store, cache, locks, sequences, cache_ttl=cache_ttl)
        for repo in dependents:
            if repo.descriptor.parent is None or repo.descriptor.parent.model is not descriptor.model:
                raise ValueError(f"{repo.label} is not a dependent of {descriptor.label}")
        self.dependents = list(dependents)
        self.aggregate_lock_ttl = aggregate_lock_ttl

    def _gather_dependents(self, session: Session, patient_id: str) -> Dict[str, List[Dict[str, Any]]]:
        gathered: Dict[str, List[Dict[str, Any]]] = {}
        for repo in self.dependents:
            identities = repo.identities_for_parent(session, patient_id)
            for identity in identities:
                repo.invalidate_entity(identity[repo.descriptor.pk], identity[repo.descriptor.parent.field])
            gathered[repo.label] = identities
        return gathered

    def _delete_dependents(self, session: Session, patient_id: str) -> Dict[str, int]:
        return {repo.label: repo.delete_for_parent(session, patient_id) for repo in self.dependents}

    def delete_aggregate_and_dependents(self, patient_id: str) -> Dict[str, int]:
        """Delete a patient together with every dependent row.

        Takes exactly one lock (the patient's, with the longer aggregate TTL);
        dependent locks are never taken here.

        Returns:
            Number of rows removed per dependent type.

        Raises:
            LockAcquisitionFailed: the patient lock stayed contended.
            NotFound: no such patient (nothing deleted, cache untouched).
            PersistenceFailed: the cascade transaction failed and was rolled back.
        """
        lock_key = self.descriptor.lock_key({self.descriptor.pk: patient_id})

        with self._observe("delete_aggregate"):
            with self._locks.hold(lock_key, ttl=self.aggregate_lock_ttl):
                try:
                    with self._store.transaction() as session:
                        if session.get(self.descriptor.model, patient_id) is None:
                            raise NotFound(self.label, patient_id)

                        # Phase 1: enumerate before anything is deleted
                        gathered = self._gather_dependents(session, patient_id)
                        logger.debug(
                            f"Cascade for {patient_id}: " + ", ".join(f"{k}={len(v)}" for k, v in gathered.items())
                        )

                        # Phase 2: dependents first, root last
                        removed = self._delete_dependents(session, patient_id)
                        stmt = self._filter_identity(delete(self.descriptor.model), {self.descriptor.pk: patient_id})
                        session.execute(stmt.execution_options(synchronize_session=False))
                except SQLAlchemyError as exc:
                    logger.error(f"Cascade delete of {self.label} {patient_id} failed and was rolled back: {exc}")
                    raise PersistenceFailed(self.label, "delete_aggregate", exc) from exc

                self.invalidate_entity(patient_id)
                for repo in self.dependents:
                    repo.invalidate_collection()
                self.invalidate_collection()

        logger.info(f"Deleted {self.label} {patient_id} with dependents {removed}")
        return removed
