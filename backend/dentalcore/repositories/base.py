"""Generic entity repository.

One :class:`EntityRepository` implementation serves every entity type; the
per-type differences (cache-key template, natural key, parent aggregate,
mutable columns …) live in a small :class:`EntityDescriptor`, see
:mod:`dentalcore.repositories.entities`.

Every mutating call follows the same life cycle::

    lock pending -> locked -> validating -> persisting -> invalidating -> released

A failure while validating or persisting skips invalidation (nothing was
written, the cache is still correct) and still releases the lock.  Reads never
take a lock: they consult the cache first and fall back to a time-bounded
backing-store query that repopulates the cache.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterator
from typing import List
from typing import Mapping
from typing import Optional
from typing import Tuple
from typing import Type

from pydantic import BaseModel
from pydantic import TypeAdapter
from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentalcore.database import Store
from dentalcore.exceptions import DuplicateEntity
from dentalcore.exceptions import NotFound
from dentalcore.exceptions import PersistenceFailed
from dentalcore.exceptions import RepositoryError
from dentalcore.metrics import repository_operation_seconds
from dentalcore.metrics import repository_operations_total
from dentalcore.services.cache import CacheLayer
from dentalcore.services.locks import LockManager
from dentalcore.services.sequences import SequenceAllocator

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Reference:
    """A foreign row that must exist before a write is accepted."""

    field: str
    model: Any
    label: str


@dataclass(frozen=True)
class ParentLink(Reference):
    """Owning aggregate of a dependent entity.

    ``cache_key`` is formatted with the dependent's values, so it must only use
    fields the dependent carries (normally ``{patient_id}``).
    """

    cache_key: str = ""
    collection_key: str = ""


@dataclass(frozen=True)
class EntityDescriptor:
    """Everything that differs between two entity repositories."""

    name: str  # snake_case; prefixes cache and lock keys
    label: str  # human readable, used in errors / metrics / logs
    model: Any
    schema: Type[BaseModel]
    collection_key: str
    identity: str = "{id}"
    pk: str = "id"
    id_namespace: Optional[str] = None
    natural_key: Tuple[str, ...] = ()
    create_lock_fields: Tuple[str, ...] = ()
    mutable_columns: Tuple[str, ...] = ()
    parent: Optional[ParentLink] = None
    references: Tuple[Reference, ...] = ()
    prepare: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    # Applied to the complete row: the create payload, or the stored row merged
    # with the changes of an update.
    derive: Optional[Callable[[Dict[str, Any]], Dict[str, Any]]] = None
    load_options: Tuple[Any, ...] = ()
    order_by: Tuple[Any, ...] = ()

    @property
    def cache_prefix(self) -> str:
        return f"{self.name}_cache"

    @property
    def lock_prefix(self) -> str:
        return f"{self.name}_lock"

    @property
    def identity_fields(self) -> Tuple[str, ...]:
        fields = [self.pk]
        if self.parent is not None:
            fields.append(self.parent.field)
        return tuple(fields)

    def needs_parent(self) -> bool:
        return self.parent is not None and "{" + self.parent.field + "}" in self.identity

    def format_identity(self, values: Mapping[str, Any]) -> str:
        return self.identity.format(**values)

    def cache_key(self, values: Mapping[str, Any]) -> str:
        return f"{self.cache_prefix}:{self.format_identity(values)}"

    def lock_key(self, values: Mapping[str, Any]) -> str:
        return f"{self.lock_prefix}:{self.format_identity(values)}"

    def create_lock_key(self, values: Mapping[str, Any]) -> str:
        fields = self.create_lock_fields or self.natural_key
        return f"{self.lock_prefix}:" + "_".join(str(values.get(f) or "") for f in fields)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class EntityRepository:
    """Create / read / update / delete for one entity type with cache coherence.

    Dependencies are injected; the repository never creates or closes the
    store, cache or lock clients it is given.
    """

    def __init__(
        self,
        descriptor: EntityDescriptor,
        store: Store,
        cache: CacheLayer,
        locks: LockManager,
        sequences: Optional[SequenceAllocator] = None,
        *,
        cache_ttl: Optional[int] = None,
    ):
        if descriptor.id_namespace and sequences is None:
            raise ValueError(f"{descriptor.label} allocates identifiers and needs a SequenceAllocator")

        self.descriptor = descriptor
        self._store = store
        self._cache = cache
        self._locks = locks
        self._sequences = sequences
        self.cache_ttl = cache.default_ttl if cache_ttl is None else cache_ttl
        self._columns = {attr.key for attr in sa_inspect(descriptor.model).column_attrs}
        self._list_adapter = TypeAdapter(List[descriptor.schema])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def label(self) -> str:
        return self.descriptor.label

    @contextmanager
    def _observe(self, operation: str) -> Iterator[None]:
        started = time.perf_counter()
        outcome = "ok"
        try:
            yield
        except RepositoryError as exc:
            outcome = type(exc).__name__
            raise
        except Exception:
            outcome = "error"
            raise
        finally:
            repository_operations_total.labels(self.label, operation, outcome).inc()
            repository_operation_seconds.labels(self.label, operation).observe(time.perf_counter() - started)

    def _payload(self, data: Any) -> Dict[str, Any]:
        if isinstance(data, BaseModel):
            raw = data.model_dump()
        else:
            raw = dict(data)
        values = {k: v for k, v in raw.items() if k in self._columns}
        if self.descriptor.prepare is not None:
            values = self.descriptor.prepare(values)
        return values

    def _identity_values(self, entity_id: Any, parent_id: Any = None) -> Dict[str, Any]:
        if self.descriptor.needs_parent() and parent_id is None:
            raise ValueError(f"{self.label} is addressed by ({self.descriptor.parent.field}, {self.descriptor.pk})")
        values = {self.descriptor.pk: entity_id}
        if self.descriptor.parent is not None:
            values[self.descriptor.parent.field] = parent_id
        return values

    def cache_key_for(self, entity_id: Any, parent_id: Any = None) -> str:
        return self.descriptor.cache_key(self._identity_values(entity_id, parent_id))

    def _describe(self, values: Mapping[str, Any]) -> str:
        return self.descriptor.format_identity(values) if self.descriptor.needs_parent() else str(values[self.descriptor.pk])

    def _check_references(self, session: Session, values: Mapping[str, Any], fields: Optional[set] = None) -> None:
        refs: List[Reference] = list(self.descriptor.references)
        if self.descriptor.parent is not None:
            refs.insert(0, self.descriptor.parent)
        for ref in refs:
            if fields is not None and ref.field not in fields:
                continue
            ref_id = values.get(ref.field)
            if ref_id is None or session.get(ref.model, ref_id) is None:
                raise NotFound(ref.label, ref_id)

    def _filter_identity(self, stmt, values: Mapping[str, Any]):
        model = self.descriptor.model
        stmt = stmt.where(getattr(model, self.descriptor.pk) == values[self.descriptor.pk])
        parent = self.descriptor.parent
        if parent is not None and values.get(parent.field) is not None:
            stmt = stmt.where(getattr(model, parent.field) == values[parent.field])
        return stmt

    # ------------------------------------------------------------------
    # Cache invalidation
    # ------------------------------------------------------------------

    def invalidate_entity(self, entity_id: Any, parent_id: Any = None) -> None:
        """Drop the cached document of one entity."""
        self._cache.delete(self.cache_key_for(entity_id, parent_id))

    def invalidate_collection(self) -> None:
        """Drop every cached "all <entities>" document."""
        self._cache.delete_matching(f"{self.descriptor.collection_key}*")

    def _invalidate(self, values: Mapping[str, Any]) -> None:
        # Specific key, own collection, then parent key and parent collection.
        # Stopping half way can only over-invalidate.
        self._cache.delete(self.descriptor.cache_key(values))
        self._cache.delete_matching(f"{self.descriptor.collection_key}*")

        parent = self.descriptor.parent
        if parent is not None and values.get(parent.field) is not None:
            self._cache.delete(parent.cache_key.format(**values))
            self._cache.delete_matching(f"{parent.collection_key}*")

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, data: Any) -> BaseModel:
        """Persist a new entity and return it with its assigned identifier.

        Raises:
            LockAcquisitionFailed: the natural-key lock stayed contended.
            DuplicateEntity: a row with the same natural key exists.
            NotFound: a referenced row (parent, doctor …) is missing.
            PersistenceFailed: the insert transaction failed.
        """
        values = self._payload(data)
        values.pop(self.descriptor.pk, None)
        values.pop("created_at", None)
        if self.descriptor.derive is not None:
            values = self.descriptor.derive(values)
        lock_key = self.descriptor.create_lock_key(values)

        with self._observe("create"):
            with self._locks.hold(lock_key):
                entity = self._insert(values)
                self._invalidate(entity.model_dump())

        logger.info(f"Created {self.label} {getattr(entity, self.descriptor.pk)}")
        return entity

    def _validate_create(self, session: Session, values: Mapping[str, Any]) -> None:
        self._check_references(session, values)

        if self.descriptor.natural_key:
            criteria = {field: values.get(field) for field in self.descriptor.natural_key}
            existing = session.query(self.descriptor.model).filter_by(**criteria).first()
            if existing is not None:
                raise DuplicateEntity(self.label, criteria)

    def _insert(self, values: Dict[str, Any]) -> BaseModel:
        namespace = self.descriptor.id_namespace
        issued: Optional[str] = None

        try:
            with self._store.transaction() as session:
                self._validate_create(session, values)

                if namespace:
                    issued = self._sequences.next(namespace)
                    values[self.descriptor.pk] = issued

                row = self.descriptor.model(**values)
                session.add(row)
                session.flush()
                entity = self.descriptor.schema.model_validate(row)
        except SQLAlchemyError as exc:
            rolled_back = False
            if issued is not None:
                rolled_back = self._sequences.rollback(namespace, issued)
            logger.error(f"Failed to create {self.label}: {exc}")
            raise PersistenceFailed(
                self.label,
                "create",
                exc,
                rollback_attempted=issued is not None,
                rollback_succeeded=rolled_back,
            ) from exc

        return entity

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_one(self, session: Session, values: Mapping[str, Any]) -> Optional[BaseModel]:
        query = session.query(self.descriptor.model).options(*self.descriptor.load_options)
        query = query.filter(getattr(self.descriptor.model, self.descriptor.pk) == values[self.descriptor.pk])
        parent = self.descriptor.parent
        if parent is not None and values.get(parent.field) is not None:
            query = query.filter(getattr(self.descriptor.model, parent.field) == values[parent.field])
        row = query.first()
        return self.descriptor.schema.model_validate(row) if row is not None else None

    def _load_all(self, session: Session) -> List[BaseModel]:
        order_by = self.descriptor.order_by or (getattr(self.descriptor.model, self.descriptor.pk),)
        rows = session.query(self.descriptor.model).options(*self.descriptor.load_options).order_by(*order_by).all()
        return [self.descriptor.schema.model_validate(row) for row in rows]

    def get_by_id(self, entity_id: Any, parent_id: Any = None) -> BaseModel:
        """Return one entity, cache first.

        Raises:
            NotFound: no such row in the backing store.
            ReadTimeout: the backing-store fallback exceeded its budget.
        """
        values = self._identity_values(entity_id, parent_id)
        key = self.descriptor.cache_key(values)

        with self._observe("get"):
            cached, found = self._cache.get(key)
            if found:
                try:
                    return self.descriptor.schema.model_validate_json(cached)
                except ValidationError as exc:
                    logger.warning(f"Discarding unreadable cache entry {key}: {exc}")
                    self._cache.delete(key)

            entity = self._store.read(lambda session: self._load_one(session, values), entity=self.label)
            if entity is None:
                raise NotFound(self.label, self._describe(values))

            if not self._cache.set(key, entity.model_dump_json(), self.cache_ttl):
                logger.warning(f"Could not cache {self.label} {self._describe(values)}")
            return entity

    def get_all(self) -> List[BaseModel]:
        """Return every entity of this type, cache first."""
        key = self.descriptor.collection_key

        with self._observe("get_all"):
            cached, found = self._cache.get(key)
            if found:
                try:
                    return self._list_adapter.validate_json(cached)
                except ValidationError as exc:
                    logger.warning(f"Discarding unreadable cache entry {key}: {exc}")
                    self._cache.delete(key)

            entities = self._store.read(self._load_all, entity=self.label)

            payload = self._list_adapter.dump_json(entities).decode("utf-8")
            if not self._cache.set(key, payload, self.cache_ttl):
                logger.warning(f"Could not cache {key}")
            return entities

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update(self, data: Any) -> None:
        """Apply the mutable columns of *data* to the stored row.

        *data* must carry the primary key (and the parent key for dependent
        entities).  Only ``descriptor.mutable_columns`` are written.

        Raises:
            NotFound: the row (or a newly referenced row) does not exist.
        """
        values = self._payload(data)
        if values.get(self.descriptor.pk) is None:
            raise ValueError(f"{self.label} update requires '{self.descriptor.pk}'")
        if self.descriptor.needs_parent() and values.get(self.descriptor.parent.field) is None:
            raise ValueError(f"{self.label} update requires '{self.descriptor.parent.field}'")

        lock_key = self.descriptor.lock_key(values)

        with self._observe("update"):
            with self._locks.hold(lock_key):
                stored = self._apply_update(values)
                self._invalidate(stored)

        logger.info(f"Updated {self.label} {self._describe(values)}")

    def _apply_update(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Write the changes and return the stored identity of the updated row.

        The identity comes from the row itself, so a payload that omits the
        parent key still invalidates the parent's cached documents.
        """
        requested = {column: values[column] for column in self.descriptor.mutable_columns if column in values}
        if not requested:
            raise ValueError(f"Nothing to update on {self.label} {self._describe(values)}")

        try:
            with self._store.transaction() as session:
                stmt = self._filter_identity(select(*self.descriptor.model.__table__.columns), values)
                row = session.execute(stmt).mappings().first()
                if row is None:
                    raise NotFound(self.label, self._describe(values))
                stored = dict(row)
                self._check_references(session, requested, fields=set(requested))

                changes = dict(requested)
                if self.descriptor.derive is not None:
                    merged = self.descriptor.derive({**stored, **requested})
                    for column in self.descriptor.mutable_columns:
                        if column in changes or merged.get(column) != stored.get(column):
                            changes[column] = merged.get(column)

                identity = {field: stored[field] for field in self.descriptor.identity_fields}
                stmt = self._filter_identity(update(self.descriptor.model), identity).values(**changes)
                session.execute(stmt.execution_options(synchronize_session=False))
        except SQLAlchemyError as exc:
            logger.error(f"Failed to update {self.label} {self._describe(values)}: {exc}")
            raise PersistenceFailed(self.label, "update", exc) from exc

        return identity

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    def delete(self, entity_id: Any, parent_id: Any = None) -> None:
        """Delete one row and invalidate its cache keys.

        Raises:
            NotFound: nothing to delete (cache left untouched).
        """
        values = self._identity_values(entity_id, parent_id)
        lock_key = self.descriptor.lock_key(values)

        with self._observe("delete"):
            with self._locks.hold(lock_key):
                removed = self._remove(values)
                self._invalidate(removed)

        logger.info(f"Deleted {self.label} {self._describe(values)}")

    def _remove(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        columns = [getattr(self.descriptor.model, field) for field in self.descriptor.identity_fields]

        try:
            with self._store.transaction() as session:
                row = session.execute(self._filter_identity(select(*columns), values)).mappings().first()
                if row is None:
                    raise NotFound(self.label, self._describe(values))
                removed = dict(row)
                stmt = self._filter_identity(delete(self.descriptor.model), removed)
                session.execute(stmt.execution_options(synchronize_session=False))
        except SQLAlchemyError as exc:
            logger.error(f"Failed to delete {self.label} {self._describe(values)}: {exc}")
            raise PersistenceFailed(self.label, "delete", exc) from exc

        return removed

    # ------------------------------------------------------------------
    # Bulk helpers used by the aggregate cascade
    # ------------------------------------------------------------------

    def identities_for_parent(self, session: Session, parent_id: Any) -> List[Dict[str, Any]]:
        """Identity values (pk + parent key) of every row owned by *parent_id*."""
        parent = self.descriptor.parent
        if parent is None:
            raise TypeError(f"{self.label} has no parent aggregate")
        columns = [getattr(self.descriptor.model, field) for field in self.descriptor.identity_fields]
        stmt = select(*columns).where(getattr(self.descriptor.model, parent.field) == parent_id)
        return [dict(row) for row in session.execute(stmt).mappings()]

    def delete_for_parent(self, session: Session, parent_id: Any) -> int:
        """Bulk-delete every row owned by *parent_id* inside the caller's transaction."""
        parent = self.descriptor.parent
        if parent is None:
            raise TypeError(f"{self.label} has no parent aggregate")
        stmt = delete(self.descriptor.model).where(getattr(self.descriptor.model, parent.field) == parent_id)
        result = session.execute(stmt.execution_options(synchronize_session=False))
        return result.rowcount
