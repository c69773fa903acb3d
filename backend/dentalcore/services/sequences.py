"""Human-readable sequential identifiers (``DP-000001``, ``DR-000007`` …).

Each namespace owns one row in ``sequence_counter``.  ``next`` bumps it with a
single ``UPDATE … RETURNING`` in its own short transaction, so the value is
committed before the caller's create transaction starts; concurrent allocators
are serialised by the row lock and never see the same number.

``rollback`` is a best-effort compensation after a failed insert: it only
decrements when the counter still equals the number that was issued.  If
another allocator already advanced the counter the gap is kept.
"""

from __future__ import annotations

import logging
from typing import Callable
from typing import Dict

from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dentalcore.database import db_session
from dentalcore.metrics import sequence_rollback_total
from dentalcore.models.models import SequenceCounter

logger = logging.getLogger(__name__)


class SequenceAllocator:
    """Allocates ``<PREFIX>-<zero padded counter>`` identifiers per namespace."""

    def __init__(self, session_factory: Callable[[], Session], prefixes: Dict[str, str], *, width: int = 6):
        self._session_factory = session_factory
        self._prefixes = dict(prefixes)
        self.width = width

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def prefix_for(self, namespace: str) -> str:
        try:
            return self._prefixes[namespace]
        except KeyError:
            raise KeyError(f"No sequence registered for namespace '{namespace}'") from None

    def format(self, namespace: str, value: int) -> str:
        return f"{self.prefix_for(namespace)}-{value:0{self.width}d}"

    def parse(self, namespace: str, formatted_id: str) -> int:
        prefix = self.prefix_for(namespace) + "-"
        if not formatted_id.startswith(prefix):
            raise ValueError(f"'{formatted_id}' is not a {namespace} identifier")
        return int(formatted_id[len(prefix) :])

    # ------------------------------------------------------------------
    # Counter operations
    # ------------------------------------------------------------------

    def ensure(self, namespace: str) -> None:
        """Create the counter row for *namespace* if it does not exist yet."""
        self.prefix_for(namespace)
        try:
            with db_session(self._session_factory) as session:
                exists = session.execute(
                    select(SequenceCounter.namespace).where(SequenceCounter.namespace == namespace)
                ).first()
                if exists is None:
                    session.add(SequenceCounter(namespace=namespace, value=0))
        except IntegrityError:
            # Created concurrently by another process
            pass

    def _increment(self, session: Session, namespace: str) -> int:
        stmt = (
            update(SequenceCounter)
            .where(SequenceCounter.namespace == namespace)
            .values(value=SequenceCounter.value + 1)
            .returning(SequenceCounter.value)
        )
        value = session.execute(stmt).scalar_one_or_none()
        if value is None:
            session.add(SequenceCounter(namespace=namespace, value=1))
            session.flush()
            value = 1
        return value

    def next(self, namespace: str) -> str:
        """Atomically increment the *namespace* counter and return the formatted id."""
        self.prefix_for(namespace)

        for attempt in range(2):
            try:
                with db_session(self._session_factory) as session:
                    value = self._increment(session, namespace)
                break
            except IntegrityError:
                # Lost the race creating the counter row; the row exists now.
                if attempt:
                    raise

        issued = self.format(namespace, value)
        logger.debug(f"Allocated {issued}")
        return issued

    def current(self, namespace: str) -> int:
        """Return the last issued value (0 when nothing was issued yet)."""
        with db_session(self._session_factory) as session:
            value = session.execute(
                select(SequenceCounter.value).where(SequenceCounter.namespace == namespace)
            ).scalar_one_or_none()
        return value or 0

    def rollback(self, namespace: str, issued_id: str) -> bool:
        """Best-effort decrement after a failed create.

        Returns True when the counter was moved back, False when it was left
        alone (already advanced by someone else, or the compensation failed).
        Never raises.
        """
        try:
            value = self.parse(namespace, issued_id)
            with db_session(self._session_factory) as session:
                result = session.execute(
                    update(SequenceCounter)
                    .where(SequenceCounter.namespace == namespace)
                    .where(SequenceCounter.value == value)
                    .values(value=value - 1)
                )
                reverted = result.rowcount == 1
        except (SQLAlchemyError, ValueError) as exc:
            sequence_rollback_total.labels("error").inc()
            logger.error(f"Sequence rollback for {issued_id} failed: {exc}")
            return False

        if reverted:
            sequence_rollback_total.labels("reverted").inc()
            logger.info(f"Rolled back sequence {namespace} to {value - 1} after failed create of {issued_id}")
        else:
            sequence_rollback_total.labels("skipped").inc()
            logger.info(f"Sequence {namespace} advanced past {issued_id}; leaving gap")
        return reverted
