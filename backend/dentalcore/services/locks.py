"""
Owner-tagged, time-limited locks held in the shared redis store.

A lock is a plain ``key -> owner_token`` entry written with ``SET NX PX``.
Expiry makes every lock self-healing: a crashed holder blocks its key for at
most one TTL.  Release is a server-side compare-and-delete so a holder whose
lock already expired (and was re-taken by someone else) can never delete the
new owner's entry.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable
from typing import Iterator
from typing import Optional
from typing import Tuple

import redis

from dentalcore.exceptions import LockAcquisitionFailed
from dentalcore.exceptions import LockNotOwned
from dentalcore.metrics import lock_acquire_total
from dentalcore.metrics import lock_release_failures_total
from dentalcore.utils.retry import retry_call

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


@dataclass(frozen=True)
class LockPolicy:
    """Retry budget and default TTL for lock callers."""

    ttl: float = 10.0
    attempts: int = 3
    delay: float = 2.0


class LockContended(Exception):
    """Another owner currently holds the key (internal retry signal)."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"lock '{key}' is held by another owner")


def _retriable(exc: Exception) -> bool:
    return isinstance(exc, (LockContended, redis.RedisError))


class LockManager:
    """
    Acquires and releases named locks against a shared redis client.

    Usage:
        with lock_manager.hold("doctor_lock:DR-000007") as token:
            # exclusive access to the doctor row
            ...

    ``hold`` retries contended acquisitions with a fixed back-off and raises
    :class:`LockAcquisitionFailed` once the budget is spent.  Release failures
    are logged and never raised out of ``hold``.
    """

    def __init__(
        self,
        client: redis.Redis,
        policy: Optional[LockPolicy] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self._release_script = client.register_script(RELEASE_SCRIPT)
        self.policy = policy or LockPolicy()
        self._sleep = sleep

    def acquire(self, key: str, ttl: Optional[float] = None) -> Tuple[str, bool]:
        """
        Try once to take *key*.

        Returns:
            ``(owner_token, ok)``.  ``ok`` is False when another owner holds
            the key; transport errors propagate as ``redis.RedisError``.
        """
        ttl = self.policy.ttl if ttl is None else ttl
        token = uuid.uuid4().hex
        acquired = self._client.set(key, token, nx=True, px=max(1, int(ttl * 1000)))

        if acquired:
            logger.debug(f"Acquired lock {key} (ttl={ttl}s)")
            lock_acquire_total.labels("acquired").inc()
        else:
            logger.debug(f"Lock {key} is already held by another owner")
            lock_acquire_total.labels("contended").inc()

        return token, bool(acquired)

    def release(self, key: str, owner_token: str) -> None:
        """
        Release *key* if and only if it is still held with *owner_token*.

        Raises:
            LockNotOwned: the stored token differs or the lock already expired.
        """
        result = self._release_script(keys=[key], args=[owner_token])
        if not result or int(result) == 0:
            raise LockNotOwned(key)
        logger.debug(f"Released lock {key}")

    def acquire_with_retry(self, key: str, ttl: Optional[float] = None) -> str:
        """Acquire *key* within the policy's retry budget and return the owner token."""

        def _attempt() -> str:
            token, ok = self.acquire(key, ttl)
            if not ok:
                raise LockContended(key)
            return token

        try:
            return retry_call(
                _attempt,
                max_attempts=self.policy.attempts,
                delay=self.policy.delay,
                retriable=_retriable,
                sleep=self._sleep,
                label=f"lock {key}",
            )
        except (LockContended, redis.RedisError) as exc:
            lock_acquire_total.labels("exhausted").inc()
            logger.warning(f"Giving up on lock {key} after {self.policy.attempts} attempt(s): {exc}")
            cause = None if isinstance(exc, LockContended) else exc
            raise LockAcquisitionFailed(key, self.policy.attempts, cause) from exc

    def release_quietly(self, key: str, owner_token: str) -> bool:
        """Release *key*, logging instead of raising.  Returns True on success."""
        try:
            self.release(key, owner_token)
            return True
        except LockNotOwned as exc:
            lock_release_failures_total.inc()
            logger.warning(f"{exc} (expired before release?)")
        except redis.RedisError as exc:
            lock_release_failures_total.inc()
            logger.error(f"Failed to release lock {key}: {exc}")
        return False

    @contextmanager
    def hold(self, key: str, ttl: Optional[float] = None) -> Iterator[str]:
        """
        Context manager around :meth:`acquire_with_retry` / :meth:`release`.

        The lock is released when the context exits, even if an exception
        occurs.

        Yields:
            str: the owner token
        """
        token = self.acquire_with_retry(key, ttl)
        try:
            yield token
        finally:
            self.release_quietly(key, token)

    def is_locked(self, key: str) -> bool:
        """Return True while any owner holds *key*."""
        return bool(self._client.exists(key))
