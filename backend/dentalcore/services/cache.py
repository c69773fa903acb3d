"""Read-through / invalidate-on-write cache over the shared redis client.

Every transport failure is absorbed here: a failing ``get`` is reported as a
miss, a failing ``set``/``delete`` is logged and counted.  The cache is
advisory – callers always have the backing store to fall back to – so nothing
in this module ever raises a redis error to its caller.
"""

from __future__ import annotations

import logging
from typing import Optional
from typing import Tuple

import redis

from dentalcore.exceptions import CacheUnavailable
from dentalcore.metrics import cache_errors_total
from dentalcore.metrics import cache_requests_total

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60


class CacheLayer:
    """Thin wrapper exposing ``get``/``set``/``delete``/``delete_matching``.

    Values are strings (JSON documents produced by the repositories).  An empty
    string or ``"[]"`` is a *present* value and is returned as a hit; only an
    absent key is a miss.
    """

    def __init__(self, client: redis.Redis, *, default_ttl: int = DEFAULT_TTL_SECONDS, scan_count: int = 500):
        self._client = client
        self.default_ttl = default_ttl
        self.scan_count = scan_count

    # ------------------------------------------------------------------
    # Error absorption
    # ------------------------------------------------------------------

    def _absorb(self, operation: str, key: str, exc: Exception) -> None:
        error = CacheUnavailable(operation, exc)
        cache_errors_total.labels(operation).inc()
        logger.warning(f"{error} (key={key}); continuing without cache")

    @staticmethod
    def _decode(raw) -> str:
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get(self, key: str) -> Tuple[Optional[str], bool]:
        """Return ``(value, found)``; transport errors count as a miss."""
        try:
            raw = self._client.get(key)
        except redis.RedisError as exc:
            cache_requests_total.labels("error").inc()
            self._absorb("get", key, exc)
            return None, False

        if raw is None:
            cache_requests_total.labels("miss").inc()
            return None, False

        cache_requests_total.labels("hit").inc()
        return self._decode(raw), True

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Store *value* under *key* with an expiry.  Returns False on failure."""
        ttl = self.default_ttl if ttl is None else ttl
        try:
            self._client.set(key, value, ex=int(ttl))
            return True
        except redis.RedisError as exc:
            self._absorb("set", key, exc)
            return False

    def delete(self, key: str) -> bool:
        """Delete one exact key.  Returns False on failure."""
        try:
            self._client.delete(key)
            return True
        except redis.RedisError as exc:
            self._absorb("delete", key, exc)
            return False

    def delete_matching(self, pattern: str) -> int:
        """Delete every key matching the glob *pattern*.

        Iterates with ``SCAN`` so memory stays bounded by ``scan_count`` and
        the server is never blocked by a full keyspace listing.  Returns the
        number of keys removed (what was removed before an error stays
        removed).
        """
        deleted = 0
        batch: list[str] = []
        try:
            for key in self._client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(self._decode(key))
                if len(batch) >= self.scan_count:
                    deleted += self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += self._client.delete(*batch)
        except redis.RedisError as exc:
            self._absorb("delete_matching", pattern, exc)
        return deleted

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            self._absorb("ping", "-", exc)
            return False
