"""Shared redis connection pool used by the cache layer and the lock manager."""

import logging

import redis
from redis.backoff import ExponentialBackoff
from redis.retry import Retry

from dentalcore.config import Settings

logger = logging.getLogger(__name__)


def make_redis(settings: Settings) -> redis.Redis:
    """Build a pooled client from *settings*.

    Responses are decoded to ``str``; transient connection errors are retried
    ``redis_max_retries`` times with exponential back-off before surfacing.
    """
    client = redis.Redis.from_url(
        settings.redis_url,
        max_connections=settings.redis_pool_size,
        socket_connect_timeout=settings.redis_dial_timeout,
        socket_timeout=settings.redis_read_timeout,
        decode_responses=True,
        retry=Retry(ExponentialBackoff(), settings.redis_max_retries),
        retry_on_error=[redis.exceptions.ConnectionError, redis.exceptions.TimeoutError],
    )
    logger.info(f"Redis pool configured (max_connections={settings.redis_pool_size})")
    return client
