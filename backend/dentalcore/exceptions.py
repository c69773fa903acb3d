"""Typed errors surfaced by the data-access layer.

Callers (the HTTP layer, background jobs) map these onto responses.  The
``retryable`` flag tells them whether repeating the same request can succeed
without changing its input.
"""


class RepositoryError(Exception):
    """Base exception for all data-access errors."""

    retryable = False


class LockAcquisitionFailed(RepositoryError):
    """Raised when a lock could not be taken within the retry budget."""

    retryable = True

    def __init__(self, key: str, attempts: int, cause: Exception = None):
        self.key = key
        self.attempts = attempts
        self.cause = cause
        message = f"Failed to acquire lock '{key}' after {attempts} attempt(s)"
        if cause:
            message += f": {cause}"
        super().__init__(message)


class LockNotOwned(RepositoryError):
    """Raised when releasing a lock whose stored token no longer matches."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock release failed for '{key}': not the lock owner")


class DuplicateEntity(RepositoryError):
    """Raised when a record with the same natural key already exists."""

    def __init__(self, entity: str, natural_key: dict):
        self.entity = entity
        self.natural_key = natural_key
        details = ", ".join(f"{k}={v!r}" for k, v in natural_key.items())
        super().__init__(f"{entity} with the same details already exists ({details})")


class NotFound(RepositoryError):
    """Raised when the target record is absent from the backing store."""

    def __init__(self, entity: str, identity: object):
        self.entity = entity
        self.identity = identity
        super().__init__(f"{entity} not found: {identity}")


class PersistenceFailed(RepositoryError):
    """Raised when a backing-store transaction fails.

    ``rollback_attempted`` / ``rollback_succeeded`` describe the best-effort
    sequence compensation that ran after a failed insert.
    """

    def __init__(
        self,
        entity: str,
        operation: str,
        cause: Exception = None,
        *,
        rollback_attempted: bool = False,
        rollback_succeeded: bool = False,
    ):
        self.entity = entity
        self.operation = operation
        self.cause = cause
        self.rollback_attempted = rollback_attempted
        self.rollback_succeeded = rollback_succeeded
        message = f"Failed to {operation} {entity}"
        if cause:
            message += f": {cause}"
        if rollback_attempted and not rollback_succeeded:
            message += " (sequence rollback failed)"
        super().__init__(message)


class ReadTimeout(RepositoryError):
    """Raised when a backing-store read exceeds its time budget."""

    retryable = True

    def __init__(self, entity: str, timeout: float):
        self.entity = entity
        self.timeout = timeout
        super().__init__(f"Reading {entity} timed out after {timeout}s")


class CacheUnavailable(RepositoryError):
    """Cache transport failure.  Absorbed inside the cache layer."""

    retryable = True

    def __init__(self, operation: str, cause: Exception = None):
        self.operation = operation
        self.cause = cause
        message = f"Cache {operation} failed"
        if cause:
            message += f": {cause}"
        super().__init__(message)
