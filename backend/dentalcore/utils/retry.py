"""Synchronous retry helper with a *fixed* back-off.

Lock acquisition is the only caller today: it wants a small, predictable
budget (``attempts × delay``) rather than exponential growth, because the
worst case is bounded by the lock TTL anyway.

Usage
-----

```python
from dentalcore.utils.retry import retry_call

token = retry_call(
    lambda: try_lock(key),
    max_attempts=3,
    delay=2.0,
    retriable=lambda exc: isinstance(exc, LockContended),
)
```
"""

from __future__ import annotations

import logging
import time
from typing import Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


def _default_retriable(exc: Exception) -> bool:  # noqa: D401 – small helper
    """Retry **everything** by default (caller can override)."""

    return True


def retry_call(
    fn: Callable[[], _T],
    *,
    max_attempts: int = 3,
    delay: float = 2.0,
    retriable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], None] = time.sleep,
    label: str | None = None,
) -> _T:
    """Call *fn* until it returns, sleeping *delay* seconds between attempts.

    Parameters
    ----------
    max_attempts:
        Inclusive – the *first* try counts. ``max_attempts=1`` disables retry.
    delay:
        Fixed sleep in seconds between attempts (no sleep after the last one).
    retriable:
        Callback deciding if *exc* is worth another attempt. Defaults to
        retrying **all** exceptions.
    sleep:
        Injected for tests.
    label:
        Free-form name used in log lines.

    The last exception is re-raised unchanged once the budget is spent.
    """

    retriable = retriable or _default_retriable
    label = label or getattr(fn, "__name__", "call")
    attempt = 1

    while True:
        try:
            return fn()
        except Exception as exc:
            if attempt >= max_attempts or not retriable(exc):
                logger.debug(f"{label}: giving up after {attempt} attempt(s): {exc}")
                raise

            logger.info(f"{label}: attempt {attempt}/{max_attempts} failed ({exc}); retrying in {delay}s")
            sleep(delay)
            attempt += 1


__all__ = [
    "retry_call",
]
