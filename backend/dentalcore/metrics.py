"""Prometheus metrics for locking, caching and repository operations.

The module bundles all collectors in one place so importing side-effects
(metric registration) happen exactly once per process.  Services and
repositories simply ``from dentalcore.metrics import …`` and increment.
"""

from __future__ import annotations

from prometheus_client import Counter
from prometheus_client import Histogram

lock_acquire_total = Counter(
    "dentalcore_lock_acquire_total",
    "Lock acquisition attempts by outcome",
    labelnames=("outcome",),  # acquired | contended | exhausted
)

lock_release_failures_total = Counter(
    "dentalcore_lock_release_failures_total",
    "Lock releases that failed (not owner or transport error)",
)

cache_requests_total = Counter(
    "dentalcore_cache_requests_total",
    "Cache lookups by result",
    labelnames=("result",),  # hit | miss | error
)

cache_errors_total = Counter(
    "dentalcore_cache_errors_total",
    "Cache transport errors absorbed by the cache layer",
    labelnames=("operation",),
)

sequence_rollback_total = Counter(
    "dentalcore_sequence_rollback_total",
    "Best-effort sequence compensations by outcome",
    labelnames=("outcome",),  # reverted | skipped | error
)

repository_operations_total = Counter(
    "dentalcore_repository_operations_total",
    "Repository operations by entity, operation and outcome",
    labelnames=("entity", "operation", "outcome"),
)

# ------------------------------------------------------------------
# Histograms (latency) ---------------------------------------------
# ------------------------------------------------------------------

repository_operation_seconds = Histogram(
    "dentalcore_repository_operation_seconds",
    "Latency of repository operations (seconds)",
    labelnames=("entity", "operation"),
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
