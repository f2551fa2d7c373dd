"""Prometheus metrics definitions for fsgate.

All custom fsgate metrics use the ``fsgate_`` prefix. These are
application-level S3 operation metrics; ``prometheus-fastapi-instrumentator``
provides the HTTP-level request count, duration and size metrics.

Counters reset to zero on restart. The active-uploads gauge is seeded from
the session directories on disk at startup.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# S3 operation counter (labels: operation, status)
s3_operations_total: Counter | None = None

# Byte counters
bytes_received_total: Counter | None = None
bytes_sent_total: Counter | None = None

# Multipart sessions currently on disk
multipart_uploads_active: Gauge | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Called once when metrics are enabled. When metrics are disabled the
    module-level references stay ``None`` and nothing is registered in the
    global registry.
    """
    global _initialized
    global s3_operations_total, bytes_received_total, bytes_sent_total
    global multipart_uploads_active

    if _initialized:
        return

    s3_operations_total = Counter(
        "fsgate_s3_operations_total",
        "Total S3 operations by type and outcome",
        ["operation", "status"],
    )

    bytes_received_total = Counter(
        "fsgate_bytes_received_total",
        "Total bytes received in request bodies",
    )

    bytes_sent_total = Counter(
        "fsgate_bytes_sent_total",
        "Total bytes sent in response bodies",
    )

    multipart_uploads_active = Gauge(
        "fsgate_multipart_uploads_active",
        "Multipart upload sessions currently in progress",
    )

    _initialized = True


def record_operation(operation: str, status: str = "success") -> None:
    """Count one S3 operation. No-op while metrics are disabled."""
    if s3_operations_total is not None:
        s3_operations_total.labels(operation=operation, status=status).inc()


def record_bytes_received(size: int) -> None:
    if bytes_received_total is not None and size > 0:
        bytes_received_total.inc(size)


def record_bytes_sent(size: int) -> None:
    if bytes_sent_total is not None and size > 0:
        bytes_sent_total.inc(size)


def uploads_started() -> None:
    if multipart_uploads_active is not None:
        multipart_uploads_active.inc()


def uploads_finished() -> None:
    if multipart_uploads_active is not None:
        multipart_uploads_active.dec()


def set_active_uploads(count: int) -> None:
    if multipart_uploads_active is not None:
        multipart_uploads_active.set(count)
