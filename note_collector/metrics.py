"""Prometheus metrics for the note collector.

All metric objects are defined here so they can be imported from any module.
"""

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Storage metrics
# ---------------------------------------------------------------------------

STORAGE_OPERATIONS = Counter(
    "note_collector_storage_operations_total",
    "Total persistence operations served by the active backend",
    ["backend", "operation", "status"],
)

ACTIVE_BACKEND = Gauge(
    "note_collector_active_backend",
    "1 for the backend serving requests, 0 otherwise",
    ["backend"],
)

MIGRATED_RECORDS = Counter(
    "note_collector_migrated_records_total",
    "Records copied from JSON files into SQLite",
    ["entity"],  # theme, note
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS = Counter(
    "note_collector_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_DURATION = Histogram(
    "note_collector_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["endpoint"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0),
)
