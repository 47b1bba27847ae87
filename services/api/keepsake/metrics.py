"""Prometheus metric definitions for Keepsake.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

import os

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, multiprocess

# --- Celery task metrics ---

celery_task_total = Counter(
    "keepsake_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

celery_task_duration_seconds = Histogram(
    "keepsake_celery_task_duration_seconds",
    "Celery task execution duration in seconds",
    ["task_name"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
)

# --- Event store ---

event_mutations_total = Counter(
    "keepsake_event_mutations_total",
    "Successful event mutations by action",
    ["action"],
)

store_operation_duration_seconds = Histogram(
    "keepsake_store_operation_duration_seconds",
    "Event store operation duration in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# --- Query cache ---

query_cache_lookups_total = Counter(
    "keepsake_query_cache_lookups_total",
    "Query cache lookups by result",
    ["result"],
)

query_cache_evictions_total = Counter(
    "keepsake_query_cache_evictions_total",
    "Entries evicted because the cache was full",
)

# --- Occurrences / reminders ---

occurrence_limit_hits_total = Counter(
    "keepsake_occurrence_limit_hits_total",
    "Occurrence expansions stopped by the safety ceiling",
)

reminder_deliveries_total = Counter(
    "keepsake_reminder_deliveries_total",
    "Reminder delivery attempts by channel and outcome",
    ["channel", "status"],
)


def render_latest() -> bytes:
    """Exposition text for the scrape endpoint.

    Under gunicorn/uvicorn workers ``PROMETHEUS_MULTIPROC_DIR`` is set and the
    per-process files are merged; otherwise the default registry is used.
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return generate_latest(registry)
    return generate_latest()
