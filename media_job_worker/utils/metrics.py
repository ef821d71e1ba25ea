"""
Prometheus metrics for the media job worker
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


REGISTRY = CollectorRegistry(auto_describe=True)

JOBS_TOTAL = Counter(
    "media_worker_jobs_total",
    "Jobs finished by outcome (acked, requeued, dead_lettered, rejected, abandoned)",
    ["outcome"],
    registry=REGISTRY,
)

UNITS_TOTAL = Counter(
    "media_worker_units_total",
    "Stage units finished by stage and outcome",
    ["stage", "outcome"],
    registry=REGISTRY,
)

UNIT_DURATION = Histogram(
    "media_worker_unit_duration_seconds",
    "Wall time of a single stage unit",
    ["stage"],
    buckets=(1, 5, 15, 60, 300, 900, 1800, 3600, 7200),
    registry=REGISTRY,
)

JOBS_IN_FLIGHT = Gauge(
    "media_worker_jobs_in_flight",
    "Jobs currently dispatched to the pipeline",
    registry=REGISTRY,
)

STATUS_EVENTS = Counter(
    "media_worker_status_events_total",
    "Coarse status transitions emitted",
    ["status"],
    registry=REGISTRY,
)

TELEMETRY_FAILURES = Counter(
    "media_worker_telemetry_failures_total",
    "Telemetry emissions that failed and were dropped",
    ["kind"],
    registry=REGISTRY,
)
