from __future__ import annotations

from collections.abc import Iterable

from prometheus_client import Counter, Gauge, Histogram

JOB_STATES: tuple[str, ...] = (
    "queued",
    "running",
    "succeeded",
    "failed",
    "cancelled",
)

JOBS_ENQUEUED_TOTAL = Counter(
    "sandboxer_jobs_enqueued_total",
    "Total jobs inserted into the queue by type.",
    ["type"],
)

JOBS_CLAIM_TOTAL = Counter(
    "sandboxer_jobs_claim_total",
    "Total jobs claimed by workers.",
)

JOBS_FAILED_TOTAL = Counter(
    "sandboxer_jobs_failed_total",
    "Total jobs transitioned to the terminal failed state.",
)

JOBS_RETRIED_TOTAL = Counter(
    "sandboxer_jobs_retried_total",
    "Total failed executions scheduled for another attempt.",
)

JOBS_RESCHEDULED_TOTAL = Counter(
    "sandboxer_jobs_rescheduled_total",
    "Total not-ready reschedules (not counted as attempts).",
)

JOBS_CANCELLED_TOTAL = Counter(
    "sandboxer_jobs_cancelled_total",
    "Total jobs that ended cancelled.",
)

JOBS_RECOVERED_TOTAL = Counter(
    "sandboxer_jobs_recovered_total",
    "Total running jobs returned to the queue after their lease expired.",
)

JOBS_LEASE_LOST_TOTAL = Counter(
    "sandboxer_jobs_lease_lost_total",
    "Total executions whose result was discarded because the lease was lost.",
)

JOB_DURATION_SECONDS = Histogram(
    "sandboxer_job_duration_seconds",
    "Handler execution time by job type (seconds).",
    ["type"],
    buckets=(
        0.05,
        0.1,
        0.5,
        1.0,
        5.0,
        15.0,
        60.0,
        300.0,
        900.0,
    ),
)

JOBS_STATE_COUNT = Gauge(
    "sandboxer_jobs_state_count",
    "Current jobs count by state (from SQLite).",
    ["state"],
)

QUEUE_PAUSED = Gauge(
    "sandboxer_queue_paused",
    "1 when the queue is paused.",
)

METRICS_SCRAPE_ERRORS_TOTAL = Counter(
    "sandboxer_metrics_scrape_errors_total",
    "Total /metrics scrape errors while collecting gauges.",
)

METRICS_LAST_SCRAPE_SUCCESS = Gauge(
    "sandboxer_metrics_last_scrape_success",
    "1 if last /metrics scrape collected gauges successfully, else 0.",
)


def _init_labelsets() -> None:
    for state in JOB_STATES:
        JOBS_STATE_COUNT.labels(state=state).set(0)
    METRICS_LAST_SCRAPE_SUCCESS.set(0)
    QUEUE_PAUSED.set(0)


_init_labelsets()


def ensure_known_keys(keys: Iterable[str], values: dict[str, int]) -> dict[str, int]:
    out = {k: int(values.get(k, 0)) for k in keys}
    for k, v in values.items():
        if k not in out:
            out[k] = int(v)
    return out


def set_jobs_state_counts(counts: dict[str, int]) -> None:
    for state, value in ensure_known_keys(JOB_STATES, counts).items():
        JOBS_STATE_COUNT.labels(state=state).set(int(value))
