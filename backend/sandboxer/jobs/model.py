from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sandboxer.core.redact import redact_text
from sandboxer.core.time import iso_after_ms, iso_utc_ms, utc_now
from sandboxer.jobs.backoff import backoff_ms

DEDUPE_ACTIVE = "active"
DEFAULT_MAX_ATTEMPTS = 3


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})


@dataclass(frozen=True, slots=True)
class Job:
    id: str
    type: str
    state: JobState
    payload_json: str
    attempts: int
    max_attempts: int
    project_id: str | None = None
    available_at: str | None = None
    lease_owner: str | None = None
    lease_expires_at: str | None = None
    cancel_requested_at: str | None = None
    last_error: str | None = None
    created_at: str | None = None


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    RESCHEDULE = "reschedule"
    CANCELLED = "cancelled"
    FAILURE = "failure"


@dataclass(frozen=True, slots=True)
class JobOutcome:
    """What a handler tells the worker to do with its job.

    Handlers return one of ``success()``, ``reschedule(delay_ms)``,
    ``cancelled()`` or ``failure(message)``. Unexpected exceptions are folded
    into ``failure`` by the executor.
    """

    kind: OutcomeKind
    delay_ms: int = 0
    message: str | None = None
    permanent: bool = False

    @classmethod
    def success(cls) -> "JobOutcome":
        return cls(kind=OutcomeKind.SUCCESS)

    @classmethod
    def reschedule(cls, delay_ms: int) -> "JobOutcome":
        return cls(kind=OutcomeKind.RESCHEDULE, delay_ms=max(0, int(delay_ms)))

    @classmethod
    def cancelled(cls) -> "JobOutcome":
        return cls(kind=OutcomeKind.CANCELLED)

    @classmethod
    def failure(cls, message: str, *, permanent: bool = False) -> "JobOutcome":
        return cls(kind=OutcomeKind.FAILURE, message=str(message or "job failed"), permanent=bool(permanent))


@dataclass(frozen=True, slots=True)
class JobTransition:
    state: JobState
    attempts: int
    available_at: str
    last_error: str | None
    cancelled_at: str | None
    finished_at: str | None
    dedupe_active: str | None
    updated_at: str


def _as_int(value: Any, *, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s if s else None


def job_from_row(row: dict[str, Any]) -> Job:
    return Job(
        id=str(row.get("id") or ""),
        type=str(row.get("type") or "").strip(),
        state=JobState(str(row.get("state") or JobState.RUNNING.value)),
        payload_json=str(row.get("payload_json") or "{}"),
        attempts=_as_int(row.get("attempts")),
        max_attempts=max(1, _as_int(row.get("max_attempts"), default=DEFAULT_MAX_ATTEMPTS)),
        project_id=_as_str(row.get("project_id")),
        available_at=_as_str(row.get("available_at")),
        lease_owner=_as_str(row.get("lease_owner")),
        lease_expires_at=_as_str(row.get("lease_expires_at")),
        cancel_requested_at=_as_str(row.get("cancel_requested_at")),
        last_error=_as_str(row.get("last_error")),
        created_at=_as_str(row.get("created_at")),
    )


def truncate_error(text: str, *, max_len: int = 2000) -> str:
    text = redact_text(text)
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _terminal(state: JobState, job: Job, *, attempts: int, last_error: str | None, now: datetime) -> JobTransition:
    now_s = iso_utc_ms(now)
    return JobTransition(
        state=state,
        attempts=attempts,
        available_at=job.available_at or now_s,
        last_error=last_error,
        cancelled_at=now_s if state == JobState.CANCELLED else None,
        finished_at=now_s,
        dedupe_active=None,
        updated_at=now_s,
    )


def on_job_success(job: Job, *, now: datetime | None = None) -> JobTransition:
    return _terminal(JobState.SUCCEEDED, job, attempts=job.attempts, last_error=None, now=now or utc_now())


def on_job_cancelled(job: Job, *, now: datetime | None = None) -> JobTransition:
    return _terminal(JobState.CANCELLED, job, attempts=job.attempts, last_error=job.last_error, now=now or utc_now())


def on_job_failure(
    job: Job,
    *,
    error: str,
    permanent: bool = False,
    now: datetime | None = None,
) -> JobTransition:
    now_dt = now or utc_now()
    next_attempt = min(job.attempts + 1, job.max_attempts)
    message = truncate_error(error)

    if permanent or next_attempt >= job.max_attempts:
        return _terminal(JobState.FAILED, job, attempts=next_attempt, last_error=message, now=now_dt)

    now_s = iso_utc_ms(now_dt)
    return JobTransition(
        state=JobState.QUEUED,
        attempts=next_attempt,
        available_at=iso_after_ms(now_dt, backoff_ms(next_attempt)),
        last_error=message,
        cancelled_at=None,
        finished_at=None,
        dedupe_active=DEDUPE_ACTIVE,
        updated_at=now_s,
    )


def on_job_reschedule(job: Job, *, delay_ms: int, now: datetime | None = None) -> JobTransition:
    now_dt = now or utc_now()
    return JobTransition(
        state=JobState.QUEUED,
        attempts=job.attempts,
        available_at=iso_after_ms(now_dt, delay_ms),
        last_error=job.last_error,
        cancelled_at=None,
        finished_at=None,
        dedupe_active=DEDUPE_ACTIVE,
        updated_at=iso_utc_ms(now_dt),
    )


def transition_for_outcome(job: Job, outcome: JobOutcome, *, now: datetime | None = None) -> JobTransition:
    if outcome.kind == OutcomeKind.SUCCESS:
        return on_job_success(job, now=now)
    if outcome.kind == OutcomeKind.RESCHEDULE:
        return on_job_reschedule(job, delay_ms=outcome.delay_ms, now=now)
    if outcome.kind == OutcomeKind.CANCELLED:
        return on_job_cancelled(job, now=now)
    return on_job_failure(job, error=outcome.message or "job failed", permanent=outcome.permanent, now=now)
