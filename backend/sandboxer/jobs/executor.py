from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from sandboxer.core.job_logs import job_log_context
from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import (
    JOB_DURATION_SECONDS,
    JOBS_CANCELLED_TOTAL,
    JOBS_FAILED_TOTAL,
    JOBS_RESCHEDULED_TOTAL,
    JOBS_RETRIED_TOTAL,
)
from sandboxer.core.redact import redact_text
from sandboxer.core.time import utc_now
from sandboxer.db.session import is_sqlite_busy_error
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobDispatcher
from sandboxer.jobs.errors import JobPermanentError
from sandboxer.jobs.model import JobOutcome, JobState, JobTransition, OutcomeKind, job_from_row, transition_for_outcome
from sandboxer.jobs.store import DEFAULT_LEASE_MS, QueueStore

log = get_logger(__name__)

DEFAULT_HEARTBEAT_INTERVAL_S = 5.0


def _error_text(exc: BaseException) -> str:
    return redact_text(f"{type(exc).__name__}: {exc}")


def outcome_from_exception(exc: Exception) -> JobOutcome:
    if isinstance(exc, JobPermanentError):
        return JobOutcome.failure(_error_text(exc), permanent=True)
    if isinstance(exc, ValidationError):
        return JobOutcome.failure(_error_text(exc), permanent=True)
    if is_sqlite_busy_error(exc):
        # busy database: retry in 2-5s without spending an attempt
        return JobOutcome.reschedule(int(2000 + random.random() * 3000))
    return JobOutcome.failure(_error_text(exc))


async def _heartbeat_loop(ctx: JobContext, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            if not await ctx.heartbeat():
                return
        except Exception as exc:
            log.warning("job_heartbeat_failed job_id=%s err=%s", ctx.job_id, _error_text(exc))


async def _run_handler(dispatcher: JobDispatcher, ctx: JobContext, heartbeat_interval_s: float) -> JobOutcome:
    try:
        if ctx.job.cancel_requested_at or await ctx.cancel_requested():
            return JobOutcome.cancelled()
    except Exception as exc:
        return outcome_from_exception(exc)

    heartbeat = asyncio.create_task(_heartbeat_loop(ctx, heartbeat_interval_s))
    try:
        return await dispatcher.dispatch(ctx)
    except Exception as exc:
        return outcome_from_exception(exc)
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)


def _observe(transition: JobTransition, outcome: JobOutcome) -> None:
    if transition.state == JobState.FAILED:
        JOBS_FAILED_TOTAL.inc()
    elif transition.state == JobState.CANCELLED:
        JOBS_CANCELLED_TOTAL.inc()
    elif transition.state == JobState.QUEUED and outcome.kind == OutcomeKind.RESCHEDULE:
        JOBS_RESCHEDULED_TOTAL.inc()
    elif transition.state == JobState.QUEUED:
        JOBS_RETRIED_TOTAL.inc()


async def execute_claimed_job(
    store: QueueStore,
    dispatcher: JobDispatcher,
    *,
    job_row: dict[str, Any],
    worker_id: str,
    lease_ms: int = DEFAULT_LEASE_MS,
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
    clock: Callable[[], datetime] = utc_now,
) -> JobTransition | None:
    """Run one claimed job to an outcome and write the resulting transition.

    Returns ``None`` when the lease was lost before the result could be
    written; the job then belongs to whichever worker reclaimed it.
    """

    worker_id = worker_id.strip()
    if not worker_id:
        raise ValueError("worker_id is required")

    job = job_from_row(job_row)
    if not job.id:
        raise ValueError("job_row.id is required")

    ctx = JobContext(job=job, worker_id=worker_id, store=store, lease_ms=int(lease_ms), clock=clock)
    started = time.monotonic()

    with job_log_context(job.id):
        log.info("job_started job_id=%s type=%s attempts=%s worker_id=%s", job.id, job.type, job.attempts, worker_id)
        try:
            outcome = await _run_handler(dispatcher, ctx, float(heartbeat_interval_s))
        except asyncio.CancelledError:
            released = await store.release_lease(job_id=job.id, worker_id=worker_id)
            log.warning("job_interrupted job_id=%s released=%s", job.id, released)
            raise

        JOB_DURATION_SECONDS.labels(type=job.type or "unknown").observe(time.monotonic() - started)
        transition = transition_for_outcome(job, outcome, now=clock())

        ok = await store.apply_transition(job_id=job.id, worker_id=worker_id, transition=transition)
        if not ok:
            log.warning("job_result_discarded job_id=%s outcome=%s reason=lease_lost", job.id, outcome.kind.value)
            return None

        _observe(transition, outcome)
        if transition.state == JobState.FAILED:
            log.warning("job_failed job_id=%s type=%s attempts=%s err=%s", job.id, job.type, transition.attempts, transition.last_error)
        elif outcome.kind == OutcomeKind.FAILURE:
            log.warning(
                "job_retry_scheduled job_id=%s type=%s attempts=%s available_at=%s err=%s",
                job.id,
                job.type,
                transition.attempts,
                transition.available_at,
                transition.last_error,
            )
        else:
            log.info("job_finished job_id=%s type=%s state=%s", job.id, job.type, transition.state.value)
        return transition
