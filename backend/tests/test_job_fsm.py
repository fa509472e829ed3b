from __future__ import annotations

from datetime import datetime, timezone

from sandboxer.core.time import iso_utc_ms, parse_iso_utc
from sandboxer.jobs.model import (
    DEDUPE_ACTIVE,
    Job,
    JobOutcome,
    JobState,
    OutcomeKind,
    job_from_row,
    on_job_failure,
    transition_for_outcome,
    truncate_error,
)

NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


def _job(**kwargs) -> Job:
    values = {
        "id": "job1",
        "type": "docker.stop",
        "state": JobState.RUNNING,
        "payload_json": "{}",
        "attempts": 0,
        "max_attempts": 3,
        "available_at": "2026-10-18T11:59:00.000Z",
    }
    values.update(kwargs)
    return Job(**values)


def test_success_is_terminal_and_releases_dedupe() -> None:
    t = transition_for_outcome(_job(), JobOutcome.success(), now=NOW)
    assert t.state == JobState.SUCCEEDED
    assert t.attempts == 0
    assert t.finished_at == iso_utc_ms(NOW)
    assert t.dedupe_active is None
    assert t.last_error is None


def test_failure_schedules_retry_with_backoff() -> None:
    t = transition_for_outcome(_job(), JobOutcome.failure("boom"), now=NOW)
    assert t.state == JobState.QUEUED
    assert t.attempts == 1
    assert t.dedupe_active == DEDUPE_ACTIVE
    assert t.finished_at is None
    assert t.last_error == "boom"
    available = parse_iso_utc(t.available_at)
    assert available is not None
    assert (available - NOW).total_seconds() == 2.0


def test_failure_on_last_attempt_is_terminal() -> None:
    t = on_job_failure(_job(attempts=2), error="still broken", now=NOW)
    assert t.state == JobState.FAILED
    assert t.attempts == 3
    assert t.finished_at == iso_utc_ms(NOW)
    assert t.dedupe_active is None


def test_attempts_never_exceed_max() -> None:
    t = on_job_failure(_job(attempts=3, max_attempts=3), error="x", now=NOW)
    assert t.state == JobState.FAILED
    assert t.attempts == 3


def test_permanent_failure_skips_retries() -> None:
    t = transition_for_outcome(_job(), JobOutcome.failure("bad payload", permanent=True), now=NOW)
    assert t.state == JobState.FAILED
    assert t.attempts == 1


def test_reschedule_does_not_spend_an_attempt() -> None:
    t = transition_for_outcome(_job(attempts=1, last_error="prev"), JobOutcome.reschedule(1_500), now=NOW)
    assert t.state == JobState.QUEUED
    assert t.attempts == 1
    assert t.last_error == "prev"
    assert t.dedupe_active == DEDUPE_ACTIVE
    available = parse_iso_utc(t.available_at)
    assert available is not None
    assert (available - NOW).total_seconds() == 1.5


def test_cancelled_outcome_sets_cancelled_at() -> None:
    t = transition_for_outcome(_job(), JobOutcome.cancelled(), now=NOW)
    assert t.state == JobState.CANCELLED
    assert t.cancelled_at == iso_utc_ms(NOW)
    assert t.finished_at == iso_utc_ms(NOW)


def test_outcome_constructors() -> None:
    assert JobOutcome.reschedule(-5).delay_ms == 0
    assert JobOutcome.failure("").message == "job failed"
    assert JobOutcome.success().kind == OutcomeKind.SUCCESS


def test_terminal_states() -> None:
    assert JobState.SUCCEEDED.is_terminal
    assert JobState.FAILED.is_terminal
    assert JobState.CANCELLED.is_terminal
    assert not JobState.QUEUED.is_terminal
    assert not JobState.RUNNING.is_terminal


def test_job_from_row_normalizes_values() -> None:
    job = job_from_row(
        {
            "id": "abc",
            "type": " docker.stop ",
            "state": "running",
            "payload_json": None,
            "attempts": "2",
            "max_attempts": 0,
            "project_id": "",
        }
    )
    assert job.type == "docker.stop"
    assert job.payload_json == "{}"
    assert job.attempts == 2
    assert job.max_attempts == 1
    assert job.project_id is None


def test_truncate_error_redacts_and_limits() -> None:
    text = "Authorization: Bearer abc.def " + "x" * 3000
    out = truncate_error(text)
    assert "abc.def" not in out
    assert len(out) == 2000
    assert out.endswith("...")
