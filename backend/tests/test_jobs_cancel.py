from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sandboxer.db.engine import create_engine
from sandboxer.db.models.base import Base
from sandboxer.jobs.enqueue import enqueue_docker_ensure_running, enqueue_docker_stop, enqueue_job
from sandboxer.jobs.model import JobOutcome, job_from_row, transition_for_outcome
from sandboxer.jobs.payloads import JobType
from sandboxer.jobs.store import CancelOutcome, QueueStore

T0 = datetime(2026, 10, 18, 9, 0, 0, tzinfo=timezone.utc)


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


async def _create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def test_cancel_queued_job_is_immediate(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "cancel_queued.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_docker_ensure_running(engine, project_id="p1")
        store = QueueStore(engine)

        result = await store.cancel_job(job_id)
        assert result.outcome == CancelOutcome.CANCELLED
        assert result.state == "cancelled"
        assert await store.get_job_state(job_id) == "cancelled"

        # the dedupe slot is free again
        again = await enqueue_docker_ensure_running(engine, project_id="p1")
        assert again != job_id

        await engine.dispose()

    asyncio.run(_run())


def test_cancel_running_job_requests_cancellation(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "cancel_running.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)
        row = await store.claim_next_job(worker_id="w1", now=T0)
        assert row is not None

        first = await store.cancel_job(job_id, now=T0 + timedelta(seconds=1))
        assert first.outcome == CancelOutcome.CANCEL_REQUESTED
        assert first.state == "running"
        assert await store.get_job_state(job_id) == "running"
        assert await store.get_cancel_requested_at(job_id) == "2026-10-18T09:00:01.000Z"

        # a second request keeps the first timestamp
        await store.cancel_job(job_id, now=T0 + timedelta(seconds=5))
        assert await store.get_cancel_requested_at(job_id) == "2026-10-18T09:00:01.000Z"

        await engine.dispose()

    asyncio.run(_run())


def test_cancel_terminal_and_missing_jobs(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "cancel_terminal.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)
        row = await store.claim_next_job(worker_id="w1", now=T0)
        assert row is not None
        transition = transition_for_outcome(job_from_row(row), JobOutcome.success(), now=T0)
        assert await store.apply_transition(job_id=job_id, worker_id="w1", transition=transition)

        done = await store.cancel_job(job_id)
        assert done.outcome == CancelOutcome.ALREADY_TERMINAL
        assert done.state == "succeeded"

        missing = await store.cancel_job("does-not-exist")
        assert missing.outcome == CancelOutcome.NOT_FOUND
        assert missing.state is None

        await engine.dispose()

    asyncio.run(_run())


def test_cancel_jobs_for_project_with_filters(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "cancel_project.db"))

    async def _run() -> None:
        await _create_tables(engine)
        running = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        queued_stop = await enqueue_job(
            engine,
            job_type=JobType.PRODUCTION_STOP,
            payload={"projectId": "p1"},
            now=T0 + timedelta(milliseconds=5),
        )
        queued_other_type = await enqueue_job(
            engine,
            job_type=JobType.DOCKER_STOP,
            payload={"projectId": "p1"},
            now=T0 + timedelta(milliseconds=10),
        )
        other_project = await enqueue_job(
            engine,
            job_type=JobType.PRODUCTION_STOP,
            payload={"projectId": "p2"},
            now=T0 + timedelta(milliseconds=15),
        )
        store = QueueStore(engine)
        row = await store.claim_next_job(worker_id="w1", now=T0 + timedelta(seconds=1))
        assert row is not None and row["id"] == running

        only_stop = await store.cancel_jobs_for_project("p1", types=[JobType.PRODUCTION_STOP.value])
        assert only_stop.cancelled == 1
        assert only_stop.cancel_requested == 0
        assert await store.get_job_state(queued_stop) == "cancelled"
        assert await store.get_job_state(queued_other_type) == "queued"

        rest = await store.cancel_jobs_for_project("p1", exclude_job_id=running)
        assert rest.cancelled == 1
        assert rest.cancel_requested == 0
        assert await store.get_job_state(queued_other_type) == "cancelled"
        assert await store.get_cancel_requested_at(running) is None

        everything = await store.cancel_jobs_for_project("p1")
        assert everything.cancel_requested == 1
        assert await store.get_cancel_requested_at(running) is not None

        assert await store.get_job_state(other_project) == "queued"

        await engine.dispose()

    asyncio.run(_run())


def test_docker_stop_drops_pending_restarts(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "stop_cancels_restart.db"))

    async def _run() -> None:
        await _create_tables(engine)
        restart = await enqueue_docker_ensure_running(engine, project_id="p1", reason="presence")
        other = await enqueue_docker_ensure_running(engine, project_id="p2", reason="presence")

        stop = await enqueue_docker_stop(engine, project_id="p1", reason="idle")
        store = QueueStore(engine)

        assert await store.get_job_state(restart) == "cancelled"
        assert await store.get_job_state(stop) == "queued"
        assert await store.get_job_state(other) == "queued"

        await engine.dispose()

    asyncio.run(_run())
