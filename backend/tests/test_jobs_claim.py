from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sandboxer.db.engine import create_engine
from sandboxer.db.models.base import Base
from sandboxer.jobs.enqueue import enqueue_job
from sandboxer.jobs.model import JobOutcome, job_from_row, transition_for_outcome
from sandboxer.jobs.payloads import JobType
from sandboxer.jobs.store import QueueStore

T0 = datetime(2026, 10, 18, 8, 0, 0, tzinfo=timezone.utc)


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


async def _create_tables(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def _row(engine, job_id: str) -> dict:
    async with engine.connect() as conn:
        result = await conn.exec_driver_sql("SELECT * FROM queue_jobs WHERE id=:id", {"id": job_id})
        return dict(result.mappings().one())


def test_jobs_claim_multi_worker_no_double_claim(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "claim.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)

        start = asyncio.Event()

        async def _claim(worker_id: str):
            await start.wait()
            return await store.claim_next_job(worker_id=worker_id, now=T0 + timedelta(seconds=1))

        t1 = asyncio.create_task(_claim("w1"))
        t2 = asyncio.create_task(_claim("w2"))
        start.set()
        r1, r2 = await asyncio.gather(t1, t2)

        assert (r1 is None) != (r2 is None)
        winner = r1 or r2
        assert winner is not None
        assert winner["id"] == job_id
        assert winner["state"] == "running"
        assert winner["lease_owner"] in {"w1", "w2"}

        row = await _row(engine, job_id)
        assert row["state"] == "running"
        assert row["lease_owner"] == winner["lease_owner"]
        assert row["lease_expires_at"] > row["leased_at"]

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_claim_fifo_by_available_at(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "fifo.db"))

    async def _run() -> None:
        await _create_tables(engine)
        late = await enqueue_job(engine, job_type=JobType.PROJECTS_DELETE_ALL_FOR_USER, payload={"userId": "u2"}, now=T0)
        early = await enqueue_job(
            engine,
            job_type=JobType.PROJECTS_DELETE_ALL_FOR_USER,
            payload={"userId": "u1"},
            now=T0 - timedelta(seconds=5),
        )
        store = QueueStore(engine)
        now = T0 + timedelta(seconds=1)

        first = await store.claim_next_job(worker_id="w1", now=now)
        second = await store.claim_next_job(worker_id="w1", now=now)
        third = await store.claim_next_job(worker_id="w1", now=now)

        assert first is not None and first["id"] == early
        assert second is not None and second["id"] == late
        assert third is None

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_claim_respects_available_at(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "delay.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(
            engine,
            job_type=JobType.PRODUCTION_BUILD,
            payload={"projectId": "p1"},
            delay_ms=5_000,
            now=T0,
        )
        store = QueueStore(engine)

        assert await store.claim_next_job(worker_id="w1", now=T0 + timedelta(seconds=4)) is None
        row = await store.claim_next_job(worker_id="w1", now=T0 + timedelta(seconds=5))
        assert row is not None
        assert row["id"] == job_id

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_claim_serializes_per_project(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "serial.db"))

    async def _run() -> None:
        await _create_tables(engine)
        a1 = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "pa"}, now=T0)
        a2 = await enqueue_job(
            engine,
            job_type=JobType.PRODUCTION_STOP,
            payload={"projectId": "pa"},
            now=T0 + timedelta(milliseconds=10),
        )
        b1 = await enqueue_job(
            engine,
            job_type=JobType.PRODUCTION_BUILD,
            payload={"projectId": "pb"},
            now=T0 + timedelta(milliseconds=20),
        )
        store = QueueStore(engine)
        now = T0 + timedelta(seconds=1)

        first = await store.claim_next_job(worker_id="w1", now=now)
        assert first is not None and first["id"] == a1

        # a2 belongs to a project with a running job, so pb's job goes next
        second = await store.claim_next_job(worker_id="w2", now=now)
        assert second is not None and second["id"] == b1
        assert await store.claim_next_job(worker_id="w2", now=now) is None

        transition = transition_for_outcome(job_from_row(first), JobOutcome.success(), now=now)
        assert await store.apply_transition(job_id=a1, worker_id="w1", transition=transition)

        third = await store.claim_next_job(worker_id="w2", now=now)
        assert third is not None and third["id"] == a2

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_claim_requires_worker_id(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "wid.db"))

    async def _run() -> None:
        await _create_tables(engine)
        with pytest.raises(ValueError):
            await QueueStore(engine).claim_next_job(worker_id="  ")
        await engine.dispose()

    asyncio.run(_run())


def test_jobs_expired_lease_is_recovered(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "recover.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)

        row = await store.claim_next_job(worker_id="w1", lease_ms=1_000, now=T0)
        assert row is not None

        assert await store.recover_expired_leases(now=T0 + timedelta(milliseconds=500)) == []
        assert await store.recover_expired_leases(now=T0 + timedelta(seconds=2)) == [job_id]

        recovered = await _row(engine, job_id)
        assert recovered["state"] == "queued"
        assert recovered["lease_owner"] is None
        assert recovered["lease_expires_at"] is None
        assert recovered["attempts"] == 0

        again = await store.claim_next_job(worker_id="w2", now=T0 + timedelta(seconds=3))
        assert again is not None and again["lease_owner"] == "w2"

        # the old owner can no longer write a result
        transition = transition_for_outcome(job_from_row(row), JobOutcome.success(), now=T0 + timedelta(seconds=3))
        assert not await store.apply_transition(job_id=job_id, worker_id="w1", transition=transition)

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_heartbeat_extends_only_own_lease(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "heartbeat.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)
        row = await store.claim_next_job(worker_id="w1", lease_ms=1_000, now=T0)
        assert row is not None

        assert not await store.heartbeat_lease(job_id=job_id, worker_id="w2", lease_ms=10_000, now=T0)
        assert await store.heartbeat_lease(
            job_id=job_id,
            worker_id="w1",
            lease_ms=10_000,
            now=T0 + timedelta(milliseconds=500),
        )
        assert await store.recover_expired_leases(now=T0 + timedelta(seconds=5)) == []

        after = await _row(engine, job_id)
        assert after["lease_expires_at"] == "2026-10-18T08:00:10.500Z"

        await engine.dispose()

    asyncio.run(_run())


def test_jobs_release_lease_requeues_immediately(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "release.db"))

    async def _run() -> None:
        await _create_tables(engine)
        job_id = await enqueue_job(engine, job_type=JobType.PRODUCTION_BUILD, payload={"projectId": "p1"}, now=T0)
        store = QueueStore(engine)
        assert await store.claim_next_job(worker_id="w1", now=T0) is not None

        assert not await store.release_lease(job_id=job_id, worker_id="other", now=T0)
        assert await store.release_lease(job_id=job_id, worker_id="w1", now=T0)
        assert await store.get_job_state(job_id) == "queued"

        await engine.dispose()

    asyncio.run(_run())
