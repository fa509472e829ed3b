"""Operator actions on the queue (list, cancel, retry, force-unlock, delete)."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.logging import get_logger
from sandboxer.core.time import iso_utc_ms, utc_now
from sandboxer.db.models.queue_jobs import QueueJobRow
from sandboxer.db.session import create_sessionmaker, with_sqlite_busy_retry
from sandboxer.jobs.enqueue import enqueue_job
from sandboxer.jobs.errors import JobNotFoundError, JobStateConflictError
from sandboxer.jobs.model import TERMINAL_STATES, JobState
from sandboxer.jobs.store import CancelResult, QueueStore

log = get_logger(__name__)

MAX_LIST_LIMIT = 200
_TERMINAL_VALUES = tuple(sorted(s.value for s in TERMINAL_STATES))


@dataclass(frozen=True, slots=True)
class JobFilters:
    state: str | None = None
    type: str | None = None
    project_id: str | None = None
    q: str | None = None


@dataclass(frozen=True, slots=True)
class JobPage:
    items: list[dict[str, Any]]
    total: int


def job_to_dict(row: QueueJobRow, *, include_payload: bool = False) -> dict[str, Any]:
    item: dict[str, Any] = {
        "id": row.id,
        "type": row.type,
        "state": row.state,
        "project_id": row.project_id,
        "attempts": int(row.attempts),
        "max_attempts": int(row.max_attempts),
        "available_at": row.available_at,
        "lease_owner": row.lease_owner,
        "leased_at": row.leased_at,
        "lease_expires_at": row.lease_expires_at,
        "cancel_requested_at": row.cancel_requested_at,
        "cancelled_at": row.cancelled_at,
        "finished_at": row.finished_at,
        "last_error": row.last_error,
        "dedupe_key": row.dedupe_key,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }
    if include_payload:
        try:
            item["payload"] = json.loads(row.payload_json or "{}")
        except ValueError:
            item["payload"] = None
    return item


def _apply_filters(stmt: Any, filters: JobFilters) -> Any:
    if filters.state:
        stmt = stmt.where(QueueJobRow.state == JobState(filters.state).value)
    if filters.type:
        stmt = stmt.where(QueueJobRow.type == filters.type)
    if filters.project_id:
        stmt = stmt.where(QueueJobRow.project_id == filters.project_id)
    q = (filters.q or "").strip()
    if q:
        pattern = f"%{q}%"
        stmt = stmt.where(
            sa.or_(
                QueueJobRow.id.like(pattern),
                QueueJobRow.type.like(pattern),
                QueueJobRow.project_id.like(pattern),
                QueueJobRow.last_error.like(pattern),
            )
        )
    return stmt


async def list_jobs(
    engine: AsyncEngine,
    filters: JobFilters | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> JobPage:
    filters = filters or JobFilters()
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))
    offset = max(0, int(offset))
    Session = create_sessionmaker(engine)

    stmt = _apply_filters(sa.select(QueueJobRow), filters)
    stmt = stmt.order_by(QueueJobRow.created_at.desc(), QueueJobRow.id.desc()).limit(limit).offset(offset)
    count_stmt = _apply_filters(sa.select(sa.func.count()).select_from(QueueJobRow), filters)

    async def _op() -> JobPage:
        async with Session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            total = int((await session.execute(count_stmt)).scalar_one())
        return JobPage(items=[job_to_dict(r) for r in rows], total=total)

    return await with_sqlite_busy_retry(_op)


async def count_jobs_by_state(engine: AsyncEngine) -> dict[str, int]:
    async def _op() -> dict[str, int]:
        async with engine.connect() as conn:
            result = await conn.exec_driver_sql("SELECT state, COUNT(*) FROM queue_jobs GROUP BY state")
            return {str(row[0]): int(row[1]) for row in result.fetchall()}

    counts = await with_sqlite_busy_retry(_op)
    for state in JobState:
        counts.setdefault(state.value, 0)
    return counts


async def get_job(engine: AsyncEngine, job_id: str) -> dict[str, Any]:
    Session = create_sessionmaker(engine)
    async with Session() as session:
        row = await session.get(QueueJobRow, job_id)
    if row is None:
        raise JobNotFoundError(job_id)
    return job_to_dict(row, include_payload=True)


async def cancel_job(engine: AsyncEngine, job_id: str, *, now: datetime | None = None) -> CancelResult:
    result = await QueueStore(engine).cancel_job(job_id, now=now)
    log.info("job_cancel job_id=%s outcome=%s", job_id, result.outcome.value)
    return result


async def retry_job(engine: AsyncEngine, job_id: str) -> str:
    """Clone a terminal job as a fresh queued job and return the new id."""

    Session = create_sessionmaker(engine)
    async with Session() as session:
        row = await session.get(QueueJobRow, job_id)
    if row is None:
        raise JobNotFoundError(job_id)
    if row.state not in _TERMINAL_VALUES:
        raise JobStateConflictError(job_id, row.state, "only finished jobs can be retried")

    new_id = await enqueue_job(
        engine,
        job_type=row.type,
        payload=row.payload_json,
        project_id=row.project_id,
        max_attempts=int(row.max_attempts),
    )
    log.info("job_retry_cloned job_id=%s new_job_id=%s", job_id, new_id)
    return new_id


async def _update_single(
    engine: AsyncEngine,
    job_id: str,
    *,
    sql: str,
    params: dict[str, Any],
    expected_state: str,
    message: str,
) -> None:
    async def _op() -> int:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql(sql, {"id": job_id, **params})
            return int(result.rowcount or 0)

    if await with_sqlite_busy_retry(_op) == 1:
        return
    state = await QueueStore(engine).get_job_state(job_id)
    if state is None:
        raise JobNotFoundError(job_id)
    raise JobStateConflictError(job_id, state, message or f"job is not {expected_state}")


async def run_now(engine: AsyncEngine, job_id: str, *, now: datetime | None = None) -> None:
    now_s = iso_utc_ms(now or utc_now())
    await _update_single(
        engine,
        job_id,
        sql="UPDATE queue_jobs SET available_at=:now, updated_at=:now WHERE id=:id AND state='queued';",
        params={"now": now_s},
        expected_state="queued",
        message="only queued jobs can be run now",
    )
    log.info("job_run_now job_id=%s", job_id)


async def force_unlock(engine: AsyncEngine, job_id: str, *, now: datetime | None = None) -> None:
    now_s = iso_utc_ms(now or utc_now())
    await _update_single(
        engine,
        job_id,
        sql="""
UPDATE queue_jobs
SET state='queued', lease_owner=NULL, leased_at=NULL, lease_expires_at=NULL, available_at=:now, updated_at=:now
WHERE id=:id AND state='running';
""".strip(),
        params={"now": now_s},
        expected_state="running",
        message="only running jobs can be unlocked",
    )
    log.warning("job_force_unlocked job_id=%s", job_id)


async def delete_job(engine: AsyncEngine, job_id: str) -> None:
    placeholders = ",".join(f"'{s}'" for s in _TERMINAL_VALUES)
    await _update_single(
        engine,
        job_id,
        sql=f"DELETE FROM queue_jobs WHERE id=:id AND state IN ({placeholders});",
        params={},
        expected_state="terminal",
        message="only finished jobs can be deleted",
    )
    log.info("job_deleted job_id=%s", job_id)


async def delete_jobs_by_state(engine: AsyncEngine, state: str) -> int:
    state_v = JobState(state)
    if not state_v.is_terminal:
        raise ValueError("only terminal states can be bulk deleted")

    async def _op() -> int:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql("DELETE FROM queue_jobs WHERE state=:state;", {"state": state_v.value})
            return int(result.rowcount or 0)

    deleted = await with_sqlite_busy_retry(_op)
    log.info("jobs_deleted_by_state state=%s count=%s", state_v.value, deleted)
    return deleted
