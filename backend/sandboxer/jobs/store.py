"""Durable job store: atomic claim, lease heartbeat, recovery and state transitions.

Every state change is a single conditional ``UPDATE``. Transitions that end a
running execution are guarded by ``state='running' AND lease_owner=:worker_id``
so a worker whose lease was recovered by someone else can never write its
result back.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import JOBS_CLAIM_TOTAL, JOBS_RECOVERED_TOTAL
from sandboxer.core.time import iso_after_ms, iso_utc_ms, utc_now
from sandboxer.db.session import with_sqlite_busy_retry
from sandboxer.jobs.model import JobTransition

log = get_logger(__name__)

DEFAULT_LEASE_MS = 60_000

_CLAIM_SQL = """
UPDATE queue_jobs
SET state='running',
    lease_owner=:worker_id,
    leased_at=:now,
    lease_expires_at=:lease_expires_at,
    updated_at=:now
WHERE id = (
  SELECT q.id
  FROM queue_jobs AS q
  WHERE q.state='queued'
    AND q.available_at <= :now
    AND (
      q.project_id IS NULL
      OR NOT EXISTS (
        SELECT 1 FROM queue_jobs AS r
        WHERE r.state='running' AND r.project_id = q.project_id
      )
    )
  ORDER BY q.available_at ASC, q.created_at ASC, q.rowid ASC
  LIMIT 1
)
  AND state='queued'
RETURNING *;
""".strip()

_HEARTBEAT_SQL = """
UPDATE queue_jobs
SET lease_expires_at=:lease_expires_at,
    updated_at=:now
WHERE id=:id AND state='running' AND lease_owner=:worker_id;
""".strip()

_RECOVER_SQL = """
UPDATE queue_jobs
SET state='queued',
    lease_owner=NULL,
    leased_at=NULL,
    lease_expires_at=NULL,
    available_at=:now,
    updated_at=:now
WHERE state='running' AND lease_expires_at < :now
RETURNING id, type;
""".strip()

_APPLY_SQL = """
UPDATE queue_jobs
SET state=:state,
    attempts=:attempts,
    available_at=:available_at,
    last_error=:last_error,
    cancelled_at=:cancelled_at,
    finished_at=:finished_at,
    dedupe_active=:dedupe_active,
    lease_owner=NULL,
    leased_at=NULL,
    lease_expires_at=NULL,
    updated_at=:updated_at
WHERE id=:id AND state='running' AND lease_owner=:worker_id;
""".strip()

_RELEASE_SQL = """
UPDATE queue_jobs
SET state='queued',
    lease_owner=NULL,
    leased_at=NULL,
    lease_expires_at=NULL,
    available_at=:now,
    updated_at=:now
WHERE id=:id AND state='running' AND lease_owner=:worker_id;
""".strip()

_CANCEL_QUEUED_SQL = """
UPDATE queue_jobs
SET state='cancelled',
    cancelled_at=:now,
    finished_at=:now,
    dedupe_active=NULL,
    updated_at=:now
WHERE id=:id AND state='queued'
RETURNING id;
""".strip()

_REQUEST_CANCEL_SQL = """
UPDATE queue_jobs
SET cancel_requested_at=COALESCE(cancel_requested_at, :now),
    updated_at=:now
WHERE id=:id AND state='running'
RETURNING cancel_requested_at;
""".strip()


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    CANCEL_REQUESTED = "cancel_requested"
    ALREADY_TERMINAL = "already_terminal"
    NOT_FOUND = "not_found"


@dataclass(frozen=True, slots=True)
class CancelResult:
    job_id: str
    outcome: CancelOutcome
    state: str | None


@dataclass(frozen=True, slots=True)
class ProjectCancelResult:
    cancelled: int
    cancel_requested: int


def _in_clause(prefix: str, values: Iterable[str]) -> tuple[str, dict[str, Any]]:
    params = {f"{prefix}{i}": v for i, v in enumerate(values)}
    return ",".join(f":{k}" for k in params), params


class QueueStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def _execute(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        async def _op() -> list[dict[str, Any]]:
            async with self.engine.begin() as conn:
                result = await conn.exec_driver_sql(sql, params)
                return [dict(row) for row in result.mappings().all()]

        return await with_sqlite_busy_retry(_op)

    async def _rowcount(self, sql: str, params: dict[str, Any]) -> int:
        async def _op() -> int:
            async with self.engine.begin() as conn:
                result = await conn.exec_driver_sql(sql, params)
                return int(result.rowcount or 0)

        return await with_sqlite_busy_retry(_op)

    async def claim_next_job(
        self,
        *,
        worker_id: str,
        lease_ms: int = DEFAULT_LEASE_MS,
        now: datetime | None = None,
    ) -> dict[str, Any] | None:
        worker_id = (worker_id or "").strip()
        if not worker_id:
            raise ValueError("worker_id is required")
        now_dt = now or utc_now()
        rows = await self._execute(
            _CLAIM_SQL,
            {
                "now": iso_utc_ms(now_dt),
                "lease_expires_at": iso_after_ms(now_dt, lease_ms),
                "worker_id": worker_id,
            },
        )
        if not rows:
            return None
        JOBS_CLAIM_TOTAL.inc()
        return rows[0]

    async def heartbeat_lease(
        self,
        *,
        job_id: str,
        worker_id: str,
        lease_ms: int = DEFAULT_LEASE_MS,
        now: datetime | None = None,
    ) -> bool:
        now_dt = now or utc_now()
        updated = await self._rowcount(
            _HEARTBEAT_SQL,
            {
                "id": job_id,
                "worker_id": worker_id,
                "now": iso_utc_ms(now_dt),
                "lease_expires_at": iso_after_ms(now_dt, lease_ms),
            },
        )
        return updated == 1

    async def recover_expired_leases(self, *, now: datetime | None = None) -> list[str]:
        rows = await self._execute(_RECOVER_SQL, {"now": iso_utc_ms(now or utc_now())})
        recovered = [str(r["id"]) for r in rows]
        for row in rows:
            log.warning("job_lease_expired_recovered job_id=%s type=%s", row["id"], row["type"])
        if recovered:
            JOBS_RECOVERED_TOTAL.inc(len(recovered))
        return recovered

    async def apply_transition(self, *, job_id: str, worker_id: str, transition: JobTransition) -> bool:
        updated = await self._rowcount(
            _APPLY_SQL,
            {
                "state": transition.state.value,
                "attempts": int(transition.attempts),
                "available_at": transition.available_at,
                "last_error": transition.last_error,
                "cancelled_at": transition.cancelled_at,
                "finished_at": transition.finished_at,
                "dedupe_active": transition.dedupe_active,
                "updated_at": transition.updated_at,
                "id": job_id,
                "worker_id": worker_id,
            },
        )
        return updated == 1

    async def release_lease(self, *, job_id: str, worker_id: str, now: datetime | None = None) -> bool:
        updated = await self._rowcount(
            _RELEASE_SQL,
            {"id": job_id, "worker_id": worker_id, "now": iso_utc_ms(now or utc_now())},
        )
        return updated == 1

    async def get_job_state(self, job_id: str) -> str | None:
        rows = await self._execute("SELECT state FROM queue_jobs WHERE id=:id;", {"id": job_id})
        return str(rows[0]["state"]) if rows else None

    async def get_cancel_requested_at(self, job_id: str) -> str | None:
        rows = await self._execute("SELECT cancel_requested_at FROM queue_jobs WHERE id=:id;", {"id": job_id})
        if not rows:
            return None
        value = rows[0]["cancel_requested_at"]
        return str(value) if value else None

    async def cancel_job(self, job_id: str, *, now: datetime | None = None) -> CancelResult:
        now_s = iso_utc_ms(now or utc_now())

        if await self._execute(_CANCEL_QUEUED_SQL, {"id": job_id, "now": now_s}):
            return CancelResult(job_id=job_id, outcome=CancelOutcome.CANCELLED, state="cancelled")

        if await self._execute(_REQUEST_CANCEL_SQL, {"id": job_id, "now": now_s}):
            return CancelResult(job_id=job_id, outcome=CancelOutcome.CANCEL_REQUESTED, state="running")

        state = await self.get_job_state(job_id)
        if state is None:
            return CancelResult(job_id=job_id, outcome=CancelOutcome.NOT_FOUND, state=None)
        if state in {"queued", "running"}:
            # Claimed or released between the two updates; try once more.
            return await self.cancel_job(job_id, now=now)
        return CancelResult(job_id=job_id, outcome=CancelOutcome.ALREADY_TERMINAL, state=state)

    async def cancel_jobs_for_project(
        self,
        project_id: str,
        *,
        types: Iterable[str] | None = None,
        exclude_job_id: str | None = None,
        now: datetime | None = None,
    ) -> ProjectCancelResult:
        now_s = iso_utc_ms(now or utc_now())
        params: dict[str, Any] = {"project_id": project_id, "now": now_s, "exclude": exclude_job_id or ""}
        filters = "project_id=:project_id AND id != :exclude"
        type_list = [t for t in (types or []) if t]
        if type_list:
            placeholders, type_params = _in_clause("type_", type_list)
            filters += f" AND type IN ({placeholders})"
            params.update(type_params)

        cancelled = await self._rowcount(
            f"""
UPDATE queue_jobs
SET state='cancelled', cancelled_at=:now, finished_at=:now, dedupe_active=NULL, updated_at=:now
WHERE state='queued' AND {filters};
""".strip(),
            params,
        )
        requested = await self._rowcount(
            f"""
UPDATE queue_jobs
SET cancel_requested_at=COALESCE(cancel_requested_at, :now), updated_at=:now
WHERE state='running' AND {filters};
""".strip(),
            params,
        )
        if cancelled or requested:
            log.info(
                "project_jobs_cancelled project_id=%s cancelled=%s cancel_requested=%s",
                project_id,
                cancelled,
                requested,
            )
        return ProjectCancelResult(cancelled=cancelled, cancel_requested=requested)
