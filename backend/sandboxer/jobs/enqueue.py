from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import JOBS_ENQUEUED_TOTAL
from sandboxer.core.time import epoch_ms, iso_after_ms, iso_utc_ms, utc_now
from sandboxer.db.models.queue_jobs import QueueJobRow
from sandboxer.db.session import create_sessionmaker, with_sqlite_busy_retry
from sandboxer.jobs.model import DEDUPE_ACTIVE, DEFAULT_MAX_ATTEMPTS
from sandboxer.jobs.payloads import JobType, dump_payload, parse_job_type, validate_payload
from sandboxer.jobs.store import QueueStore

log = get_logger(__name__)


def new_job_id() -> str:
    return secrets.token_hex(12)


def project_dedupe_key(job_type: JobType, project_id: str) -> str:
    return f"{job_type.value}:{project_id}"


async def enqueue_job(
    engine: AsyncEngine,
    *,
    job_type: JobType | str,
    payload: Any,
    project_id: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    delay_ms: int = 0,
    dedupe_key: str | None = None,
    now: datetime | None = None,
) -> str:
    """Validate ``payload`` and insert a queued job; returns the job id.

    With a ``dedupe_key``, an existing non-terminal job holding the same key is
    returned instead of inserting a duplicate.
    """

    job_type = parse_job_type(job_type)
    model = validate_payload(job_type, payload)
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    project_id = project_id or getattr(model, "project_id", None)
    dedupe_key = (dedupe_key or "").strip() or None
    now_dt = now or utc_now()
    now_s = iso_utc_ms(now_dt)
    payload_json = dump_payload(model)

    Session = create_sessionmaker(engine)

    async def _find_active() -> str | None:
        async with Session() as session:
            existing = await session.execute(
                sa.select(QueueJobRow.id).where(
                    QueueJobRow.dedupe_key == dedupe_key,
                    QueueJobRow.dedupe_active == DEDUPE_ACTIVE,
                )
            )
            row = existing.first()
            return str(row[0]) if row is not None else None

    async def _op() -> tuple[str, bool]:
        if dedupe_key is not None:
            existing_id = await _find_active()
            if existing_id is not None:
                return existing_id, False

        job_id = new_job_id()
        async with Session() as session:
            session.add(
                QueueJobRow(
                    id=job_id,
                    type=job_type.value,
                    state="queued",
                    project_id=project_id,
                    payload_json=payload_json,
                    attempts=0,
                    max_attempts=int(max_attempts),
                    available_at=iso_after_ms(now_dt, delay_ms),
                    dedupe_key=dedupe_key,
                    dedupe_active=DEDUPE_ACTIVE if dedupe_key else None,
                    created_at=now_s,
                    updated_at=now_s,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing_id = await _find_active() if dedupe_key is not None else None
                if existing_id is None:
                    raise
                return existing_id, False
        return job_id, True

    job_id, created = await with_sqlite_busy_retry(_op)
    if created:
        JOBS_ENQUEUED_TOTAL.labels(type=job_type.value).inc()
        log.info("job_enqueued job_id=%s type=%s project_id=%s", job_id, job_type.value, project_id)
    else:
        log.info("job_enqueue_deduped job_id=%s type=%s dedupe_key=%s", job_id, job_type.value, dedupe_key)
    return job_id


async def _enqueue_project_step(
    engine: AsyncEngine,
    job_type: JobType,
    payload: dict[str, Any],
    **kwargs: Any,
) -> str:
    return await enqueue_job(
        engine,
        job_type=job_type,
        payload=payload,
        dedupe_key=project_dedupe_key(job_type, str(payload["projectId"])),
        **kwargs,
    )


async def enqueue_project_create(
    engine: AsyncEngine,
    *,
    project_id: str,
    owner_user_id: str,
    prompt: str,
    model: str | None = None,
    images: list[dict[str, Any]] | None = None,
) -> str:
    payload = {
        "projectId": project_id,
        "ownerUserId": owner_user_id,
        "prompt": prompt,
        "model": model,
        "images": images or [],
    }
    return await _enqueue_project_step(engine, JobType.PROJECT_CREATE, payload)


async def enqueue_docker_compose_up(engine: AsyncEngine, *, project_id: str, reason: str = "bootstrap") -> str:
    return await _enqueue_project_step(engine, JobType.DOCKER_COMPOSE_UP, {"projectId": project_id, "reason": reason})


async def enqueue_docker_wait_ready(
    engine: AsyncEngine,
    *,
    project_id: str,
    started_at: int | None = None,
    reschedule_count: int = 0,
) -> str:
    payload = {
        "projectId": project_id,
        "startedAt": int(started_at or epoch_ms()),
        "rescheduleCount": int(reschedule_count),
    }
    return await _enqueue_project_step(engine, JobType.DOCKER_WAIT_READY, payload)


async def enqueue_docker_ensure_running(engine: AsyncEngine, *, project_id: str, reason: str = "user") -> str:
    return await _enqueue_project_step(
        engine,
        JobType.DOCKER_ENSURE_RUNNING,
        {"projectId": project_id, "reason": reason},
    )


async def enqueue_docker_stop(engine: AsyncEngine, *, project_id: str, reason: str = "user") -> str:
    # Pending restarts of this project are dropped before the stop is queued.
    await QueueStore(engine).cancel_jobs_for_project(project_id, types=[JobType.DOCKER_ENSURE_RUNNING.value])
    return await _enqueue_project_step(engine, JobType.DOCKER_STOP, {"projectId": project_id, "reason": reason})


async def enqueue_opencode_session_create(engine: AsyncEngine, *, project_id: str) -> str:
    return await _enqueue_project_step(engine, JobType.OPENCODE_SESSION_CREATE, {"projectId": project_id})


async def enqueue_opencode_send_initial_prompt(engine: AsyncEngine, *, project_id: str) -> str:
    return await _enqueue_project_step(engine, JobType.OPENCODE_SEND_INITIAL_PROMPT, {"projectId": project_id})


async def enqueue_opencode_send_user_prompt(engine: AsyncEngine, *, project_id: str) -> str:
    return await _enqueue_project_step(engine, JobType.OPENCODE_SEND_USER_PROMPT, {"projectId": project_id})


async def enqueue_opencode_wait_idle(engine: AsyncEngine, *, project_id: str, started_at: int | None = None) -> str:
    payload = {"projectId": project_id, "startedAt": int(started_at or epoch_ms())}
    return await _enqueue_project_step(engine, JobType.OPENCODE_WAIT_IDLE, payload)


async def enqueue_production_build(engine: AsyncEngine, *, project_id: str) -> str:
    return await _enqueue_project_step(engine, JobType.PRODUCTION_BUILD, {"projectId": project_id})


async def enqueue_production_start(engine: AsyncEngine, *, project_id: str, production_hash: str) -> str:
    return await _enqueue_project_step(
        engine,
        JobType.PRODUCTION_START,
        {"projectId": project_id, "productionHash": production_hash},
    )


async def enqueue_production_wait_ready(
    engine: AsyncEngine,
    *,
    project_id: str,
    production_port: int,
    production_hash: str,
    started_at: int | None = None,
    reschedule_count: int = 0,
) -> str:
    payload = {
        "projectId": project_id,
        "productionPort": int(production_port),
        "productionHash": production_hash,
        "startedAt": int(started_at or epoch_ms()),
        "rescheduleCount": int(reschedule_count),
    }
    return await _enqueue_project_step(engine, JobType.PRODUCTION_WAIT_READY, payload)


async def enqueue_production_stop(engine: AsyncEngine, *, project_id: str) -> str:
    return await _enqueue_project_step(engine, JobType.PRODUCTION_STOP, {"projectId": project_id})


async def enqueue_project_delete(engine: AsyncEngine, *, project_id: str, requested_by_user_id: str) -> str:
    return await _enqueue_project_step(
        engine,
        JobType.PROJECT_DELETE,
        {"projectId": project_id, "requestedByUserId": requested_by_user_id},
    )


async def enqueue_delete_all_projects_for_user(engine: AsyncEngine, *, user_id: str) -> str:
    return await enqueue_job(
        engine,
        job_type=JobType.PROJECTS_DELETE_ALL_FOR_USER,
        payload={"userId": user_id},
        dedupe_key=f"{JobType.PROJECTS_DELETE_ALL_FOR_USER.value}:{user_id}",
    )
