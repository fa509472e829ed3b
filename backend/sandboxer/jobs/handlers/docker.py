from __future__ import annotations

from sandboxer.core.logging import get_logger
from sandboxer.core.time import epoch_ms
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobHandler
from sandboxer.jobs.enqueue import (
    enqueue_docker_wait_ready,
    enqueue_opencode_session_create,
    enqueue_opencode_wait_idle,
)
from sandboxer.jobs.handlers.deps import HandlerDeps, project_dir
from sandboxer.jobs.model import JobOutcome
from sandboxer.jobs.payloads import (
    DockerComposeUpPayload,
    DockerEnsureRunningPayload,
    DockerStopPayload,
    DockerWaitReadyPayload,
    JobType,
)
from sandboxer.projects import repo
from sandboxer.services.containers import project_volume_names
from sandboxer.services.readiness import DEV_SERVICES, describe_group, group_is_ready

log = get_logger(__name__)

WAIT_READY_TIMEOUT_MS = 300_000
WAIT_READY_POLL_MS = 1_000


async def _provision(deps: HandlerDeps, project_id: str) -> None:
    # failures are logged by the runtime; the `up` result decides the outcome
    await deps.runtime.ensure_network(deps.settings.sandbox_network)
    for volume in project_volume_names(project_id):
        await deps.runtime.ensure_volume(volume)


async def _start_group(
    deps: HandlerDeps,
    ctx: JobContext,
    project_id: str,
    *,
    job_type: JobType,
    setup_phase: str | None = None,
) -> JobOutcome:
    engine = deps.engine
    project = await repo.get_project_or_skip(engine, project_id, job_type=job_type.value)
    if project is None:
        return JobOutcome.success()

    if setup_phase is not None:
        await repo.update_project(engine, project_id, status="starting", setup_phase=setup_phase)
    else:
        await repo.update_project(engine, project_id, status="starting")
    if await ctx.cancel_requested():
        return JobOutcome.cancelled()

    await _provision(deps, project_id)
    result = await deps.runtime.up(project_id, project_dir(project))
    if not result.success:
        await repo.update_project(engine, project_id, status="error")
        return JobOutcome.failure(f"compose up failed: {result.error_summary}")

    log.info("docker_group_started project_id=%s type=%s", project_id, job_type.value)
    await enqueue_docker_wait_ready(engine, project_id=project_id, started_at=epoch_ms(ctx.now()))
    return JobOutcome.success()


def build_docker_compose_up_handler(deps: HandlerDeps) -> JobHandler:
    async def _handler(ctx: JobContext) -> JobOutcome:
        payload: DockerComposeUpPayload = ctx.payload(DockerComposeUpPayload)
        return await _start_group(
            deps,
            ctx,
            payload.project_id,
            job_type=JobType.DOCKER_COMPOSE_UP,
            setup_phase="starting_docker" if payload.reason == "bootstrap" else None,
        )

    return _handler


def build_docker_ensure_running_handler(deps: HandlerDeps) -> JobHandler:
    async def _handler(ctx: JobContext) -> JobOutcome:
        payload: DockerEnsureRunningPayload = ctx.payload(DockerEnsureRunningPayload)
        log.info("docker_ensure_running project_id=%s reason=%s", payload.project_id, payload.reason)
        return await _start_group(deps, ctx, payload.project_id, job_type=JobType.DOCKER_ENSURE_RUNNING)

    return _handler


def build_docker_wait_ready_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: DockerWaitReadyPayload = ctx.payload(DockerWaitReadyPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.DOCKER_WAIT_READY.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        elapsed = epoch_ms(ctx.now()) - payload.started_at
        if elapsed > WAIT_READY_TIMEOUT_MS:
            message = f"timed out waiting for services to be ready ({elapsed}ms)"
            await repo.update_project(engine, project_id, status="error", setup_phase="failed", setup_error=message)
            return JobOutcome.failure(message, permanent=True)

        statuses = await deps.runtime.status(project_id, project_dir(project))
        if not group_is_ready(statuses, DEV_SERVICES):
            log.debug("docker_not_ready project_id=%s elapsed_ms=%s group=%s", project_id, elapsed, describe_group(statuses))
            return JobOutcome.reschedule(WAIT_READY_POLL_MS)

        await repo.update_project(engine, project_id, status="running")
        log.info("docker_group_ready project_id=%s elapsed_ms=%s", project_id, elapsed)

        if not project.user_prompt_sent:
            await repo.update_project(engine, project_id, setup_phase="initializing_agent")
            await enqueue_opencode_session_create(engine, project_id=project_id)
        elif not project.user_prompt_completed:
            await enqueue_opencode_wait_idle(engine, project_id=project_id, started_at=epoch_ms(ctx.now()))
        else:
            await repo.update_project(engine, project_id, setup_phase="completed")
        return JobOutcome.success()

    return _handler


def build_docker_stop_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: DockerStopPayload = ctx.payload(DockerStopPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.DOCKER_STOP.value)
        if project is None:
            return None

        await repo.update_project(engine, project_id, status="stopping")
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        result = await deps.runtime.down(project_id, project_dir(project))
        if not result.success:
            await repo.update_project(engine, project_id, status="error")
            return JobOutcome.failure(f"compose down failed: {result.error_summary}")

        await repo.update_project(engine, project_id, status="stopped")
        log.info("docker_group_stopped project_id=%s reason=%s", project_id, payload.reason)
        return None

    return _handler
