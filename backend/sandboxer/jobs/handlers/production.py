"""Production deployment steps: build, start a versioned group, wait, stop.

Each deployed version lives in ``production/{projectId}/{hash}`` and runs as
its own compose project, so a new version can come up beside the old one
before the old one is taken down.
"""

from __future__ import annotations

import shlex

from sandboxer.core.logging import get_logger
from sandboxer.core.redact import redact_text
from sandboxer.core.time import epoch_ms, iso_utc_ms
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobHandler
from sandboxer.jobs.enqueue import enqueue_production_start, enqueue_production_wait_ready
from sandboxer.jobs.errors import JobPermanentError
from sandboxer.jobs.handlers.deps import HandlerDeps, project_dir
from sandboxer.jobs.model import JobOutcome
from sandboxer.jobs.payloads import JobType, ProductionStartPayload, ProductionWaitReadyPayload, ProjectPayload
from sandboxer.projects import files, repo
from sandboxer.services.readiness import PRODUCTION_SERVICES, describe_group, group_is_ready

log = get_logger(__name__)

BUILD_TIMEOUT_S = 300.0
WAIT_READY_TIMEOUT_MS = 300_000
WAIT_READY_POLL_MS = 1_000
KEEP_VERSIONS = 2


def build_production_build_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectPayload = ctx.payload(ProjectPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.PRODUCTION_BUILD.value)
        if project is None:
            return None

        await repo.update_project(engine, project_id, production_status="building", production_error=None)
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        source = project_dir(project)
        args = shlex.split(settings.production_build_command)
        if not args:
            raise JobPermanentError("production build command is empty")

        log.info("production_build_started project_id=%s cmd=%s", project_id, settings.production_build_command)
        result = await deps.run_build(args, cwd=source, timeout_s=BUILD_TIMEOUT_S)
        if not result.success:
            message = f"build failed: {result.error_summary}"
            await repo.update_project(engine, project_id, production_status="failed", production_error=message)
            return JobOutcome.failure(message)

        try:
            production_hash = files.hash_dist_folder(source / files.DIST_DIRNAME)
        except FileNotFoundError as exc:
            message = redact_text(str(exc))
            await repo.update_project(engine, project_id, production_status="failed", production_error=message)
            raise JobPermanentError(message) from exc

        dest = files.production_path(settings.production_dir, project_id, production_hash)
        files.copy_production_artifacts(source, dest)
        log.info("production_build_finished project_id=%s hash=%s", project_id, production_hash)

        await enqueue_production_start(engine, project_id=project_id, production_hash=production_hash)
        return None

    return _handler


def build_production_start_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProductionStartPayload = ctx.payload(ProductionStartPayload)
        project_id = payload.project_id
        production_hash = payload.production_hash
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.PRODUCTION_START.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        path = files.production_path(settings.production_dir, project_id, production_hash)
        if not path.is_dir():
            message = f"production artifacts missing for version {production_hash}"
            await repo.update_project(engine, project_id, production_status="failed", production_error=message)
            raise JobPermanentError(message)

        port = project.production_port
        if not port:
            (port,) = await repo.allocate_ports(engine, 1)
            await repo.update_project(engine, project_id, production_port=port)

        previous = project.production_hash
        if previous and previous != production_hash:
            old_path = files.production_path(settings.production_dir, project_id, previous)
            down = await deps.runtime.down_production(project_id, old_path, production_hash=previous)
            if not down.success:
                log.warning("production_previous_stop_failed project_id=%s hash=%s", project_id, previous)

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        result = await deps.runtime.up_production(project_id, path, port=int(port), production_hash=production_hash)
        if not result.success:
            message = f"production up failed: {result.error_summary}"
            await repo.update_project(engine, project_id, production_status="failed", production_error=message)
            return JobOutcome.failure(message)

        now = ctx.now()
        await repo.update_project(
            engine,
            project_id,
            production_hash=production_hash,
            production_port=int(port),
            production_started_at=iso_utc_ms(now),
        )
        log.info("production_started project_id=%s hash=%s port=%s", project_id, production_hash, port)

        await enqueue_production_wait_ready(
            engine,
            project_id=project_id,
            production_port=int(port),
            production_hash=production_hash,
            started_at=epoch_ms(now),
        )
        files.cleanup_old_production_versions(
            settings.production_dir,
            project_id,
            current_hash=production_hash,
            keep=KEEP_VERSIONS,
        )
        return None

    return _handler


def build_production_wait_ready_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProductionWaitReadyPayload = ctx.payload(ProductionWaitReadyPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.PRODUCTION_WAIT_READY.value)
        if project is None:
            return None
        if project.production_hash and project.production_hash != payload.production_hash:
            log.info("production_wait_superseded project_id=%s hash=%s", project_id, payload.production_hash)
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        elapsed = epoch_ms(ctx.now()) - payload.started_at
        if elapsed > WAIT_READY_TIMEOUT_MS:
            message = f"timed out waiting for production to be ready ({elapsed}ms)"
            await repo.update_project(engine, project_id, production_status="failed", production_error=message)
            return JobOutcome.failure(message, permanent=True)

        path = files.production_path(settings.production_dir, project_id, payload.production_hash)
        statuses = await deps.runtime.status_production(project_id, path, production_hash=payload.production_hash)
        if not group_is_ready(statuses, PRODUCTION_SERVICES):
            log.debug("production_not_ready project_id=%s elapsed_ms=%s group=%s", project_id, elapsed, describe_group(statuses))
            return JobOutcome.reschedule(WAIT_READY_POLL_MS)

        url = f"http://{settings.sandbox_host}:{payload.production_port}"
        await repo.update_project(engine, project_id, production_status="running", production_url=url, production_error=None)
        log.info("production_ready project_id=%s url=%s elapsed_ms=%s", project_id, url, elapsed)
        return None

    return _handler


def build_production_stop_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectPayload = ctx.payload(ProjectPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.PRODUCTION_STOP.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        production_hash = project.production_hash
        if production_hash:
            path = files.production_path(settings.production_dir, project_id, production_hash)
            result = await deps.runtime.down_production(project_id, path, production_hash=production_hash)
            if not result.success:
                return JobOutcome.failure(f"production down failed: {result.error_summary}")

        await repo.update_project(engine, project_id, production_status="stopped", production_url=None)
        log.info("production_stopped project_id=%s hash=%s", project_id, production_hash or "-")
        return None

    return _handler
