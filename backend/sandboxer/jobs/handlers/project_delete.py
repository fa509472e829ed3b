"""Project teardown.

Deletion runs in order: mark ``deleting`` so other handlers skip the project,
cancel its other jobs, take down containers and volumes, remove files, then
hard-delete the row. Everything before the row delete is best-effort; the row
delete must succeed, so a failure there fails the job and it is retried.
"""

from __future__ import annotations

from sandboxer.core.logging import get_logger
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobHandler
from sandboxer.jobs.enqueue import enqueue_project_delete
from sandboxer.jobs.handlers.deps import HandlerDeps, project_dir
from sandboxer.jobs.model import JobOutcome
from sandboxer.jobs.payloads import DeleteAllForUserPayload, ProjectDeletePayload
from sandboxer.projects import files, repo

log = get_logger(__name__)


async def _stop_containers(deps: HandlerDeps, project) -> None:
    project_id = project.id
    result = await deps.runtime.down_with_volumes(project_id, project_dir(project))
    if not result.success:
        log.warning("project_delete_down_failed project_id=%s err=%s", project_id, result.error_summary)

    for production_hash in files.list_production_hashes(deps.settings.production_dir, project_id):
        path = files.production_path(deps.settings.production_dir, project_id, production_hash)
        down = await deps.runtime.down_production(project_id, path, production_hash=production_hash)
        if not down.success:
            log.warning("project_delete_production_down_failed project_id=%s hash=%s", project_id, production_hash)


def build_project_delete_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectDeletePayload = ctx.payload(ProjectDeletePayload)
        project_id = payload.project_id
        project = await repo.get_project(engine, project_id)
        if project is None:
            log.info("project_delete_missing project_id=%s", project_id)
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        await repo.update_project(engine, project_id, status="deleting")
        cancelled = await ctx.store.cancel_jobs_for_project(project_id, exclude_job_id=ctx.job_id, now=ctx.now())
        log.info(
            "project_delete_started project_id=%s by=%s jobs_cancelled=%s jobs_cancel_requested=%s",
            project_id,
            payload.requested_by_user_id,
            cancelled.cancelled,
            cancelled.cancel_requested,
        )

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()
        await _stop_containers(deps, project)

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()
        files.remove_tree(project_dir(project))
        files.remove_tree(files.production_root(settings.production_dir, project_id))

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()
        await repo.hard_delete_project(engine, project_id)
        log.info("project_deleted project_id=%s", project_id)
        return None

    return _handler


def build_delete_all_projects_for_user_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: DeleteAllForUserPayload = ctx.payload(DeleteAllForUserPayload)
        projects = await repo.list_projects_for_user(engine, payload.user_id)
        for project in projects:
            if await ctx.cancel_requested():
                return JobOutcome.cancelled()
            await enqueue_project_delete(engine, project_id=project.id, requested_by_user_id=payload.user_id)
        log.info("projects_delete_all_enqueued user_id=%s count=%s", payload.user_id, len(projects))
        return None

    return _handler
