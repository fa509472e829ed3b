from __future__ import annotations

from typing import Any

from sandboxer.core.logging import get_logger
from sandboxer.core.time import epoch_ms
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobHandler
from sandboxer.jobs.enqueue import (
    enqueue_opencode_send_initial_prompt,
    enqueue_opencode_send_user_prompt,
    enqueue_opencode_wait_idle,
)
from sandboxer.jobs.errors import JobPermanentError
from sandboxer.jobs.handlers.deps import HandlerDeps, project_dir
from sandboxer.jobs.model import JobOutcome
from sandboxer.jobs.payloads import JobType, OpencodeWaitIdlePayload, ProjectPayload
from sandboxer.projects import files, repo
from sandboxer.services.opencode import (
    DEFAULT_MODEL,
    ModelRef,
    find_completed_reply,
    find_last_user_message,
    parse_model_string,
)

log = get_logger(__name__)

USER_MESSAGE_POLL_MS = 1_000
WAIT_IDLE_POLL_MS = 2_000
WAIT_IDLE_TIMEOUT_MS = 600_000


def resolve_model(project_model: str | None, config: dict[str, Any]) -> ModelRef:
    """Model for a project: ``opencode.json`` wins, then the project row, then the default."""

    for candidate in (config.get("model"), project_model, DEFAULT_MODEL):
        if isinstance(candidate, str):
            ref = parse_model_string(candidate)
            if ref is not None:
                return ref
    raise JobPermanentError("no usable model configured")


def build_prompt_parts(prompt: str, images: list[dict[str, Any]]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for image in images:
        url = image.get("dataUrl")
        if not url:
            continue
        parts.append(
            {
                "type": "file",
                "mime": image.get("mime") or "application/octet-stream",
                "filename": image.get("filename") or "image",
                "url": url,
            }
        )
    return parts


def _require_session(project) -> str:
    if not project.bootstrap_session_id:
        raise JobPermanentError(f"project {project.id} has no agent session")
    return str(project.bootstrap_session_id)


def build_opencode_session_create_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectPayload = ctx.payload(ProjectPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.OPENCODE_SESSION_CREATE.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        session_id = project.bootstrap_session_id
        if not session_id:
            session_id = await deps.agent_for(project).create_session(title=project.name)
            await repo.update_project(engine, project_id, bootstrap_session_id=session_id)
            log.info("opencode_session_created project_id=%s session_id=%s", project_id, session_id)
        else:
            log.info("opencode_session_reused project_id=%s session_id=%s", project_id, session_id)

        await enqueue_opencode_send_initial_prompt(engine, project_id=project_id)
        return None

    return _handler


def build_opencode_send_initial_prompt_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectPayload = ctx.payload(ProjectPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.OPENCODE_SEND_INITIAL_PROMPT.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        if not project.initial_prompt_sent:
            session_id = _require_session(project)
            model = resolve_model(project.model, files.read_opencode_config(project_dir(project)))
            await deps.agent_for(project).init_session(session_id, model=model)
            await repo.update_project(engine, project_id, initial_prompt_sent=True, setup_phase="sending_prompts")
            log.info("opencode_initial_prompt_sent project_id=%s model=%s", project_id, model.qualified)

        await enqueue_opencode_send_user_prompt(engine, project_id=project_id)
        return None

    return _handler


def build_opencode_send_user_prompt_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectPayload = ctx.payload(ProjectPayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.OPENCODE_SEND_USER_PROMPT.value)
        if project is None:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        session_id = _require_session(project)
        agent = deps.agent_for(project)
        path = project_dir(project)

        if not project.user_prompt_sent:
            images = files.read_images(path)
            model = resolve_model(project.model, files.read_opencode_config(path))
            await agent.prompt_async(session_id, parts=build_prompt_parts(project.prompt, images), model=model)
            await repo.update_project(engine, project_id, user_prompt_sent=True)
            files.delete_images(path)
            log.info("opencode_user_prompt_sent project_id=%s images=%s", project_id, len(images))

        message_id = project.user_prompt_message_id
        if not message_id:
            message_id = find_last_user_message(await agent.list_messages(session_id))
            if not message_id:
                log.debug("opencode_user_message_pending project_id=%s", project_id)
                return JobOutcome.reschedule(USER_MESSAGE_POLL_MS)

        await repo.update_project(
            engine,
            project_id,
            user_prompt_message_id=message_id,
            setup_phase="waiting_completion",
        )
        await enqueue_opencode_wait_idle(engine, project_id=project_id, started_at=epoch_ms(ctx.now()))
        return None

    return _handler


def build_opencode_wait_idle_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: OpencodeWaitIdlePayload = ctx.payload(OpencodeWaitIdlePayload)
        project_id = payload.project_id
        project = await repo.get_project_or_skip(engine, project_id, job_type=JobType.OPENCODE_WAIT_IDLE.value)
        if project is None:
            return None
        if project.user_prompt_completed:
            return None
        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        elapsed = epoch_ms(ctx.now()) - payload.started_at
        if elapsed > WAIT_IDLE_TIMEOUT_MS:
            log.warning("opencode_wait_idle_timeout project_id=%s elapsed_ms=%s", project_id, elapsed)
            await repo.update_project(engine, project_id, user_prompt_completed=True, setup_phase="completed")
            return None

        session_id = _require_session(project)
        reply = find_completed_reply(
            await deps.agent_for(project).list_messages(session_id),
            project.user_prompt_message_id or "",
        )
        if reply is None:
            return JobOutcome.reschedule(WAIT_IDLE_POLL_MS)

        info = reply.get("info") if isinstance(reply.get("info"), dict) else reply
        if info.get("error"):
            log.warning("opencode_reply_error project_id=%s err=%s", project_id, info.get("error"))
        await repo.update_project(engine, project_id, user_prompt_completed=True, setup_phase="completed")
        log.info("opencode_prompt_completed project_id=%s elapsed_ms=%s", project_id, elapsed)
        return None

    return _handler
