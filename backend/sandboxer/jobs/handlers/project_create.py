from __future__ import annotations

import re

from sandboxer.core.logging import get_logger
from sandboxer.jobs.context import JobContext
from sandboxer.jobs.dispatch import JobHandler
from sandboxer.jobs.enqueue import enqueue_docker_compose_up
from sandboxer.jobs.errors import JobPermanentError
from sandboxer.jobs.handlers.deps import HandlerDeps
from sandboxer.jobs.model import JobOutcome
from sandboxer.jobs.payloads import JobType, ProjectCreatePayload
from sandboxer.projects import files, repo

log = get_logger(__name__)

MAX_NAME_LEN = 48
_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def project_name_from_prompt(prompt: str) -> str:
    words = " ".join((prompt or "").split())
    if len(words) <= MAX_NAME_LEN:
        return words or "Untitled project"
    cut = words[:MAX_NAME_LEN].rsplit(" ", 1)[0]
    return cut or words[:MAX_NAME_LEN]


def slugify(name: str, project_id: str) -> str:
    base = _SLUG_STRIP_RE.sub("-", (name or "").lower()).strip("-")[:40].strip("-") or "project"
    return f"{base}-{project_id[:6].lower()}"


def build_project_create_handler(deps: HandlerDeps) -> JobHandler:
    engine = deps.engine
    settings = deps.settings
    encryptor = deps.encryptor()

    async def _handler(ctx: JobContext) -> JobOutcome | None:
        payload: ProjectCreatePayload = ctx.payload(ProjectCreatePayload)
        project_id = payload.project_id

        existing = await repo.get_project(engine, project_id)
        if existing is not None and existing.status == "deleting":
            log.info("project_create_skip_deleting project_id=%s", project_id)
            return None

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        api_key = await repo.get_user_provider_key(engine, payload.owner_user_id, encryptor=encryptor)
        if not api_key:
            raise JobPermanentError("user has no provider API key configured")

        if existing is not None:
            dev_port, opencode_port = int(existing.dev_port), int(existing.opencode_port)
        else:
            dev_port, opencode_port = await repo.allocate_ports(engine, 2)

        model = payload.model
        if not model:
            user_settings = await repo.get_user_settings(engine, payload.owner_user_id)
            model = user_settings.default_model if user_settings is not None else None

        target = files.project_path(settings.projects_dir, project_id)
        try:
            files.copy_template(settings.template_dir, target)
        except FileNotFoundError as exc:
            raise JobPermanentError(str(exc)) from exc

        files.write_project_env(
            target,
            dev_port=dev_port,
            opencode_port=opencode_port,
            provider_api_key=api_key,
            sandbox_network=settings.sandbox_network,
        )
        if model:
            files.write_opencode_model(target, model)
        files.write_images(target, [img.model_dump(by_alias=True) for img in payload.images])

        if await ctx.cancel_requested():
            return JobOutcome.cancelled()

        name = project_name_from_prompt(payload.prompt)
        await repo.insert_project(
            engine,
            project_id=project_id,
            owner_user_id=payload.owner_user_id,
            name=name,
            slug=slugify(name, project_id),
            prompt=payload.prompt,
            model=model,
            dev_port=dev_port,
            opencode_port=opencode_port,
            path_on_disk=str(target),
            setup_phase="starting_docker",
        )
        log.info("project_created project_id=%s dev_port=%s opencode_port=%s", project_id, dev_port, opencode_port)

        await enqueue_docker_compose_up(engine, project_id=project_id, reason="bootstrap")
        log.debug("project_next_step project_id=%s type=%s", project_id, JobType.DOCKER_COMPOSE_UP.value)
        return JobOutcome.success()

    return _handler
