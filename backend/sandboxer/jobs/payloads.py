from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MAX_IMAGES = 5
MAX_IMAGE_DATA_URL_LEN = 8 * 1024 * 1024


class JobType(str, Enum):
    PROJECT_CREATE = "project.create"
    DOCKER_COMPOSE_UP = "docker.composeUp"
    DOCKER_WAIT_READY = "docker.waitReady"
    DOCKER_ENSURE_RUNNING = "docker.ensureRunning"
    DOCKER_STOP = "docker.stop"
    OPENCODE_SESSION_CREATE = "opencode.sessionCreate"
    OPENCODE_SEND_INITIAL_PROMPT = "opencode.sendInitialPrompt"
    OPENCODE_SEND_USER_PROMPT = "opencode.sendUserPrompt"
    OPENCODE_WAIT_IDLE = "opencode.waitIdle"
    PRODUCTION_BUILD = "production.build"
    PRODUCTION_START = "production.start"
    PRODUCTION_WAIT_READY = "production.waitReady"
    PRODUCTION_STOP = "production.stop"
    PROJECT_DELETE = "project.delete"
    PROJECTS_DELETE_ALL_FOR_USER = "projects.deleteAllForUser"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid", frozen=True)


class ProjectPayload(_Payload):
    project_id: str = Field(min_length=1, max_length=64)


class ProjectImage(_Payload):
    filename: str = Field(min_length=1, max_length=255)
    mime: str = Field(pattern=r"^image/[a-z0-9.+\-]+$")
    data_url: str = Field(min_length=1, max_length=MAX_IMAGE_DATA_URL_LEN)


class ProjectCreatePayload(ProjectPayload):
    owner_user_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1, max_length=100_000)
    model: str | None = None
    images: list[ProjectImage] = Field(default_factory=list, max_length=MAX_IMAGES)


class DockerComposeUpPayload(ProjectPayload):
    reason: Literal["bootstrap", "user"] = "bootstrap"


class DockerWaitReadyPayload(ProjectPayload):
    started_at: int = Field(gt=0)
    reschedule_count: int = Field(default=0, ge=0)


class DockerEnsureRunningPayload(ProjectPayload):
    reason: Literal["presence", "user"] = "user"


class DockerStopPayload(ProjectPayload):
    reason: Literal["idle", "user"] = "user"


class OpencodeWaitIdlePayload(ProjectPayload):
    started_at: int = Field(gt=0)


class ProductionStartPayload(ProjectPayload):
    production_hash: str = Field(pattern=r"^[0-9a-f]{8}$")


class ProductionWaitReadyPayload(ProjectPayload):
    production_port: int = Field(ge=1, le=65535)
    production_hash: str = Field(pattern=r"^[0-9a-f]{8}$")
    started_at: int = Field(gt=0)
    reschedule_count: int = Field(default=0, ge=0)


class ProjectDeletePayload(ProjectPayload):
    requested_by_user_id: str = Field(min_length=1)


class DeleteAllForUserPayload(_Payload):
    user_id: str = Field(min_length=1)


PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.PROJECT_CREATE: ProjectCreatePayload,
    JobType.DOCKER_COMPOSE_UP: DockerComposeUpPayload,
    JobType.DOCKER_WAIT_READY: DockerWaitReadyPayload,
    JobType.DOCKER_ENSURE_RUNNING: DockerEnsureRunningPayload,
    JobType.DOCKER_STOP: DockerStopPayload,
    JobType.OPENCODE_SESSION_CREATE: ProjectPayload,
    JobType.OPENCODE_SEND_INITIAL_PROMPT: ProjectPayload,
    JobType.OPENCODE_SEND_USER_PROMPT: ProjectPayload,
    JobType.OPENCODE_WAIT_IDLE: OpencodeWaitIdlePayload,
    JobType.PRODUCTION_BUILD: ProjectPayload,
    JobType.PRODUCTION_START: ProductionStartPayload,
    JobType.PRODUCTION_WAIT_READY: ProductionWaitReadyPayload,
    JobType.PRODUCTION_STOP: ProjectPayload,
    JobType.PROJECT_DELETE: ProjectDeletePayload,
    JobType.PROJECTS_DELETE_ALL_FOR_USER: DeleteAllForUserPayload,
}


def parse_job_type(value: JobType | str) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(str(value or "").strip())
    except ValueError as exc:
        raise ValueError(f"Unknown job type: {value or '<missing>'}") from exc


def validate_payload(job_type: JobType | str, data: Any) -> _Payload:
    """Validate raw payload data (dict, model or JSON text) for ``job_type``.

    Raises ``pydantic.ValidationError`` for malformed payloads and
    ``ValueError`` for unknown job types.
    """

    model = PAYLOAD_MODELS[parse_job_type(job_type)]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    if isinstance(data, (str, bytes)):
        return model.model_validate_json(data)
    return model.model_validate(data)


def dump_payload(payload: _Payload) -> str:
    return json.dumps(payload.model_dump(by_alias=True, mode="json"), ensure_ascii=False, separators=(",", ":"))
