from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field, ValidationError

from sandboxer.api.admin.deps import admin_actor, get_admin_claims
from sandboxer.core.crypto import FieldEncryptor, provider_key_hint
from sandboxer.core.errors import ApiError, ErrorCode
from sandboxer.core.request_id import get_or_create_request_id
from sandboxer.db.models.projects import ProjectRow
from sandboxer.jobs.enqueue import (
    enqueue_delete_all_projects_for_user,
    enqueue_docker_ensure_running,
    enqueue_docker_stop,
    enqueue_production_build,
    enqueue_production_stop,
    enqueue_project_create,
    enqueue_project_delete,
)
from sandboxer.projects import repo

router = APIRouter()


class ImageBody(BaseModel):
    filename: str
    mime: str
    data_url: str


class CreateProjectBody(BaseModel):
    owner_user_id: str = Field(min_length=1, max_length=200)
    prompt: str = Field(min_length=1)
    model: str | None = None
    images: list[ImageBody] = Field(default_factory=list)


class UserSettingsBody(BaseModel):
    provider_api_key: str | None = None
    default_model: str | None = None


def project_to_dict(row: ProjectRow) -> dict[str, Any]:
    return {
        "id": row.id,
        "owner_user_id": row.owner_user_id,
        "name": row.name,
        "slug": row.slug,
        "model": row.model,
        "status": row.status,
        "setup_phase": row.setup_phase,
        "setup_error": row.setup_error,
        "dev_port": int(row.dev_port),
        "opencode_port": int(row.opencode_port),
        "user_prompt_sent": bool(row.user_prompt_sent),
        "user_prompt_completed": bool(row.user_prompt_completed),
        "production_status": row.production_status,
        "production_url": row.production_url,
        "production_port": row.production_port,
        "production_hash": row.production_hash,
        "production_error": row.production_error,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


async def _load_project(request: Request, project_id: str) -> ProjectRow:
    project = await repo.get_project(request.app.state.engine, project_id)
    if project is None:
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Project not found", status_code=404)
    return project


def _job_response(request: Request, project_id: str, job_id: str) -> dict[str, Any]:
    return {"ok": True, "project_id": project_id, "job_id": job_id, "request_id": get_or_create_request_id(request)}


@router.get("/projects")
async def list_projects(
    request: Request,
    limit: int = 100,
    offset: int = 0,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    if limit < 1 or limit > 500 or offset < 0:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported paging", status_code=400)
    rows = await repo.list_projects(request.app.state.engine, limit=limit, offset=offset)
    return {"ok": True, "items": [project_to_dict(r) for r in rows], "request_id": get_or_create_request_id(request)}


@router.get("/projects/{project_id}")
async def get_project(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    project = await _load_project(request, project_id)
    return {"ok": True, "item": project_to_dict(project), "request_id": get_or_create_request_id(request)}


@router.post("/projects")
async def create_project(
    body: CreateProjectBody,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    project_id = uuid.uuid4().hex
    try:
        job_id = await enqueue_project_create(
            request.app.state.engine,
            project_id=project_id,
            owner_user_id=body.owner_user_id.strip(),
            prompt=body.prompt,
            model=(body.model or "").strip() or None,
            images=[{"filename": i.filename, "mime": i.mime, "dataUrl": i.data_url} for i in body.images],
        )
    except ValidationError as exc:
        raise ApiError(
            code=ErrorCode.INVALID_PAYLOAD,
            message="Invalid project payload",
            status_code=400,
            details={"errors": exc.error_count()},
        ) from exc
    return _job_response(request, project_id, job_id)


@router.post("/projects/{project_id}/start")
async def start_project(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    await _load_project(request, project_id)
    job_id = await enqueue_docker_ensure_running(request.app.state.engine, project_id=project_id, reason="user")
    return _job_response(request, project_id, job_id)


@router.post("/projects/{project_id}/stop")
async def stop_project(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    await _load_project(request, project_id)
    job_id = await enqueue_docker_stop(request.app.state.engine, project_id=project_id, reason="user")
    return _job_response(request, project_id, job_id)


@router.post("/projects/{project_id}/deploy")
async def deploy_project(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    project = await _load_project(request, project_id)
    if project.status == "deleting":
        raise ApiError(code=ErrorCode.CONFLICT, message="Project is being deleted", status_code=409)
    job_id = await enqueue_production_build(request.app.state.engine, project_id=project_id)
    await repo.update_project(request.app.state.engine, project_id, production_status="queued")
    return _job_response(request, project_id, job_id)


@router.post("/projects/{project_id}/production/stop")
async def stop_production(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    await _load_project(request, project_id)
    job_id = await enqueue_production_stop(request.app.state.engine, project_id=project_id)
    return _job_response(request, project_id, job_id)


@router.delete("/projects/{project_id}")
async def delete_project(
    project_id: str,
    request: Request,
    claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    await _load_project(request, project_id)
    job_id = await enqueue_project_delete(
        request.app.state.engine,
        project_id=project_id,
        requested_by_user_id=admin_actor(claims) or "admin",
    )
    return _job_response(request, project_id, job_id)


@router.post("/users/{user_id}/projects/delete-all")
async def delete_all_projects_for_user(
    user_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    job_id = await enqueue_delete_all_projects_for_user(request.app.state.engine, user_id=user_id)
    return {"ok": True, "user_id": user_id, "job_id": job_id, "request_id": get_or_create_request_id(request)}


@router.put("/users/{user_id}/settings")
async def put_user_settings(
    user_id: str,
    body: UserSettingsBody,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    engine = request.app.state.engine
    encryptor = FieldEncryptor.from_key(request.app.state.settings.field_encryption_key)
    try:
        await repo.set_user_settings(
            engine,
            user_id,
            encryptor=encryptor,
            provider_api_key=body.provider_api_key,
            default_model=body.default_model,
        )
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message=str(exc), status_code=400) from exc

    row = await repo.get_user_settings(engine, user_id)
    provider_key = encryptor.unseal(row.provider_api_key_enc) if row is not None else None
    return {
        "ok": True,
        "user_id": user_id,
        "has_provider_api_key": provider_key is not None,
        "provider_api_key_hint": provider_key_hint(provider_key),
        "default_model": row.default_model if row is not None else None,
        "request_id": get_or_create_request_id(request),
    }
