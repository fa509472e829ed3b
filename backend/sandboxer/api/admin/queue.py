from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from sandboxer.api.admin.deps import admin_actor, get_admin_claims
from sandboxer.core.errors import ApiError, ErrorCode
from sandboxer.core.job_logs import delete_job_log, read_job_log
from sandboxer.core.request_id import get_or_create_request_id
from sandboxer.jobs import admin as queue_admin
from sandboxer.jobs.errors import JobNotFoundError, JobStateConflictError
from sandboxer.jobs.model import JobState
from sandboxer.jobs.settings import get_queue_settings, set_queue_concurrency, set_queue_paused
from sandboxer.jobs.store import QueueStore

router = APIRouter(prefix="/queue")

_STATES = {s.value for s in JobState}


class DeleteByStateBody(BaseModel):
    state: str


class ConcurrencyBody(BaseModel):
    concurrency: int


def _not_found(exc: JobNotFoundError) -> ApiError:
    return ApiError(code=ErrorCode.NOT_FOUND, message="Job not found", status_code=404, details={"job_id": exc.job_id})


def _conflict(exc: JobStateConflictError, code: ErrorCode = ErrorCode.CONFLICT) -> ApiError:
    return ApiError(code=code, message=str(exc), status_code=409, details={"job_id": exc.job_id, "state": exc.state})


def _check_state(value: str | None) -> str | None:
    value = (value or "").strip().lower() or None
    if value is not None and value not in _STATES:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported state", status_code=400)
    return value


@router.get("/jobs")
async def list_jobs(
    request: Request,
    state: str | None = None,
    type: str | None = None,
    project_id: str | None = None,
    q: str | None = None,
    limit: int = 50,
    offset: int = 0,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    if limit < 1 or limit > queue_admin.MAX_LIST_LIMIT:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported limit", status_code=400)
    if offset < 0:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported offset", status_code=400)

    filters = queue_admin.JobFilters(
        state=_check_state(state),
        type=(type or "").strip() or None,
        project_id=(project_id or "").strip() or None,
        q=q,
    )
    page = await queue_admin.list_jobs(request.app.state.engine, filters, limit=limit, offset=offset)
    return {
        "ok": True,
        "items": page.items,
        "total": page.total,
        "request_id": get_or_create_request_id(request),
    }


@router.get("/counts")
async def job_counts(request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    counts = await queue_admin.count_jobs_by_state(request.app.state.engine)
    return {"ok": True, "counts": counts, "request_id": get_or_create_request_id(request)}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    try:
        item = await queue_admin.get_job(request.app.state.engine, job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    return {"ok": True, "item": item, "request_id": get_or_create_request_id(request)}


@router.get("/jobs/{job_id}/log")
async def get_job_log(
    job_id: str,
    request: Request,
    max_bytes: int = 64 * 1024,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    if max_bytes < 1 or max_bytes > 1024 * 1024:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Unsupported max_bytes", status_code=400)
    try:
        await queue_admin.get_job(request.app.state.engine, job_id)
        text = read_job_log(request.app.state.settings.data_dir, job_id, max_bytes=max_bytes)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message="Invalid job id", status_code=400) from exc
    return {"ok": True, "job_id": job_id, "log": text, "request_id": get_or_create_request_id(request)}


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str, request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    result = await queue_admin.cancel_job(request.app.state.engine, job_id)
    if result.outcome.value == "not_found":
        raise ApiError(code=ErrorCode.NOT_FOUND, message="Job not found", status_code=404, details={"job_id": job_id})
    return {
        "ok": True,
        "job_id": job_id,
        "outcome": result.outcome.value,
        "state": result.state,
        "request_id": get_or_create_request_id(request),
    }


@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    try:
        new_id = await queue_admin.retry_job(request.app.state.engine, job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    except JobStateConflictError as exc:
        raise _conflict(exc, ErrorCode.JOB_NOT_TERMINAL) from exc
    return {"ok": True, "job_id": new_id, "retried_from": job_id, "request_id": get_or_create_request_id(request)}


@router.post("/jobs/{job_id}/run-now")
async def run_now(job_id: str, request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    try:
        await queue_admin.run_now(request.app.state.engine, job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    except JobStateConflictError as exc:
        raise _conflict(exc) from exc
    return {"ok": True, "job_id": job_id, "request_id": get_or_create_request_id(request)}


@router.post("/jobs/{job_id}/force-unlock")
async def force_unlock(
    job_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    try:
        await queue_admin.force_unlock(request.app.state.engine, job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    except JobStateConflictError as exc:
        raise _conflict(exc, ErrorCode.JOB_NOT_RUNNING) from exc
    return {"ok": True, "job_id": job_id, "request_id": get_or_create_request_id(request)}


@router.delete("/jobs/{job_id}")
async def delete_job(job_id: str, request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    try:
        await queue_admin.delete_job(request.app.state.engine, job_id)
    except JobNotFoundError as exc:
        raise _not_found(exc) from exc
    except JobStateConflictError as exc:
        raise _conflict(exc, ErrorCode.JOB_NOT_TERMINAL) from exc
    delete_job_log(request.app.state.settings.data_dir, job_id)
    return {"ok": True, "job_id": job_id, "request_id": get_or_create_request_id(request)}


@router.post("/jobs/delete-by-state")
async def delete_jobs_by_state(
    body: DeleteByStateBody,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    state = _check_state(body.state)
    try:
        deleted = await queue_admin.delete_jobs_by_state(request.app.state.engine, state or "")
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message=str(exc), status_code=400) from exc
    return {"ok": True, "state": state, "deleted": deleted, "request_id": get_or_create_request_id(request)}


@router.post("/projects/{project_id}/cancel")
async def cancel_project_jobs(
    project_id: str,
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    result = await QueueStore(request.app.state.engine).cancel_jobs_for_project(project_id)
    return {
        "ok": True,
        "project_id": project_id,
        "cancelled": result.cancelled,
        "cancel_requested": result.cancel_requested,
        "request_id": get_or_create_request_id(request),
    }


async def _settings_body(request: Request) -> dict[str, Any]:
    settings = await get_queue_settings(
        request.app.state.engine,
        default_concurrency=request.app.state.settings.queue_default_concurrency,
    )
    return {
        "ok": True,
        "paused": settings.paused,
        "concurrency": settings.concurrency,
        "request_id": get_or_create_request_id(request),
    }


@router.get("/settings")
async def get_settings(request: Request, _claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    return await _settings_body(request)


@router.post("/pause")
async def pause_queue(request: Request, claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    await set_queue_paused(request.app.state.engine, True, updated_by=admin_actor(claims))
    return await _settings_body(request)


@router.post("/resume")
async def resume_queue(request: Request, claims: dict[str, Any] = Depends(get_admin_claims)) -> dict[str, Any]:
    await set_queue_paused(request.app.state.engine, False, updated_by=admin_actor(claims))
    return await _settings_body(request)


@router.put("/concurrency")
async def set_concurrency(
    body: ConcurrencyBody,
    request: Request,
    claims: dict[str, Any] = Depends(get_admin_claims),
) -> dict[str, Any]:
    try:
        await set_queue_concurrency(request.app.state.engine, body.concurrency, updated_by=admin_actor(claims))
    except ValueError as exc:
        raise ApiError(code=ErrorCode.BAD_REQUEST, message=str(exc), status_code=400) from exc
    return await _settings_body(request)
