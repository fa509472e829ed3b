from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.errors import ErrorCode, error_body
from sandboxer.core.request_id import get_or_create_request_id
from sandboxer.jobs.admin import count_jobs_by_state
from sandboxer.jobs.settings import get_queue_settings

router = APIRouter()


async def _check_db(engine: AsyncEngine) -> bool:
    try:
        async with engine.connect() as conn:
            await conn.exec_driver_sql("SELECT 1")
    except (SQLAlchemyError, OSError):
        return False
    return True


async def _queue_status(engine: AsyncEngine, default_concurrency: int) -> tuple[dict[str, Any] | None, str]:
    try:
        counts = await count_jobs_by_state(engine)
        settings = await get_queue_settings(engine, default_concurrency=default_concurrency)
    except SQLAlchemyError:
        return None, "queue_unavailable"
    return {"counts": counts, "paused": settings.paused, "concurrency": settings.concurrency}, "ok"


@router.get("/healthz")
async def healthz(request: Request) -> Any:
    rid = get_or_create_request_id(request)

    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    db_ok = await _check_db(engine) if engine is not None else False
    if not db_ok:
        return JSONResponse(
            status_code=503,
            content=error_body(
                code=ErrorCode.INTERNAL_ERROR,
                message="Database unavailable",
                request_id=rid,
                details={"db_ok": False},
            ),
        )

    queue, reason = await _queue_status(engine, request.app.state.settings.queue_default_concurrency)  # type: ignore[arg-type]
    return {
        "ok": True,
        "db_ok": True,
        "queue_ok": queue is not None,
        "queue": {**(queue or {}), "reason": reason},
        "request_id": rid,
    }
