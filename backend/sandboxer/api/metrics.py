from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from prometheus_client.exposition import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.api.admin.deps import get_admin_claims
from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import (
    METRICS_LAST_SCRAPE_SUCCESS,
    METRICS_SCRAPE_ERRORS_TOTAL,
    set_jobs_state_counts,
)
from sandboxer.jobs.admin import count_jobs_by_state
from sandboxer.jobs.settings import get_queue_settings

router = APIRouter()
log = get_logger(__name__)


@router.get("/metrics")
async def metrics(
    request: Request,
    _claims: dict[str, Any] = Depends(get_admin_claims),
) -> Response:
    engine: AsyncEngine | None = getattr(request.app.state, "engine", None)
    if engine is not None:
        try:
            set_jobs_state_counts(await count_jobs_by_state(engine))
            await get_queue_settings(engine, default_concurrency=request.app.state.settings.queue_default_concurrency)
            METRICS_LAST_SCRAPE_SUCCESS.set(1)
        except SQLAlchemyError as exc:
            log.warning("metrics_scrape_failed err=%s", type(exc).__name__)
            METRICS_SCRAPE_ERRORS_TOTAL.inc()
            METRICS_LAST_SCRAPE_SUCCESS.set(0)

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
