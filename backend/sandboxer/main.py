from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError

from sandboxer.api.admin.router import router as admin_router
from sandboxer.api.metrics import router as metrics_router
from sandboxer.api.public.healthz import router as healthz_router
from sandboxer.core.config import load_settings
from sandboxer.core.errors import ApiError, ErrorCode, json_error_response
from sandboxer.core.logging import configure_logging, get_logger
from sandboxer.core.request_id import RequestIdMiddleware
from sandboxer.db.engine import create_engine

log = get_logger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()

    app = FastAPI(title="sandboxer", docs_url="/api/docs", redoc_url="/api/redoc")

    @app.exception_handler(ApiError)
    async def _api_error_handler(request: Request, exc: ApiError):  # type: ignore[no-redef]
        return json_error_response(
            code=exc.code,
            message=exc.message,
            status_code=exc.status_code,
            request=request,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore[no-redef]
        return json_error_response(
            code=ErrorCode.BAD_REQUEST,
            message="Invalid request",
            status_code=400,
            request=request,
            details={"errors": len(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[no-redef]
        log.exception("unhandled_exception path=%s", request.url.path)
        return json_error_response(
            code=ErrorCode.INTERNAL_ERROR,
            message="Internal server error",
            status_code=500,
            request=request,
            details={"error_type": type(exc).__name__},
        )

    app.add_middleware(RequestIdMiddleware)

    app.state.settings = settings
    app.state.engine = create_engine(settings.database_url)

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # type: ignore[no-redef]
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

    app.include_router(healthz_router)
    app.include_router(metrics_router)
    app.include_router(admin_router)

    return app


app = create_app()
