from __future__ import annotations

from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.security import require_admin


def get_admin_claims(request: Request) -> dict[str, Any]:
    settings = request.app.state.settings
    return require_admin(
        request.headers,
        secret_key=settings.secret_key,
        admin_username=settings.admin_username,
    )


def get_engine(request: Request) -> AsyncEngine:
    return request.app.state.engine


def admin_actor(claims: dict[str, Any]) -> str | None:
    return str(claims.get("sub") or "").strip() or None
