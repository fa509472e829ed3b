from __future__ import annotations

import hmac
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from sandboxer.core.errors import ApiError, ErrorCode
from sandboxer.core.request_id import get_or_create_request_id
from sandboxer.core.security import ADMIN_TOKEN_TTL_S, create_jwt

router = APIRouter()


class LoginBody(BaseModel):
    username: str = Field(min_length=1, max_length=200)
    password: str = Field(min_length=1, max_length=1000)


@router.post("/login")
async def login(body: LoginBody, request: Request) -> dict[str, Any]:
    settings = request.app.state.settings
    username = body.username.strip()

    user_ok = hmac.compare_digest(username, settings.admin_username)
    password_ok = bool(settings.admin_password) and hmac.compare_digest(body.password, settings.admin_password)
    if not (user_ok and password_ok):
        raise ApiError(code=ErrorCode.UNAUTHORIZED, message="Invalid credentials", status_code=401)

    token = create_jwt(secret_key=settings.secret_key, subject=settings.admin_username, ttl_s=ADMIN_TOKEN_TTL_S)
    return {
        "ok": True,
        "token": token,
        "expires_in": ADMIN_TOKEN_TTL_S,
        "request_id": get_or_create_request_id(request),
    }
