"""Admin bearer tokens: compact HS256 JWTs signed with ``SECRET_KEY``."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from typing import Any

from sandboxer.core.errors import ApiError, ErrorCode

JWT_HEADER = {"alg": "HS256", "typ": "JWT"}
ADMIN_TOKEN_TTL_S = 3600


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(data: str) -> bytes:
    data = data.strip()
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def _json_segment(value: Mapping[str, Any]) -> str:
    return _b64url_encode(json.dumps(dict(value), separators=(",", ":"), sort_keys=True).encode("utf-8"))


def _sign(secret_key: str, signing_input: bytes) -> bytes:
    return hmac.new(secret_key.encode("utf-8"), signing_input, hashlib.sha256).digest()


def _require_secret(secret_key: str) -> str:
    secret_key = (secret_key or "").strip()
    if not secret_key:
        raise ValueError("SECRET_KEY is required")
    return secret_key


def create_jwt(
    *,
    secret_key: str,
    subject: str,
    ttl_s: int = ADMIN_TOKEN_TTL_S,
    extra_claims: Mapping[str, Any] | None = None,
    now_s: int | None = None,
) -> str:
    secret_key = _require_secret(secret_key)
    issued_at = int(now_s if now_s is not None else time.time())

    claims: dict[str, Any] = {"sub": subject, "iat": issued_at, "exp": issued_at + int(ttl_s)}
    claims.update(dict(extra_claims or {}))

    head = f"{_json_segment(JWT_HEADER)}.{_json_segment(claims)}"
    return head + "." + _b64url_encode(_sign(secret_key, head.encode("ascii")))


def decode_jwt(token: str, *, secret_key: str, leeway_s: int = 0, now_s: int | None = None) -> dict[str, Any]:
    secret_key = _require_secret(secret_key)

    parts = (token or "").strip().split(".")
    if len(parts) != 3:
        raise ValueError("Invalid token format")

    try:
        header = json.loads(_b64url_decode(parts[0]))
        claims = json.loads(_b64url_decode(parts[1]))
        signature = _b64url_decode(parts[2])
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid token encoding") from exc

    if header != JWT_HEADER or not isinstance(claims, dict):
        raise ValueError("Unsupported token")

    if not hmac.compare_digest(signature, _sign(secret_key, f"{parts[0]}.{parts[1]}".encode("ascii"))):
        raise ValueError("Invalid token signature")

    now_i = int(now_s if now_s is not None else time.time())
    try:
        exp = int(claims["exp"]) if "exp" in claims else None
        iat = int(claims["iat"]) if "iat" in claims else None
    except (TypeError, ValueError) as exc:
        raise ValueError("Invalid token timestamps") from exc
    if exp is not None and now_i > exp + leeway_s:
        raise ValueError("Token expired")
    if iat is not None and iat > now_i + leeway_s:
        raise ValueError("Token issued in the future")

    return claims


def parse_bearer_token(authorization: str | None) -> str | None:
    scheme, _, token = (authorization or "").strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def require_admin(
    headers: Mapping[str, str] | None,
    *,
    secret_key: str,
    admin_username: str,
) -> dict[str, Any]:
    authorization = (headers or {}).get("Authorization") or (headers or {}).get("authorization")
    token = parse_bearer_token(authorization)
    if not token:
        raise ApiError(code=ErrorCode.UNAUTHORIZED, message="Missing admin token", status_code=401)

    try:
        claims = decode_jwt(token, secret_key=secret_key)
    except ValueError as exc:
        raise ApiError(code=ErrorCode.UNAUTHORIZED, message="Invalid admin token", status_code=401) from exc

    if str(claims.get("sub") or "") != admin_username:
        raise ApiError(code=ErrorCode.FORBIDDEN, message="Forbidden", status_code=403)

    return claims
