from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

REDACTED = "***"

_SENSITIVE_KEY_PARTS = (
    "token",
    "api_key",
    "apikey",
    "authorization",
    "password",
    "secret",
    "provider_key",
)

_BEARER_RE = re.compile(r"(?i)\bBearer\s+([^\s]+)")
_PROVIDER_KEY_RE = re.compile(r"\bsk-(?:or-)?[A-Za-z0-9_\-]{8,}")
_ENV_ASSIGN_RE = re.compile(r"(?im)^(?P<name>[A-Z0-9_]*(?:API_KEY|SECRET|TOKEN|PASSWORD))=(?P<value>.*)$")
_URL_USERINFO_RE = re.compile(r"(?i)\b(?P<scheme>https?)://(?P<user>[^:/\s@]+):(?P<password>[^\s\"']+)@(?P<host>[^\s\"'/@]+)")


def is_sensitive_key(key: str) -> bool:
    key_l = key.lower()
    return any(part in key_l for part in _SENSITIVE_KEY_PARTS)


def redact_url_credentials(text: str) -> str:
    # The last '@' before the host separates userinfo, so passwords may contain '@'.
    return _URL_USERINFO_RE.sub(lambda m: f"{m.group('scheme')}://{m.group('user')}:{REDACTED}@{m.group('host')}", text)


def redact_text(text: str) -> str:
    text = redact_url_credentials(text)
    text = _BEARER_RE.sub("Bearer " + REDACTED, text)
    text = _PROVIDER_KEY_RE.sub(REDACTED, text)
    text = _ENV_ASSIGN_RE.sub(lambda m: f"{m.group('name')}={REDACTED}", text)
    return text


def redact_any(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, bytes):
        try:
            return redact_text(value.decode("utf-8", errors="replace")).encode("utf-8")
        except Exception:
            return value
    if isinstance(value, Mapping):
        out: dict[Any, Any] = {}
        for k, v in value.items():
            if isinstance(k, str) and is_sensitive_key(k):
                out[k] = REDACTED
            else:
                out[k] = redact_any(v)
        return out
    if isinstance(value, (list, tuple)):
        seq = [redact_any(v) for v in value]
        return type(value)(seq) if isinstance(value, tuple) else seq
    return value
