"""Encryption at rest for per-user provider API keys."""

from __future__ import annotations

from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken

KEY_HINT_MASK = "***"


def provider_key_hint(value: str | None) -> str:
    """Non-secret form of a provider key for API responses, e.g. ``sk-o***12``."""

    value = (value or "").strip()
    if not value:
        return ""
    if len(value) <= 8:
        return KEY_HINT_MASK
    return value[:4] + KEY_HINT_MASK + value[-2:]


@dataclass(frozen=True, slots=True)
class FieldEncryptor:
    _fernet: Fernet

    @classmethod
    def from_key(cls, key: str) -> "FieldEncryptor":
        key = (key or "").strip()
        if not key:
            raise ValueError("FIELD_ENCRYPTION_KEY is required")
        try:
            return cls(Fernet(key))
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid FIELD_ENCRYPTION_KEY") from exc

    def seal(self, provider_key: str | None) -> str | None:
        """Encrypt a provider key; a blank key means "no key" and seals to ``None``."""

        provider_key = (provider_key or "").strip()
        if not provider_key:
            return None
        return self._fernet.encrypt(provider_key.encode("utf-8")).decode("ascii")

    def unseal(self, token: str | None) -> str | None:
        if not token:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ValueError("stored provider key does not match FIELD_ENCRYPTION_KEY") from exc
