from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import httpx

DEFAULT_MODEL = "openrouter/google/gemini-2.5-flash"


def _normalize_base_url(base_url: str) -> str:
    base_url = (base_url or "").strip()
    if not base_url:
        raise ValueError("base_url is required")

    parsed = urlparse(base_url)
    if (parsed.scheme or "").lower() not in {"http", "https"}:
        raise ValueError("base_url must be http(s)")
    if not parsed.netloc:
        raise ValueError("base_url must include host")
    return base_url.rstrip("/")


class OpencodeError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class ModelRef:
    provider_id: str
    model_id: str

    @property
    def qualified(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


def parse_model_string(value: str | None) -> ModelRef | None:
    """Split ``provider/model`` (the model part may itself contain slashes)."""

    value = (value or "").strip()
    provider, sep, model = value.partition("/")
    if not sep or not provider or not model:
        return None
    return ModelRef(provider_id=provider, model_id=model)


def new_message_id() -> str:
    return f"msg_init_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def _info(message: Any) -> dict[str, Any]:
    if not isinstance(message, dict):
        return {}
    info = message.get("info")
    return info if isinstance(info, dict) else message


def message_id(message: Any) -> str | None:
    value = _info(message).get("id")
    return str(value) if value else None


def message_role(message: Any) -> str:
    return str(_info(message).get("role") or "")


def find_last_user_message(messages: list[Any]) -> str | None:
    for message in reversed(messages):
        if message_role(message) == "user":
            return message_id(message)
    return None


def find_completed_reply(messages: list[Any], parent_message_id: str) -> dict[str, Any] | None:
    """Return the assistant message answering ``parent_message_id`` once it has finished.

    A reply counts as finished when ``info.time.completed`` is set; an
    ``info.error`` also ends the turn and is returned so callers can report it.
    """

    if not parent_message_id:
        return None
    for message in messages:
        info = _info(message)
        if info.get("role") != "assistant" or info.get("parentID") != parent_message_id:
            continue
        times = info.get("time") if isinstance(info.get("time"), dict) else {}
        if times.get("completed") or info.get("error"):
            return message
    return None


class OpencodeClient:
    """Small async client for the agent server running inside a project's container group."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        self.base_url = _normalize_base_url(base_url)
        self._transport = transport
        self._timeout_s = float(timeout_s)

    async def _request(self, method: str, path: str, *, json: Any = None) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            transport=self._transport,
            timeout=httpx.Timeout(self._timeout_s, connect=10.0),
        ) as client:
            try:
                resp = await client.request(method, path, json=json)
            except httpx.HTTPError as exc:
                raise OpencodeError(f"opencode {method} {path} failed: {type(exc).__name__}") from exc

        if resp.status_code >= 400:
            raise OpencodeError(
                f"opencode {method} {path} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise OpencodeError("opencode response is not JSON", status_code=resp.status_code) from exc

    async def create_session(self, *, title: str | None = None) -> str:
        body = {"title": title} if title else {}
        data = self._json(await self._request("POST", "/session", json=body))
        session_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise OpencodeError("session response missing id")
        return session_id

    async def init_session(self, session_id: str, *, model: ModelRef, message_id: str | None = None) -> None:
        await self._request(
            "POST",
            f"/session/{session_id}/init",
            json={
                "providerID": model.provider_id,
                "modelID": model.model_id,
                "messageID": message_id or new_message_id(),
            },
        )

    async def prompt_async(
        self,
        session_id: str,
        *,
        parts: list[dict[str, Any]],
        model: ModelRef | None = None,
    ) -> None:
        body: dict[str, Any] = {"parts": parts}
        if model is not None:
            body["model"] = {"providerID": model.provider_id, "modelID": model.model_id}
        resp = await self._request("POST", f"/session/{session_id}/prompt_async", json=body)
        if resp.status_code not in {200, 202, 204}:
            raise OpencodeError(f"unexpected prompt_async status {resp.status_code}", status_code=resp.status_code)

    async def list_messages(self, session_id: str) -> list[dict[str, Any]]:
        data = self._json(await self._request("GET", f"/session/{session_id}/message"))
        return data if isinstance(data, list) else []
