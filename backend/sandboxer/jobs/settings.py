from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.config import MAX_CONCURRENCY, MIN_CONCURRENCY
from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import QUEUE_PAUSED
from sandboxer.core.time import iso_utc_ms
from sandboxer.db.models.runtime_settings import RuntimeSetting
from sandboxer.db.session import create_sessionmaker, with_sqlite_busy_retry

log = get_logger(__name__)

PAUSED_KEY = "queue.paused"
CONCURRENCY_KEY = "queue.concurrency"
DEFAULT_CONCURRENCY = 2


@dataclass(frozen=True, slots=True)
class QueueSettings:
    paused: bool
    concurrency: int


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    return None


def _as_concurrency(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if value < MIN_CONCURRENCY or value > MAX_CONCURRENCY:
        return None
    return value


def validate_concurrency(value: Any) -> int:
    checked = _as_concurrency(value)
    if checked is None:
        raise ValueError(f"concurrency must be an integer between {MIN_CONCURRENCY} and {MAX_CONCURRENCY}")
    return checked


async def fetch_runtime_settings(engine: AsyncEngine, keys: tuple[str, ...]) -> dict[str, Any]:
    Session = create_sessionmaker(engine)

    async def _op() -> dict[str, Any]:
        async with Session() as session:
            result = await session.execute(
                select(RuntimeSetting.key, RuntimeSetting.value_json).where(RuntimeSetting.key.in_(keys))
            )
            values: dict[str, Any] = {}
            for key, value_json in result.all():
                try:
                    values[str(key)] = json.loads(value_json)
                except ValueError:
                    log.warning("runtime_settings_invalid_json key=%s", key)
            return values

    return await with_sqlite_busy_retry(_op)


async def set_runtime_setting(
    engine: AsyncEngine,
    *,
    key: str,
    value: Any,
    updated_by: str | None = None,
) -> None:
    key = (key or "").strip()
    if not key:
        raise ValueError("key is required")

    value_json = json.dumps(value, separators=(",", ":"), sort_keys=True)
    now = iso_utc_ms()
    Session = create_sessionmaker(engine)

    async def _op() -> None:
        async with Session() as session:
            stmt = sqlite_insert(RuntimeSetting).values(
                key=key,
                value_json=value_json,
                updated_at=now,
                updated_by=updated_by,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[RuntimeSetting.key],
                set_={"value_json": value_json, "updated_at": now, "updated_by": updated_by},
            )
            await session.execute(stmt)
            await session.commit()

    await with_sqlite_busy_retry(_op)


async def get_queue_settings(engine: AsyncEngine, *, default_concurrency: int = DEFAULT_CONCURRENCY) -> QueueSettings:
    values = await fetch_runtime_settings(engine, (PAUSED_KEY, CONCURRENCY_KEY))
    paused = _as_bool(values.get(PAUSED_KEY))
    concurrency = _as_concurrency(values.get(CONCURRENCY_KEY))
    settings = QueueSettings(
        paused=bool(paused) if paused is not None else False,
        concurrency=concurrency if concurrency is not None else validate_concurrency(int(default_concurrency)),
    )
    QUEUE_PAUSED.set(1 if settings.paused else 0)
    return settings


async def set_queue_paused(engine: AsyncEngine, paused: bool, *, updated_by: str | None = None) -> None:
    await set_runtime_setting(engine, key=PAUSED_KEY, value=bool(paused), updated_by=updated_by)
    QUEUE_PAUSED.set(1 if paused else 0)
    log.info("queue_paused_set paused=%s by=%s", bool(paused), updated_by)


async def set_queue_concurrency(engine: AsyncEngine, concurrency: int, *, updated_by: str | None = None) -> int:
    value = validate_concurrency(concurrency)
    await set_runtime_setting(engine, key=CONCURRENCY_KEY, value=value, updated_by=updated_by)
    log.info("queue_concurrency_set concurrency=%s by=%s", value, updated_by)
    return value
