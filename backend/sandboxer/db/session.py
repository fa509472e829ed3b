from __future__ import annotations

import asyncio
import random
import sqlite3
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

T = TypeVar("T")

BUSY_RETRIES = 8
BUSY_BASE_DELAY_S = 0.05
BUSY_MAX_DELAY_S = 2.0

_BUSY_MARKERS = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
    "database is busy",
)


def is_sqlite_busy_error(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return any(marker in msg for marker in _BUSY_MARKERS)
    if isinstance(exc, OperationalError):
        orig = getattr(exc, "orig", None)
        return is_sqlite_busy_error(orig) if isinstance(orig, BaseException) else False
    return False


async def with_sqlite_busy_retry(
    op: Callable[[], Awaitable[T]],
    *,
    retries: int = BUSY_RETRIES,
    base_delay_s: float = BUSY_BASE_DELAY_S,
    max_delay_s: float = BUSY_MAX_DELAY_S,
) -> T:
    attempt = 0
    while True:
        try:
            return await op()
        except Exception as exc:
            if attempt >= retries or not is_sqlite_busy_error(exc):
                raise
            delay = min(base_delay_s * (2**attempt), max_delay_s)
            # Jitter so competing workers do not retry in lockstep.
            await asyncio.sleep(delay * (0.9 + random.random() * 0.2))
            attempt += 1


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
