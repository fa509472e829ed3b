from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sandboxer.db.engine import create_engine
from sandboxer.db.models.base import Base
from sandboxer.jobs.settings import (
    CONCURRENCY_KEY,
    fetch_runtime_settings,
    get_queue_settings,
    set_queue_concurrency,
    set_queue_paused,
    set_runtime_setting,
    validate_concurrency,
)


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


def test_queue_settings_defaults_and_updates(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "settings.db"))

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        s = await get_queue_settings(engine, default_concurrency=4)
        assert s.paused is False
        assert s.concurrency == 4

        await set_queue_paused(engine, True, updated_by="admin")
        assert await set_queue_concurrency(engine, 7, updated_by="admin") == 7
        s = await get_queue_settings(engine, default_concurrency=4)
        assert s.paused is True
        assert s.concurrency == 7

        await set_queue_paused(engine, False)
        s = await get_queue_settings(engine)
        assert s.paused is False

        async with engine.connect() as conn:
            row = (
                await conn.exec_driver_sql(
                    "SELECT value_json, updated_by FROM runtime_settings WHERE key=:key",
                    {"key": CONCURRENCY_KEY},
                )
            ).one()
        assert row[0] == "7"
        assert row[1] == "admin"

        await engine.dispose()

    asyncio.run(_run())


def test_queue_settings_ignores_out_of_range_stored_values(tmp_path: Path) -> None:
    engine = create_engine(_sqlite_url(tmp_path / "settings_bad.db"))

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        await set_runtime_setting(engine, key=CONCURRENCY_KEY, value=500)
        await set_runtime_setting(engine, key="queue.paused", value="yes")
        s = await get_queue_settings(engine, default_concurrency=3)
        assert s.concurrency == 3
        assert s.paused is False

        values = await fetch_runtime_settings(engine, (CONCURRENCY_KEY, "missing.key"))
        assert values == {CONCURRENCY_KEY: 500}

        with pytest.raises(ValueError):
            await set_queue_concurrency(engine, 0)

        await engine.dispose()

    asyncio.run(_run())


def test_validate_concurrency_bounds() -> None:
    assert validate_concurrency(1) == 1
    assert validate_concurrency(20) == 20
    for bad in (0, 21, -1, True, "3", 2.5):
        with pytest.raises(ValueError):
            validate_concurrency(bad)
