from __future__ import annotations

import asyncio
import re
from pathlib import Path

from fastapi.testclient import TestClient

from sandboxer.core.security import create_jwt
from sandboxer.db.models.base import Base
from sandboxer.jobs.enqueue import enqueue_production_build
from sandboxer.main import create_app


def _app(tmp_path: Path, monkeypatch, name: str):
    db_url = "sqlite+aiosqlite:///" + (tmp_path / name).as_posix()
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SECRET_KEY", "secret_test")
    monkeypatch.setenv("ADMIN_USERNAME", "admin")
    return create_app()


def test_metrics_requires_admin_auth(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "metrics_auth.db")

    with TestClient(app) as client:
        resp = client.get("/metrics", headers={"X-Request-Id": "req_test"})
        assert resp.status_code == 401
        body = resp.json()
        assert body["ok"] is False
        assert body["code"] == "UNAUTHORIZED"
        assert body["request_id"] == "req_test"


def test_metrics_exposes_queue_gauges(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "metrics_basic.db")

    async def _migrate_and_seed() -> None:
        async with app.state.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await enqueue_production_build(app.state.engine, project_id="p1")
        await enqueue_production_build(app.state.engine, project_id="p2")

    asyncio.run(_migrate_and_seed())

    token = create_jwt(secret_key="secret_test", subject="admin")
    with TestClient(app) as client:
        resp = client.get("/metrics", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        text = resp.text

    assert re.search(r'^sandboxer_jobs_state_count\{state="queued"\} 2\.0$', text, re.M)
    assert re.search(r'^sandboxer_jobs_state_count\{state="running"\} 0\.0$', text, re.M)
    assert re.search(r"^sandboxer_metrics_last_scrape_success 1\.0$", text, re.M)
    assert re.search(r"^sandboxer_queue_paused 0\.0$", text, re.M)
    assert "sandboxer_jobs_enqueued_total" in text
