from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient

from sandboxer.db.models.base import Base
from sandboxer.jobs.enqueue import enqueue_production_build
from sandboxer.jobs.settings import set_queue_paused
from sandboxer.main import create_app


def _app(tmp_path: Path, monkeypatch, db_url: str):
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SECRET_KEY", "secret_test")
    return create_app()


def test_healthz_ok_includes_request_id(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "sqlite+aiosqlite:///" + (tmp_path / "healthz.db").as_posix())

    async def _migrate_and_seed() -> None:
        async with app.state.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await enqueue_production_build(app.state.engine, project_id="p1")
        await set_queue_paused(app.state.engine, True)

    asyncio.run(_migrate_and_seed())

    with TestClient(app) as client:
        resp = client.get("/healthz")

        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["db_ok"] is True
        assert body["queue_ok"] is True
        assert body["queue"]["counts"]["queued"] == 1
        assert body["queue"]["counts"]["running"] == 0
        assert body["queue"]["paused"] is True
        assert body["queue"]["concurrency"] == 2
        assert body["request_id"].startswith("req_")
        assert resp.headers["X-Request-Id"] == body["request_id"]

        resp = client.get("/healthz", headers={"X-Request-Id": "req_test"})
        assert resp.json()["request_id"] == "req_test"
        assert resp.headers["X-Request-Id"] == "req_test"


def test_healthz_reports_queue_unavailable_without_tables(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "sqlite+aiosqlite:///" + (tmp_path / "empty.db").as_posix())

    with TestClient(app) as client:
        resp = client.get("/healthz")

        assert resp.status_code == 200
        body = resp.json()
        assert body["db_ok"] is True
        assert body["queue_ok"] is False
        assert body["queue"]["reason"] == "queue_unavailable"


def test_healthz_reports_db_down(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "sqlite+aiosqlite:///:memory:")
    app.state.engine = None

    with TestClient(app) as client:
        resp = client.get("/healthz", headers={"X-Request-Id": "req_test"})

        assert resp.status_code == 503
        body = resp.json()
        assert body["ok"] is False
        assert body["code"] == "INTERNAL_ERROR"
        assert body["request_id"] == "req_test"
        assert body["details"] == {"db_ok": False}
