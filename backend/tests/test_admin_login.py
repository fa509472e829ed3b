from __future__ import annotations

import asyncio
from pathlib import Path

from fastapi.testclient import TestClient

from sandboxer.core.security import decode_jwt
from sandboxer.db.models.base import Base
from sandboxer.main import create_app


def _app(tmp_path: Path, monkeypatch, name: str):
    db_url = "sqlite+aiosqlite:///" + (tmp_path / name).as_posix()
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("SECRET_KEY", "secret_test")
    monkeypatch.setenv("ADMIN_USERNAME", "admin")
    monkeypatch.setenv("ADMIN_PASSWORD", "pass_test")

    app = create_app()

    async def _migrate() -> None:
        async with app.state.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_migrate())
    return app


def test_admin_login_happy_path_returns_token(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "admin_login.db")

    with TestClient(app) as client:
        resp = client.post(
            "/admin/api/login",
            headers={"X-Request-Id": "req_test"},
            json={"username": " admin ", "password": "pass_test"},
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert body["request_id"] == "req_test"
        assert resp.headers["X-Request-Id"] == "req_test"
        assert body["expires_in"] == 3600
        assert decode_jwt(body["token"], secret_key="secret_test")["sub"] == "admin"
        assert "password" not in body

        resp = client.get("/admin/api/queue/settings", headers={"Authorization": f"Bearer {body['token']}"})
        assert resp.status_code == 200


def test_admin_login_invalid_credentials_returns_401(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "admin_login_invalid.db")

    with TestClient(app) as client:
        for creds in ({"username": "admin", "password": "wrong"}, {"username": "root", "password": "pass_test"}):
            resp = client.post("/admin/api/login", headers={"X-Request-Id": "req_test"}, json=creds)
            assert resp.status_code == 401
            body = resp.json()
            assert body["ok"] is False
            assert body["code"] == "UNAUTHORIZED"
            assert body["request_id"] == "req_test"


def test_admin_login_validation_error_returns_400(tmp_path: Path, monkeypatch) -> None:
    app = _app(tmp_path, monkeypatch, "admin_login_bad.db")

    with TestClient(app) as client:
        resp = client.post("/admin/api/login", json={"username": "admin"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["code"] == "BAD_REQUEST"
        assert body["details"]["errors"] == 1
