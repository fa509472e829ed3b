from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
from cryptography.fernet import Fernet

from sandboxer.core.config import load_settings
from sandboxer.core.crypto import FieldEncryptor
from sandboxer.core.time import epoch_ms
from sandboxer.db.engine import create_engine
from sandboxer.db.models.base import Base
from sandboxer.jobs import admin as queue_admin
from sandboxer.jobs.enqueue import (
    enqueue_delete_all_projects_for_user,
    enqueue_docker_wait_ready,
    enqueue_opencode_wait_idle,
    enqueue_production_build,
    enqueue_production_wait_ready,
    enqueue_project_create,
    enqueue_project_delete,
)
from sandboxer.jobs.executor import execute_claimed_job
from sandboxer.jobs.store import QueueStore
from sandboxer.projects import files, repo
from sandboxer.services.containers import ComposeResult, ContainerStatus
from sandboxer.services.opencode import OpencodeClient
from sandboxer.worker import build_default_dispatcher

PROJECT_ID = "0123456789abcdef0123456789abcdef"


def _sqlite_url(db_path: Path) -> str:
    return "sqlite+aiosqlite:///" + db_path.as_posix()


class _FakeRuntime:
    def __init__(self, *, up_ok: bool = True, ready: bool = True, on_down=None) -> None:
        self.calls: list[tuple] = []
        self._up_ok = up_ok
        self._ready = ready
        self._on_down = on_down

    def _ok(self, *call) -> ComposeResult:
        self.calls.append(call)
        return ComposeResult(success=True)

    async def ensure_network(self, name):
        return self._ok("ensure_network", name)

    async def ensure_volume(self, name):
        return self._ok("ensure_volume", name)

    async def up(self, project_id, path, *, preserve_others=True):
        self.calls.append(("up", project_id))
        if not self._up_ok:
            return ComposeResult(success=False, stderr="port is already allocated", exit_code=1)
        return ComposeResult(success=True)

    async def down(self, project_id, path):
        return self._ok("down", project_id)

    async def down_with_volumes(self, project_id, path):
        if self._on_down is not None:
            await self._on_down()
        return self._ok("down_with_volumes", project_id)

    async def status(self, project_id, path):
        self.calls.append(("status", project_id))
        return [
            ContainerStatus(name="a", service="preview", state="running" if self._ready else "created"),
            ContainerStatus(name="b", service="opencode", state="running", health="healthy"),
        ]

    async def up_production(self, project_id, path, *, port, production_hash):
        return self._ok("up_production", project_id, port, production_hash)

    async def down_production(self, project_id, path, *, production_hash):
        return self._ok("down_production", project_id, production_hash)

    async def status_production(self, project_id, path, *, production_hash):
        self.calls.append(("status_production", project_id, production_hash))
        return [ContainerStatus(name="c", service="production", state="running" if self._ready else "restarting")]


class _FakeAgent:
    def __init__(self) -> None:
        self.requests: list[tuple[str, str, object]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, request.url.path, body))
        if request.method == "POST" and request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_1"})
        if request.url.path.endswith("/prompt_async"):
            return httpx.Response(204)
        if request.url.path.endswith("/message"):
            return httpx.Response(
                200,
                json=[
                    {"info": {"id": "msg_u", "role": "user"}},
                    {"info": {"id": "msg_a", "role": "assistant", "parentID": "msg_u", "time": {"completed": 1}}},
                ],
            )
        return httpx.Response(200, json=True)

    def factory(self, port: int) -> OpencodeClient:
        return OpencodeClient("http://agent.test", transport=httpx.MockTransport(self.handler))


async def _fake_build(args, *, cwd=None, env=None, timeout_s=0.0) -> ComposeResult:
    dist = Path(cwd) / "dist"
    dist.mkdir(parents=True, exist_ok=True)
    (dist / "index.html").write_text("<h1>todo</h1>", encoding="utf-8")
    return ComposeResult(success=True)


def _setup(tmp_path: Path, name: str):
    template = tmp_path / "template"
    template.mkdir()
    (template / "opencode.json").write_text(json.dumps({"$schema": "https://opencode.ai/config.json"}), encoding="utf-8")
    (template / "package.json").write_text("{}", encoding="utf-8")

    key = Fernet.generate_key().decode("utf-8")
    settings = load_settings(
        {
            "DATA_DIR": str(tmp_path / "data"),
            "TEMPLATE_DIR": str(template),
            "FIELD_ENCRYPTION_KEY": key,
            "SANDBOX_HOST": "sandbox.test",
        }
    )
    engine = create_engine(_sqlite_url(tmp_path / name))
    return settings, engine, FieldEncryptor.from_key(key)


async def _drain(store: QueueStore, dispatcher, *, max_steps: int = 30) -> list[tuple[str, str]]:
    ran: list[tuple[str, str]] = []
    for _ in range(max_steps):
        row = await store.claim_next_job(worker_id="w-test")
        if row is None:
            return ran
        transition = await execute_claimed_job(
            store,
            dispatcher,
            job_row=row,
            worker_id="w-test",
            heartbeat_interval_s=30.0,
        )
        assert transition is not None
        ran.append((str(row["type"]), transition.state.value))
    raise AssertionError(f"queue did not drain: {ran}")


def test_project_create_runs_full_pipeline(tmp_path: Path) -> None:
    settings, engine, encryptor = _setup(tmp_path, "pipeline.db")
    runtime = _FakeRuntime()
    agent = _FakeAgent()

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await repo.set_user_settings(engine, "u1", encryptor=encryptor, provider_api_key="sk-or-v1-test")

        dispatcher = build_default_dispatcher(
            engine,
            settings,
            runtime=runtime,
            agent_factory=agent.factory,
            run_build=_fake_build,
        )
        store = QueueStore(engine)

        await enqueue_project_create(
            engine,
            project_id=PROJECT_ID,
            owner_user_id="u1",
            prompt="Build a todo app",
            model="openrouter/test-model",
            images=[{"filename": "a.png", "mime": "image/png", "dataUrl": "data:image/png;base64,AAAA"}],
        )
        ran = await _drain(store, dispatcher)
        assert ran == [
            ("project.create", "succeeded"),
            ("docker.composeUp", "succeeded"),
            ("docker.waitReady", "succeeded"),
            ("opencode.sessionCreate", "succeeded"),
            ("opencode.sendInitialPrompt", "succeeded"),
            ("opencode.sendUserPrompt", "succeeded"),
            ("opencode.waitIdle", "succeeded"),
        ]

        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        assert project.status == "running"
        assert project.setup_phase == "completed"
        assert project.name == "Build a todo app"
        assert project.slug == "build-a-todo-app-012345"
        assert (project.dev_port, project.opencode_port) == (20000, 20001)
        assert project.bootstrap_session_id == "ses_1"
        assert project.initial_prompt_sent and project.user_prompt_sent and project.user_prompt_completed
        assert project.user_prompt_message_id == "msg_u"

        path = Path(project.path_on_disk)
        assert path == settings.projects_dir / PROJECT_ID
        assert "PROVIDER_API_KEY=sk-or-v1-test\n" in (path / ".env").read_text(encoding="utf-8")
        assert files.read_opencode_config(path)["model"] == "openrouter/test-model"
        assert not (path / files.IMAGES_FILENAME).exists()

        assert ("up", PROJECT_ID) in runtime.calls
        assert runtime.calls[0] == ("ensure_network", settings.sandbox_network)

        paths = [(m, p) for m, p, _ in agent.requests]
        assert paths[:3] == [
            ("POST", "/session"),
            ("POST", "/session/ses_1/init"),
            ("POST", "/session/ses_1/prompt_async"),
        ]
        init_body = agent.requests[1][2]
        assert init_body["providerID"] == "openrouter"
        assert init_body["modelID"] == "test-model"
        prompt_body = agent.requests[2][2]
        assert prompt_body["parts"][0] == {"type": "text", "text": "Build a todo app"}
        assert prompt_body["parts"][1]["url"] == "data:image/png;base64,AAAA"

        await enqueue_production_build(engine, project_id=PROJECT_ID)
        ran = await _drain(store, dispatcher)
        assert ran == [
            ("production.build", "succeeded"),
            ("production.start", "succeeded"),
            ("production.waitReady", "succeeded"),
        ]

        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        production_hash = files.hash_dist_folder(path / "dist")
        assert project.production_status == "running"
        assert project.production_hash == production_hash
        assert project.production_port == 20002
        assert project.production_url == "http://sandbox.test:20002"
        assert ("up_production", PROJECT_ID, 20002, production_hash) in runtime.calls
        assert files.list_production_hashes(settings.production_dir, PROJECT_ID) == [production_hash]

        await enqueue_project_delete(engine, project_id=PROJECT_ID, requested_by_user_id="u1")
        ran = await _drain(store, dispatcher)
        assert ran == [("project.delete", "succeeded")]

        assert await repo.get_project(engine, PROJECT_ID) is None
        assert not path.exists()
        assert not files.production_root(settings.production_dir, PROJECT_ID).exists()
        assert ("down_with_volumes", PROJECT_ID) in runtime.calls
        assert ("down_production", PROJECT_ID, production_hash) in runtime.calls

        await engine.dispose()

    asyncio.run(_run())


def test_project_create_without_provider_key_fails_permanently(tmp_path: Path) -> None:
    settings, engine, _encryptor = _setup(tmp_path, "no_key.db")

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        dispatcher = build_default_dispatcher(engine, settings, runtime=_FakeRuntime(), agent_factory=_FakeAgent().factory)
        store = QueueStore(engine)

        job_id = await enqueue_project_create(engine, project_id=PROJECT_ID, owner_user_id="u1", prompt="hello")
        assert await _drain(store, dispatcher) == [("project.create", "failed")]

        job = await queue_admin.get_job(engine, job_id)
        assert job["attempts"] == 1
        assert "user has no provider API key configured" in job["last_error"]
        assert await repo.get_project(engine, PROJECT_ID) is None

        await engine.dispose()

    asyncio.run(_run())


def test_compose_up_failure_is_retried_with_backoff(tmp_path: Path) -> None:
    settings, engine, encryptor = _setup(tmp_path, "up_fail.db")

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await repo.set_user_settings(engine, "u1", encryptor=encryptor, provider_api_key="sk-or-v1-test")
        dispatcher = build_default_dispatcher(
            engine,
            settings,
            runtime=_FakeRuntime(up_ok=False),
            agent_factory=_FakeAgent().factory,
        )
        store = QueueStore(engine)

        await enqueue_project_create(engine, project_id=PROJECT_ID, owner_user_id="u1", prompt="hello")
        ran = await _drain(store, dispatcher)
        assert ran == [("project.create", "succeeded"), ("docker.composeUp", "queued")]

        page = await queue_admin.list_jobs(engine, queue_admin.JobFilters(type="docker.composeUp"))
        job = page.items[0]
        assert job["attempts"] == 1
        assert "compose up failed" in job["last_error"]
        assert job["available_at"] > job["created_at"]

        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        assert project.status == "error"

        await engine.dispose()

    asyncio.run(_run())


async def _insert_project(engine, tmp_path: Path, project_id: str, *, owner: str = "u1", port: int = 20000):
    path = tmp_path / "data" / "projects" / project_id
    path.mkdir(parents=True, exist_ok=True)
    return await repo.insert_project(
        engine,
        project_id=project_id,
        owner_user_id=owner,
        name=f"Project {project_id}",
        slug=f"project-{project_id}",
        prompt="build a landing page",
        model=None,
        dev_port=port,
        opencode_port=port + 1,
        path_on_disk=str(path),
    )


def test_wait_ready_reschedules_then_times_out(tmp_path: Path) -> None:
    settings, engine, _encryptor = _setup(tmp_path, "wait_ready.db")

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await _insert_project(engine, tmp_path, PROJECT_ID)
        runtime = _FakeRuntime(ready=False)
        dispatcher = build_default_dispatcher(engine, settings, runtime=runtime, agent_factory=_FakeAgent().factory)
        store = QueueStore(engine)

        dev_id = await enqueue_docker_wait_ready(engine, project_id=PROJECT_ID)
        assert await _drain(store, dispatcher) == [("docker.waitReady", "queued")]
        job = await queue_admin.get_job(engine, dev_id)
        assert job["attempts"] == 0
        assert job["available_at"] > job["created_at"]
        assert ("status", PROJECT_ID) in runtime.calls

        await store.cancel_job(dev_id)
        stale = epoch_ms() - 301_000
        dev_id = await enqueue_docker_wait_ready(engine, project_id=PROJECT_ID, started_at=stale)
        assert await _drain(store, dispatcher) == [("docker.waitReady", "failed")]
        job = await queue_admin.get_job(engine, dev_id)
        assert "timed out waiting for services to be ready" in job["last_error"]
        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        assert (project.status, project.setup_phase) == ("error", "failed")

        prod_id = await enqueue_production_wait_ready(
            engine, project_id=PROJECT_ID, production_port=20002, production_hash="0a1b2c3d"
        )
        assert await _drain(store, dispatcher) == [("production.waitReady", "queued")]
        assert (await queue_admin.get_job(engine, prod_id))["attempts"] == 0

        await store.cancel_job(prod_id)
        prod_id = await enqueue_production_wait_ready(
            engine,
            project_id=PROJECT_ID,
            production_port=20002,
            production_hash="0a1b2c3d",
            started_at=stale,
        )
        assert await _drain(store, dispatcher) == [("production.waitReady", "failed")]
        assert "timed out waiting for production" in (await queue_admin.get_job(engine, prod_id))["last_error"]
        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        assert project.production_status == "failed"

        await engine.dispose()

    asyncio.run(_run())


def test_wait_idle_gives_up_after_timeout(tmp_path: Path) -> None:
    settings, engine, _encryptor = _setup(tmp_path, "wait_idle.db")
    agent = _FakeAgent()

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await _insert_project(engine, tmp_path, PROJECT_ID)
        await repo.update_project(
            engine,
            PROJECT_ID,
            bootstrap_session_id="ses_1",
            user_prompt_sent=True,
            user_prompt_message_id="msg_other",
            setup_phase="waiting_completion",
        )
        dispatcher = build_default_dispatcher(engine, settings, runtime=_FakeRuntime(), agent_factory=agent.factory)
        store = QueueStore(engine)

        job_id = await enqueue_opencode_wait_idle(engine, project_id=PROJECT_ID)
        assert await _drain(store, dispatcher) == [("opencode.waitIdle", "queued")]
        assert len(agent.requests) == 1
        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None and not project.user_prompt_completed

        await store.cancel_job(job_id)
        await enqueue_opencode_wait_idle(engine, project_id=PROJECT_ID, started_at=epoch_ms() - 601_000)
        assert await _drain(store, dispatcher) == [("opencode.waitIdle", "succeeded")]
        assert len(agent.requests) == 1
        project = await repo.get_project(engine, PROJECT_ID)
        assert project is not None
        assert project.user_prompt_completed
        assert project.setup_phase == "completed"

        await engine.dispose()

    asyncio.run(_run())


def test_delete_all_for_user_enqueues_one_delete_per_project(tmp_path: Path) -> None:
    settings, engine, _encryptor = _setup(tmp_path, "delete_all.db")

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        await _insert_project(engine, tmp_path, "pa", port=20000)
        await _insert_project(engine, tmp_path, "pb", port=20002)
        await _insert_project(engine, tmp_path, "pc", owner="u2", port=20004)
        runtime = _FakeRuntime()
        dispatcher = build_default_dispatcher(engine, settings, runtime=runtime, agent_factory=_FakeAgent().factory)
        store = QueueStore(engine)

        await enqueue_delete_all_projects_for_user(engine, user_id="u1")
        row = await store.claim_next_job(worker_id="w-test")
        assert row is not None
        transition = await execute_claimed_job(store, dispatcher, job_row=row, worker_id="w-test")
        assert transition is not None and transition.state.value == "succeeded"

        page = await queue_admin.list_jobs(engine, queue_admin.JobFilters(type="project.delete"))
        assert sorted(item["project_id"] for item in page.items) == ["pa", "pb"]

        assert await _drain(store, dispatcher) == [("project.delete", "succeeded"), ("project.delete", "succeeded")]
        assert [p.id for p in await repo.list_projects(engine)] == ["pc"]
        assert ("down_with_volumes", "pc") not in runtime.calls

        await engine.dispose()

    asyncio.run(_run())


def test_project_delete_stops_when_cancel_requested(tmp_path: Path) -> None:
    settings, engine, _encryptor = _setup(tmp_path, "delete_cancel.db")
    store = QueueStore(engine)
    job_ids: list[str] = []

    async def _request_cancel() -> None:
        await store.cancel_job(job_ids[0])

    async def _run() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        project = await _insert_project(engine, tmp_path, PROJECT_ID)
        runtime = _FakeRuntime(on_down=_request_cancel)
        dispatcher = build_default_dispatcher(engine, settings, runtime=runtime, agent_factory=_FakeAgent().factory)

        job_ids.append(await enqueue_project_delete(engine, project_id=PROJECT_ID, requested_by_user_id="u1"))
        assert await _drain(store, dispatcher) == [("project.delete", "cancelled")]

        job = await queue_admin.get_job(engine, job_ids[0])
        assert job["cancel_requested_at"] is not None
        assert job["attempts"] == 0

        remaining = await repo.get_project(engine, PROJECT_ID)
        assert remaining is not None
        assert remaining.status == "deleting"
        assert Path(project.path_on_disk).exists()

        await engine.dispose()

    asyncio.run(_run())
