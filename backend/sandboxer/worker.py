from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.config import Settings, load_settings
from sandboxer.core.job_logs import install_job_log_handler
from sandboxer.core.logging import configure_logging, get_logger
from sandboxer.core.redact import redact_text
from sandboxer.db.engine import create_engine
from sandboxer.jobs.dispatch import JobDispatcher, JobHandler
from sandboxer.jobs.errors import JobPermanentError
from sandboxer.jobs.executor import DEFAULT_HEARTBEAT_INTERVAL_S, execute_claimed_job
from sandboxer.jobs.handlers.deps import HandlerDeps, default_agent_factory
from sandboxer.jobs.handlers.docker import (
    build_docker_compose_up_handler,
    build_docker_ensure_running_handler,
    build_docker_stop_handler,
    build_docker_wait_ready_handler,
)
from sandboxer.jobs.handlers.opencode import (
    build_opencode_send_initial_prompt_handler,
    build_opencode_send_user_prompt_handler,
    build_opencode_session_create_handler,
    build_opencode_wait_idle_handler,
)
from sandboxer.jobs.handlers.production import (
    build_production_build_handler,
    build_production_start_handler,
    build_production_stop_handler,
    build_production_wait_ready_handler,
)
from sandboxer.jobs.handlers.project_create import build_project_create_handler
from sandboxer.jobs.handlers.project_delete import (
    build_delete_all_projects_for_user_handler,
    build_project_delete_handler,
)
from sandboxer.jobs.payloads import JobType
from sandboxer.jobs.settings import DEFAULT_CONCURRENCY, QueueSettings, get_queue_settings
from sandboxer.jobs.store import DEFAULT_LEASE_MS, QueueStore
from sandboxer.services.containers import CommandRunner, ComposeRuntime, ContainerRuntime, run_command

log = get_logger(__name__)

DEFAULT_POLL_INTERVAL_S = 0.25
DEFAULT_STOP_GRACE_S = 30.0


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT]
    if hasattr(signal, "SIGTERM"):
        signals.append(signal.SIGTERM)

    for sig in signals:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())
        except (RuntimeError, ValueError):
            # not the main thread; the owner stops us through the handle instead
            continue


def _error_text(exc: BaseException) -> str:
    return redact_text(f"{type(exc).__name__}: {exc}")


def _disabled_handler(job_type: str, *, reason: str) -> JobHandler:
    async def _handler(_ctx: Any) -> None:
        raise JobPermanentError(f"{job_type} handler disabled: {reason}")

    return _handler


def build_default_dispatcher(
    engine: AsyncEngine,
    settings: Settings,
    *,
    runtime: ContainerRuntime | None = None,
    agent_factory: Callable[..., Any] | None = None,
    run_build: CommandRunner | None = None,
) -> JobDispatcher:
    deps = HandlerDeps(
        engine=engine,
        settings=settings,
        runtime=runtime or ComposeRuntime(network=settings.sandbox_network),
        agent_factory=agent_factory or default_agent_factory(settings),
        run_build=run_build or run_command,
    )
    dispatcher = JobDispatcher()

    def _safe_register(job_type: JobType, builder: Callable[[HandlerDeps], JobHandler]) -> None:
        try:
            dispatcher.register(job_type.value, builder(deps))
        except Exception as exc:
            msg = _error_text(exc)
            log.warning("jobs_handler_disabled type=%s reason=%s", job_type.value, msg)
            dispatcher.register(job_type.value, _disabled_handler(job_type.value, reason=msg))

    _safe_register(JobType.PROJECT_CREATE, build_project_create_handler)
    _safe_register(JobType.DOCKER_COMPOSE_UP, build_docker_compose_up_handler)
    _safe_register(JobType.DOCKER_WAIT_READY, build_docker_wait_ready_handler)
    _safe_register(JobType.DOCKER_ENSURE_RUNNING, build_docker_ensure_running_handler)
    _safe_register(JobType.DOCKER_STOP, build_docker_stop_handler)
    _safe_register(JobType.OPENCODE_SESSION_CREATE, build_opencode_session_create_handler)
    _safe_register(JobType.OPENCODE_SEND_INITIAL_PROMPT, build_opencode_send_initial_prompt_handler)
    _safe_register(JobType.OPENCODE_SEND_USER_PROMPT, build_opencode_send_user_prompt_handler)
    _safe_register(JobType.OPENCODE_WAIT_IDLE, build_opencode_wait_idle_handler)
    _safe_register(JobType.PRODUCTION_BUILD, build_production_build_handler)
    _safe_register(JobType.PRODUCTION_START, build_production_start_handler)
    _safe_register(JobType.PRODUCTION_WAIT_READY, build_production_wait_ready_handler)
    _safe_register(JobType.PRODUCTION_STOP, build_production_stop_handler)
    _safe_register(JobType.PROJECT_DELETE, build_project_delete_handler)
    _safe_register(JobType.PROJECTS_DELETE_ALL_FOR_USER, build_delete_all_projects_for_user_handler)
    return dispatcher


class QueueWorker:
    """One polling loop: recover expired leases, read live settings, claim, run.

    Jobs run as tasks owned by this worker; ``concurrency`` bounds how many are
    in flight at once for this loop.
    """

    def __init__(
        self,
        store: QueueStore,
        dispatcher: JobDispatcher,
        *,
        worker_id: str,
        lease_ms: int = DEFAULT_LEASE_MS,
        heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
        default_concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        worker_id = (worker_id or "").strip()
        if not worker_id:
            raise ValueError("worker_id is required")
        self._store = store
        self._dispatcher = dispatcher
        self.worker_id = worker_id
        self._lease_ms = int(lease_ms)
        self._heartbeat_interval_s = float(heartbeat_interval_s)
        self._default_concurrency = int(default_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._stopping = False

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        try:
            _ = task.result()
        except asyncio.CancelledError:
            return
        except Exception as exc:
            log.warning("job_task_failed worker_id=%s err=%s", self.worker_id, _error_text(exc))

    async def _run_job(self, row: dict[str, Any]) -> None:
        try:
            await execute_claimed_job(
                self._store,
                self._dispatcher,
                job_row=row,
                worker_id=self.worker_id,
                lease_ms=self._lease_ms,
                heartbeat_interval_s=self._heartbeat_interval_s,
            )
        except Exception as exc:
            log.warning("job_execute_failed job_id=%s err=%s", row.get("id"), _error_text(exc))

    async def _load_settings(self) -> QueueSettings:
        try:
            return await get_queue_settings(self._store.engine, default_concurrency=self._default_concurrency)
        except Exception as exc:
            log.warning("queue_settings_read_failed worker_id=%s err=%s", self.worker_id, _error_text(exc))
            return QueueSettings(paused=False, concurrency=self._default_concurrency)

    async def tick(self) -> int:
        """Run one poll cycle and return how many jobs were claimed."""

        if self._stopping:
            return 0

        try:
            await self._store.recover_expired_leases()
        except Exception as exc:
            log.warning("jobs_recover_failed worker_id=%s err=%s", self.worker_id, _error_text(exc))

        settings = await self._load_settings()
        if settings.paused:
            return 0

        claimed = 0
        while not self._stopping and len(self._tasks) < settings.concurrency:
            try:
                row = await self._store.claim_next_job(worker_id=self.worker_id, lease_ms=self._lease_ms)
            except Exception as exc:
                log.warning("jobs_claim_failed worker_id=%s err=%s", self.worker_id, _error_text(exc))
                break
            if row is None:
                break

            task = asyncio.create_task(self._run_job(row))
            task.add_done_callback(self._on_task_done)
            self._tasks.add(task)
            claimed += 1

        return claimed

    async def run(
        self,
        stop_event: asyncio.Event,
        *,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        max_iterations: int | None = None,
    ) -> None:
        log.info("queue_worker_start worker_id=%s", self.worker_id)
        await run_worker(self.tick, stop_event, poll_interval_s=poll_interval_s, max_iterations=max_iterations)
        log.info("queue_worker_loop_exit worker_id=%s active=%s", self.worker_id, len(self._tasks))

    async def shutdown(self, grace_s: float = DEFAULT_STOP_GRACE_S) -> None:
        """Stop claiming, wait up to ``grace_s`` for running jobs, then cancel the rest.

        Cancelled jobs release their lease so another worker can pick them up
        right away.
        """

        self._stopping = True
        if not self._tasks:
            return
        tasks = list(self._tasks)
        pending: set[asyncio.Task] = set(tasks)
        if grace_s > 0:
            _, pending = await asyncio.wait(tasks, timeout=float(grace_s))
        for t in pending:
            t.cancel()
        if pending:
            log.warning("queue_worker_cancel_inflight worker_id=%s count=%s", self.worker_id, len(pending))
        _ = await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


@dataclass(slots=True)
class QueueWorkerHandle:
    worker: QueueWorker
    task: asyncio.Task
    stop_event: asyncio.Event

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    async def stop(self, grace_s: float = DEFAULT_STOP_GRACE_S) -> None:
        self.stop_event.set()
        try:
            await self.task
        except Exception as exc:
            log.warning("queue_worker_loop_failed worker_id=%s err=%s", self.worker_id, _error_text(exc))
        await self.worker.shutdown(grace_s)
        log.info("queue_worker_stopped worker_id=%s", self.worker_id)


def start_queue_worker(
    store: QueueStore,
    dispatcher: JobDispatcher,
    *,
    worker_id: str,
    lease_ms: int = DEFAULT_LEASE_MS,
    heartbeat_interval_s: float = DEFAULT_HEARTBEAT_INTERVAL_S,
    default_concurrency: int = DEFAULT_CONCURRENCY,
    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
    max_iterations: int | None = None,
) -> QueueWorkerHandle:
    """Start a worker loop on the running event loop and return its handle."""

    worker = QueueWorker(
        store,
        dispatcher,
        worker_id=worker_id,
        lease_ms=lease_ms,
        heartbeat_interval_s=heartbeat_interval_s,
        default_concurrency=default_concurrency,
    )
    stop_event = asyncio.Event()
    task = asyncio.create_task(
        worker.run(stop_event, poll_interval_s=poll_interval_s, max_iterations=max_iterations)
    )
    return QueueWorkerHandle(worker=worker, task=task, stop_event=stop_event)


async def run_worker(
    on_tick: Callable[[], Awaitable[Any]],
    stop_event: asyncio.Event,
    *,
    poll_interval_s: float = 1.0,
    max_iterations: int | None = None,
) -> None:
    iterations = 0

    while not stop_event.is_set():
        await on_tick()

        iterations += 1
        if max_iterations is not None and iterations >= max_iterations:
            break

        if poll_interval_s > 0:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_s)
            except asyncio.TimeoutError:
                pass


async def main_async(*, max_iterations: int | None = None, poll_interval_s: float | None = None) -> None:
    configure_logging()
    settings = load_settings()

    engine = create_engine(settings.database_url)
    handles: list[QueueWorkerHandle] = []
    job_log_handler: logging.Handler | None = None
    try:
        if settings.job_log_files:
            job_log_handler = install_job_log_handler(settings.data_dir)

        dispatcher = build_default_dispatcher(engine, settings)
        store = QueueStore(engine)
        poll_s = settings.queue_poll_ms / 1000.0 if poll_interval_s is None else float(poll_interval_s)

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)

        for n in range(1, settings.worker_loops + 1):
            handles.append(
                start_queue_worker(
                    store,
                    dispatcher,
                    worker_id=f"{settings.worker_id}-{n}",
                    lease_ms=settings.queue_lease_ms,
                    heartbeat_interval_s=settings.queue_heartbeat_ms / 1000.0,
                    default_concurrency=settings.queue_default_concurrency,
                    poll_interval_s=poll_s,
                    max_iterations=max_iterations,
                )
            )
        log.info("worker_start env=%s loops=%s worker_id=%s", settings.app_env, len(handles), settings.worker_id)

        loops = asyncio.gather(*(h.task for h in handles), return_exceptions=True)
        stopper = asyncio.create_task(stop_event.wait())
        await asyncio.wait({loops, stopper}, return_when=asyncio.FIRST_COMPLETED)
        stopper.cancel()
        log.info("worker_stop")
    finally:
        for handle in handles:
            try:
                await handle.stop()
            except Exception:
                log.warning("worker_handle_stop_failed worker_id=%s", handle.worker_id)
        if job_log_handler is not None:
            logging.getLogger("sandboxer").removeHandler(job_log_handler)
            job_log_handler.close()
        await engine.dispose()


def main(argv: list[str] | None = None) -> None:
    _ = argv
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
