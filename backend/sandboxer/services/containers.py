"""Container group control through the ``docker compose`` CLI.

Each project gets its own compose project name so that groups never collide:
``sandboxer_{projectId}`` for the dev group and
``sandboxer_prod_{projectId[:8]}_{hash}`` for each deployed production version.
All operations are safe to repeat; compose reconciles to the requested state.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from sandboxer.core.logging import get_logger
from sandboxer.core.redact import redact_text

log = get_logger(__name__)

COMPOSE_TIMEOUT_S = 600.0
PROBE_TIMEOUT_S = 5.0
PRODUCTION_COMPOSE_FILE = "docker-compose.production.yml"
DEFAULT_NETWORK = "sandboxer-shared"


@dataclass(frozen=True, slots=True)
class ComposeResult:
    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def error_summary(self) -> str:
        return redact_text((self.stderr or self.stdout or f"exit code {self.exit_code}").strip()[:500])


@dataclass(frozen=True, slots=True)
class ContainerStatus:
    name: str
    service: str
    state: str
    health: str = ""


class ContainerRuntime(Protocol):
    async def up(self, project_id: str, path: Path, *, preserve_others: bool = True) -> ComposeResult: ...

    async def down(self, project_id: str, path: Path) -> ComposeResult: ...

    async def down_with_volumes(self, project_id: str, path: Path) -> ComposeResult: ...

    async def status(self, project_id: str, path: Path) -> list[ContainerStatus]: ...

    async def ensure_volume(self, name: str) -> ComposeResult: ...

    async def ensure_network(self, name: str) -> ComposeResult: ...

    async def up_production(self, project_id: str, path: Path, *, port: int, production_hash: str) -> ComposeResult: ...

    async def down_production(self, project_id: str, path: Path, *, production_hash: str) -> ComposeResult: ...

    async def status_production(self, project_id: str, path: Path, *, production_hash: str) -> list[ContainerStatus]: ...


CommandRunner = Callable[..., Awaitable[ComposeResult]]


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_s: float = COMPOSE_TIMEOUT_S,
) -> ComposeResult:
    """Run ``args`` without a shell and capture its output.

    Spawn failures and timeouts come back as unsuccessful results rather than
    exceptions.
    """

    full_env = dict(os.environ)
    full_env.update(env or {})
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
        )
    except OSError as exc:
        log.warning("command_spawn_failed cmd=%s err=%s", args[0] if args else "", exc)
        return ComposeResult(success=False, stderr=str(exc), exit_code=127)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return ComposeResult(success=False, stderr=f"command timed out after {int(timeout_s)}s", exit_code=124)

    exit_code = int(process.returncode if process.returncode is not None else 1)
    return ComposeResult(
        success=exit_code == 0,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        exit_code=exit_code,
    )


def project_name(project_id: str) -> str:
    return f"sandboxer_{project_id}"


def production_project_name(project_id: str, production_hash: str) -> str:
    return f"sandboxer_prod_{project_id[:8]}_{production_hash}"


def project_volume_names(project_id: str) -> list[str]:
    return [f"sandboxer_{project_id}_node_modules", f"sandboxer_{project_id}_pnpm_store"]


def _status_from_obj(obj: Any) -> ContainerStatus | None:
    if not isinstance(obj, dict):
        return None
    return ContainerStatus(
        name=str(obj.get("Name") or ""),
        service=str(obj.get("Service") or ""),
        state=str(obj.get("State") or "").lower(),
        health=str(obj.get("Health") or "").lower(),
    )


def parse_compose_ps(output: str) -> list[ContainerStatus]:
    """Parse ``compose ps --format json`` output.

    Newer compose releases print one JSON object per line, older ones a single
    JSON array; both are accepted. Unparseable output yields an empty list.
    """

    text = (output or "").strip()
    if not text:
        return []
    try:
        if text.startswith("["):
            objs = json.loads(text)
        else:
            objs = [json.loads(line) for line in text.splitlines() if line.strip()]
    except ValueError:
        log.warning("compose_ps_parse_failed output=%s", redact_text(text[:200]))
        return []
    return [s for s in (_status_from_obj(o) for o in objs) if s is not None]


class ComposeRuntime:
    def __init__(
        self,
        *,
        runner: CommandRunner = run_command,
        network: str = DEFAULT_NETWORK,
        timeout_s: float = COMPOSE_TIMEOUT_S,
    ) -> None:
        self._runner = runner
        self._network = network
        self._timeout_s = float(timeout_s)
        self._compose: list[str] | None = None

    async def _compose_command(self) -> list[str] | None:
        if self._compose is not None:
            return self._compose
        for candidate in (["docker", "compose"], ["docker-compose"]):
            result = await self._runner([*candidate, "version"], timeout_s=PROBE_TIMEOUT_S)
            if result.success:
                log.info("compose_command_detected cmd=%s", " ".join(candidate))
                self._compose = candidate
                return candidate
        log.error("compose_command_missing")
        return None

    async def _run_compose(
        self,
        name: str,
        path: Path,
        args: list[str],
        *,
        compose_file: str | None = None,
        extra_env: Mapping[str, str] | None = None,
    ) -> ComposeResult:
        compose = await self._compose_command()
        if compose is None:
            return ComposeResult(success=False, stderr="docker compose is not installed", exit_code=127)

        full = [*compose, "--project-name", name, "--ansi", "never"]
        if compose_file:
            full += ["-f", compose_file]
        full += args

        env = {"COMPOSE_PROJECT_NAME": name, "SANDBOX_NETWORK": self._network}
        env.update(extra_env or {})
        log.debug("compose_run project=%s args=%s cwd=%s", name, " ".join(args), path)
        result = await self._runner(full, cwd=Path(path), env=env, timeout_s=self._timeout_s)
        if not result.success:
            log.warning("compose_failed project=%s args=%s exit=%s err=%s", name, " ".join(args), result.exit_code, result.error_summary)
        return result

    async def ensure_volume(self, name: str) -> ComposeResult:
        # `volume create` is a no-op for an existing volume
        result = await self._runner(["docker", "volume", "create", name], timeout_s=PROBE_TIMEOUT_S)
        if not result.success:
            log.warning("docker_volume_ensure_failed name=%s err=%s", name, result.error_summary)
        return result

    async def ensure_network(self, name: str) -> ComposeResult:
        inspect = await self._runner(["docker", "network", "inspect", name], timeout_s=PROBE_TIMEOUT_S)
        if inspect.success:
            return inspect
        result = await self._runner(["docker", "network", "create", name], timeout_s=PROBE_TIMEOUT_S)
        if not result.success and "already exists" in (result.stderr or ""):
            return ComposeResult(success=True, stdout=result.stdout, stderr=result.stderr, exit_code=0)
        if not result.success:
            log.warning("docker_network_ensure_failed name=%s err=%s", name, result.error_summary)
        return result

    async def up(self, project_id: str, path: Path, *, preserve_others: bool = True) -> ComposeResult:
        args = ["up", "-d", "--build"]
        if not preserve_others:
            args.insert(2, "--remove-orphans")
        return await self._run_compose(project_name(project_id), path, args, extra_env={"PROJECT_ID": project_id})

    async def down(self, project_id: str, path: Path) -> ComposeResult:
        return await self._run_compose(project_name(project_id), path, ["down", "--remove-orphans"])

    async def down_with_volumes(self, project_id: str, path: Path) -> ComposeResult:
        return await self._run_compose(project_name(project_id), path, ["down", "--remove-orphans", "--volumes"])

    async def status(self, project_id: str, path: Path) -> list[ContainerStatus]:
        result = await self._run_compose(project_name(project_id), path, ["ps", "--format", "json"])
        return parse_compose_ps(result.stdout) if result.success else []

    async def up_production(self, project_id: str, path: Path, *, port: int, production_hash: str) -> ComposeResult:
        return await self._run_compose(
            production_project_name(project_id, production_hash),
            path,
            ["up", "-d", "--build"],
            compose_file=PRODUCTION_COMPOSE_FILE,
            extra_env={"PROJECT_ID": project_id, "PRODUCTION_PORT": str(int(port))},
        )

    async def down_production(self, project_id: str, path: Path, *, production_hash: str) -> ComposeResult:
        return await self._run_compose(
            production_project_name(project_id, production_hash),
            path,
            ["down"],
            compose_file=PRODUCTION_COMPOSE_FILE,
        )

    async def status_production(self, project_id: str, path: Path, *, production_hash: str) -> list[ContainerStatus]:
        result = await self._run_compose(
            production_project_name(project_id, production_hash),
            path,
            ["ps", "--format", "json"],
            compose_file=PRODUCTION_COMPOSE_FILE,
        )
        return parse_compose_ps(result.stdout) if result.success else []
