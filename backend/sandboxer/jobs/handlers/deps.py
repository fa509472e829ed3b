from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.config import Settings
from sandboxer.core.crypto import FieldEncryptor
from sandboxer.db.models.projects import ProjectRow
from sandboxer.services.containers import CommandRunner, ContainerRuntime, run_command
from sandboxer.services.opencode import OpencodeClient

AgentFactory = Callable[[int], OpencodeClient]


def default_agent_factory(settings: Settings) -> AgentFactory:
    def _factory(port: int) -> OpencodeClient:
        return OpencodeClient(f"http://{settings.sandbox_host}:{int(port)}")

    return _factory


@dataclass(frozen=True, slots=True)
class HandlerDeps:
    """Collaborators shared by every pipeline handler, built once per worker process."""

    engine: AsyncEngine
    settings: Settings
    runtime: ContainerRuntime
    agent_factory: AgentFactory
    run_build: CommandRunner = field(default=run_command)

    def encryptor(self) -> FieldEncryptor:
        return FieldEncryptor.from_key(self.settings.field_encryption_key)

    def agent_for(self, project: ProjectRow) -> OpencodeClient:
        return self.agent_factory(int(project.opencode_port))


def project_dir(project: ProjectRow) -> Path:
    return Path(project.path_on_disk)
