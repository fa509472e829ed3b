from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from cryptography.fernet import Fernet

from sandboxer.core.crypto import FieldEncryptor
from sandboxer.core.logging import get_logger

log = get_logger(__name__)

MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 20


@dataclass(frozen=True, slots=True)
class Settings:
    app_env: str
    database_url: str
    secret_key: str
    field_encryption_key: str
    admin_username: str
    admin_password: str
    data_dir: Path
    template_dir: Path
    worker_id: str
    worker_loops: int
    queue_lease_ms: int
    queue_poll_ms: int
    queue_heartbeat_ms: int
    queue_default_concurrency: int
    sandbox_network: str
    sandbox_host: str
    production_build_command: str
    job_log_files: bool

    @property
    def is_prod(self) -> bool:
        return self.app_env in {"prod", "production"}

    @property
    def projects_dir(self) -> Path:
        return self.data_dir / "projects"

    @property
    def production_dir(self) -> Path:
        return self.data_dir / "production"


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    value = env.get(key, default)
    return value.strip()


def _get_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _get(env, key, "1" if default else "0").lower()
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return default


def _get_int(env: Mapping[str, str], key: str, default: int, *, min_v: int, max_v: int) -> int:
    raw = _get(env, key, "")
    if not raw:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        log.warning("config_invalid_int key=%s value=%s", key, raw)
        return int(default)
    return max(int(min_v), min(int(value), int(max_v)))


def _read_key_file(path: Path) -> str | None:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        log.warning("field_encryption_key_read_failed path=%s err=%s", str(path), type(exc).__name__)
        return None

    value = raw.strip()
    return value or None


def _atomic_write(path: Path, *, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    try:
        os.chmod(tmp, 0o600)
    except OSError:
        pass
    os.replace(tmp, path)


def _ensure_field_encryption_key(env: Mapping[str, str], *, app_env: str, data_dir: Path) -> str:
    key = _get(env, "FIELD_ENCRYPTION_KEY", "")
    if key:
        FieldEncryptor.from_key(key)
        return key

    file_raw = _get(env, "FIELD_ENCRYPTION_KEY_FILE", "")
    key_file = Path(file_raw) if file_raw else data_dir / "field_encryption_key"

    from_file = _read_key_file(key_file)
    if from_file is not None:
        FieldEncryptor.from_key(from_file)
        return from_file

    if app_env in {"prod", "production"}:
        return ""

    generated = Fernet.generate_key().decode("utf-8")
    try:
        _atomic_write(key_file, content=generated + "\n")
        log.info("field_encryption_key_generated path=%s", str(key_file))
    except OSError as exc:
        log.warning(
            "field_encryption_key_generated_not_persisted path=%s err=%s",
            str(key_file),
            type(exc).__name__,
        )
    return generated


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = env or os.environ

    app_env = _get(env, "APP_ENV", "dev").lower()
    is_prod = app_env in {"prod", "production"}
    data_dir = Path(_get(env, "DATA_DIR", "./data") or "./data")

    database_url = _get(env, "DATABASE_URL", f"sqlite+aiosqlite:///{(data_dir / 'sandboxer.db').as_posix()}")
    secret_key = _get(env, "SECRET_KEY", "" if is_prod else "dev-secret-key")
    field_encryption_key = _ensure_field_encryption_key(env, app_env=app_env, data_dir=data_dir)

    admin_username = _get(env, "ADMIN_USERNAME", "admin")
    admin_password = _get(env, "ADMIN_PASSWORD", "" if is_prod else "admin")

    template_dir = Path(_get(env, "TEMPLATE_DIR", "./templates/starter") or "./templates/starter")

    worker_id = _get(env, "WORKER_ID", "") or f"pid{os.getpid()}"
    worker_loops = _get_int(env, "WORKER_LOOPS", 1, min_v=1, max_v=8)

    queue_lease_ms = _get_int(env, "QUEUE_LEASE_MS", 60_000, min_v=1_000, max_v=60 * 60_000)
    queue_poll_ms = _get_int(env, "QUEUE_POLL_MS", 250, min_v=10, max_v=60_000)
    queue_heartbeat_ms = _get_int(env, "QUEUE_HEARTBEAT_MS", 5_000, min_v=100, max_v=queue_lease_ms)
    queue_default_concurrency = _get_int(
        env,
        "QUEUE_DEFAULT_CONCURRENCY",
        2,
        min_v=MIN_CONCURRENCY,
        max_v=MAX_CONCURRENCY,
    )

    sandbox_network = _get(env, "SANDBOX_NETWORK", "sandboxer-shared") or "sandboxer-shared"
    sandbox_host = _get(env, "SANDBOX_HOST", "127.0.0.1") or "127.0.0.1"
    production_build_command = _get(env, "PRODUCTION_BUILD_COMMAND", "pnpm run build") or "pnpm run build"
    job_log_files = _get_bool(env, "QUEUE_JOB_LOG_FILES", True)

    settings = Settings(
        app_env=app_env,
        database_url=database_url,
        secret_key=secret_key,
        field_encryption_key=field_encryption_key,
        admin_username=admin_username,
        admin_password=admin_password,
        data_dir=data_dir,
        template_dir=template_dir,
        worker_id=worker_id,
        worker_loops=worker_loops,
        queue_lease_ms=queue_lease_ms,
        queue_poll_ms=queue_poll_ms,
        queue_heartbeat_ms=queue_heartbeat_ms,
        queue_default_concurrency=queue_default_concurrency,
        sandbox_network=sandbox_network,
        sandbox_host=sandbox_host,
        production_build_command=production_build_command,
        job_log_files=job_log_files,
    )

    if settings.is_prod:
        missing: list[str] = []
        if not settings.secret_key:
            missing.append("SECRET_KEY")
        if not settings.field_encryption_key:
            missing.append("FIELD_ENCRYPTION_KEY")
        if not settings.admin_password:
            missing.append("ADMIN_PASSWORD")
        if missing:
            raise ValueError(f"Missing required env vars for prod: {', '.join(missing)}")

    return settings
