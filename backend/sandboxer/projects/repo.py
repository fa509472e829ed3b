"""Async persistence helpers for projects and per-user settings."""

from __future__ import annotations

from typing import Any

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from sandboxer.core.crypto import FieldEncryptor
from sandboxer.core.logging import get_logger
from sandboxer.core.time import iso_utc_ms
from sandboxer.db.models.projects import PRODUCTION_STATUSES, PROJECT_STATUSES, SETUP_PHASES, ProjectRow
from sandboxer.db.models.user_settings import UserSettingsRow
from sandboxer.db.session import create_sessionmaker, with_sqlite_busy_retry

log = get_logger(__name__)

PORT_RANGE_START = 20_000
PORT_RANGE_END = 29_999

_UPDATABLE = frozenset(
    c.name for c in ProjectRow.__table__.columns if c.name not in {"id", "owner_user_id", "created_at"}
)


async def insert_project(
    engine: AsyncEngine,
    *,
    project_id: str,
    owner_user_id: str,
    name: str,
    slug: str,
    prompt: str,
    model: str | None,
    dev_port: int,
    opencode_port: int,
    path_on_disk: str,
    status: str = "created",
    setup_phase: str = "creating_files",
) -> ProjectRow:
    """Insert the project row; an existing row with the same id is returned unchanged."""

    Session = create_sessionmaker(engine)
    now = iso_utc_ms()

    async def _op() -> ProjectRow:
        async with Session() as session:
            existing = await session.get(ProjectRow, project_id)
            if existing is not None:
                return existing
            row = ProjectRow(
                id=project_id,
                owner_user_id=owner_user_id,
                name=name,
                slug=slug,
                prompt=prompt,
                model=model,
                dev_port=int(dev_port),
                opencode_port=int(opencode_port),
                path_on_disk=path_on_disk,
                status=status,
                setup_phase=setup_phase,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await session.get(ProjectRow, project_id)
                if existing is None:
                    raise
                return existing
            return row

    return await with_sqlite_busy_retry(_op)


async def get_project(engine: AsyncEngine, project_id: str) -> ProjectRow | None:
    Session = create_sessionmaker(engine)

    async def _op() -> ProjectRow | None:
        async with Session() as session:
            return await session.get(ProjectRow, project_id)

    return await with_sqlite_busy_retry(_op)


async def get_project_or_skip(engine: AsyncEngine, project_id: str, *, job_type: str = "") -> ProjectRow | None:
    """Load a project for a pipeline step; ``None`` means the step has nothing to do."""

    project = await get_project(engine, project_id)
    if project is None:
        log.warning("project_missing_skip project_id=%s type=%s", project_id, job_type)
        return None
    if project.status == "deleting":
        log.info("project_deleting_skip project_id=%s type=%s", project_id, job_type)
        return None
    return project


def _check_values(values: dict[str, Any]) -> None:
    unknown = set(values) - _UPDATABLE
    if unknown:
        raise ValueError(f"unknown project fields: {', '.join(sorted(unknown))}")
    if "status" in values and values["status"] not in PROJECT_STATUSES:
        raise ValueError(f"invalid project status: {values['status']}")
    if "setup_phase" in values and values["setup_phase"] not in SETUP_PHASES:
        raise ValueError(f"invalid setup phase: {values['setup_phase']}")
    status = values.get("production_status")
    if status is not None and status not in PRODUCTION_STATUSES:
        raise ValueError(f"invalid production status: {status}")


async def update_project(engine: AsyncEngine, project_id: str, **values: Any) -> bool:
    if not values:
        return False
    _check_values(values)
    values["updated_at"] = iso_utc_ms()
    Session = create_sessionmaker(engine)

    async def _op() -> int:
        async with Session() as session:
            result = await session.execute(sa.update(ProjectRow).where(ProjectRow.id == project_id).values(**values))
            await session.commit()
            return int(result.rowcount or 0)

    return await with_sqlite_busy_retry(_op) == 1


async def list_projects_for_user(engine: AsyncEngine, owner_user_id: str) -> list[ProjectRow]:
    Session = create_sessionmaker(engine)

    async def _op() -> list[ProjectRow]:
        async with Session() as session:
            result = await session.execute(
                sa.select(ProjectRow)
                .where(ProjectRow.owner_user_id == owner_user_id)
                .order_by(ProjectRow.created_at.asc(), ProjectRow.id.asc())
            )
            return list(result.scalars().all())

    return await with_sqlite_busy_retry(_op)


async def list_projects(engine: AsyncEngine, *, limit: int = 100, offset: int = 0) -> list[ProjectRow]:
    Session = create_sessionmaker(engine)

    async def _op() -> list[ProjectRow]:
        async with Session() as session:
            result = await session.execute(
                sa.select(ProjectRow).order_by(ProjectRow.created_at.desc()).limit(int(limit)).offset(int(offset))
            )
            return list(result.scalars().all())

    return await with_sqlite_busy_retry(_op)


async def hard_delete_project(engine: AsyncEngine, project_id: str) -> bool:
    async def _op() -> int:
        async with engine.begin() as conn:
            result = await conn.exec_driver_sql("DELETE FROM projects WHERE id=:id;", {"id": project_id})
            return int(result.rowcount or 0)

    return await with_sqlite_busy_retry(_op) == 1


async def allocate_ports(
    engine: AsyncEngine,
    count: int,
    *,
    start: int = PORT_RANGE_START,
    end: int = PORT_RANGE_END,
) -> list[int]:
    """Pick the ``count`` lowest ports in range not held by any project."""

    async def _op() -> set[int]:
        async with engine.connect() as conn:
            result = await conn.exec_driver_sql(
                "SELECT dev_port FROM projects UNION SELECT opencode_port FROM projects "
                "UNION SELECT production_port FROM projects WHERE production_port IS NOT NULL;"
            )
            return {int(r[0]) for r in result.fetchall() if r[0] is not None}

    used = await with_sqlite_busy_retry(_op)
    ports: list[int] = []
    for port in range(int(start), int(end) + 1):
        if port in used:
            continue
        ports.append(port)
        if len(ports) == count:
            return ports
    raise RuntimeError(f"no free ports left in {start}-{end}")


async def get_user_settings(engine: AsyncEngine, user_id: str) -> UserSettingsRow | None:
    Session = create_sessionmaker(engine)

    async def _op() -> UserSettingsRow | None:
        async with Session() as session:
            return await session.get(UserSettingsRow, user_id)

    return await with_sqlite_busy_retry(_op)


async def get_user_provider_key(engine: AsyncEngine, user_id: str, *, encryptor: FieldEncryptor) -> str | None:
    row = await get_user_settings(engine, user_id)
    return encryptor.unseal(row.provider_api_key_enc if row is not None else None)


async def set_user_settings(
    engine: AsyncEngine,
    user_id: str,
    *,
    encryptor: FieldEncryptor,
    provider_api_key: str | None = None,
    default_model: str | None = None,
) -> None:
    user_id = (user_id or "").strip()
    if not user_id:
        raise ValueError("user_id is required")

    values: dict[str, Any] = {"updated_at": iso_utc_ms()}
    if provider_api_key is not None:
        values["provider_api_key_enc"] = encryptor.seal(provider_api_key)
    if default_model is not None:
        values["default_model"] = default_model.strip() or None

    Session = create_sessionmaker(engine)

    async def _op() -> None:
        async with Session() as session:
            stmt = sqlite_insert(UserSettingsRow).values(user_id=user_id, **values)
            stmt = stmt.on_conflict_do_update(index_elements=[UserSettingsRow.user_id], set_=values)
            await session.execute(stmt)
            await session.commit()

    await with_sqlite_busy_retry(_op)
