from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from sandboxer.db.models.base import Base, now_default

PROJECT_STATUSES: tuple[str, ...] = ("created", "starting", "running", "stopping", "stopped", "error", "deleting")
SETUP_PHASES: tuple[str, ...] = (
    "not_started",
    "creating_files",
    "starting_docker",
    "initializing_agent",
    "sending_prompts",
    "waiting_completion",
    "completed",
    "failed",
)
PRODUCTION_STATUSES: tuple[str, ...] = ("queued", "building", "running", "failed", "stopped")


def _in_list(column: str, values: tuple[str, ...]) -> str:
    return f"{column} IN (" + ",".join(f"'{v}'" for v in values) + ")"


class ProjectRow(Base):
    __tablename__ = "projects"
    __table_args__ = (
        sa.CheckConstraint(_in_list("status", PROJECT_STATUSES), name="ck_projects_status"),
        sa.CheckConstraint(_in_list("setup_phase", SETUP_PHASES), name="ck_projects_setup_phase"),
        sa.CheckConstraint(
            "production_status IS NULL OR " + _in_list("production_status", PRODUCTION_STATUSES),
            name="ck_projects_production_status",
        ),
        sa.Index("idx_projects_owner", "owner_user_id"),
        sa.Index("uq_projects_slug", "slug", unique=True),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    owner_user_id: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())

    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    slug: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    prompt: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    model: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    dev_port: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    opencode_port: Mapped[int] = mapped_column(sa.Integer(), nullable=False)
    status: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'created'"))
    setup_phase: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'not_started'"))
    setup_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    path_on_disk: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    bootstrap_session_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    initial_prompt_sent: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.text("0"))
    user_prompt_message_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    user_prompt_sent: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.text("0"))
    user_prompt_completed: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.text("0"))

    production_port: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    production_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    production_status: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    production_started_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    production_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    production_hash: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
