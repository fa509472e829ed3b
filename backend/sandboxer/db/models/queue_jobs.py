from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from sandboxer.db.models.base import Base, now_default


class QueueJobRow(Base):
    __tablename__ = "queue_jobs"
    __table_args__ = (
        sa.CheckConstraint(
            "state IN ('queued','running','succeeded','failed','cancelled')",
            name="ck_queue_jobs_state",
        ),
        sa.CheckConstraint("attempts >= 0 AND attempts <= max_attempts", name="ck_queue_jobs_attempts"),
        sa.Index("idx_queue_jobs_claim", "state", "available_at", "created_at"),
        sa.Index("idx_queue_jobs_lease", "state", "lease_expires_at"),
        sa.Index("idx_queue_jobs_project", "project_id", "state"),
        sa.Index("idx_queue_jobs_type", "type"),
        sa.Index("uq_queue_jobs_dedupe_active", "dedupe_key", "dedupe_active", unique=True),
    )

    id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    created_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())

    type: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    state: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=sa.text("'queued'"))
    project_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    payload_json: Mapped[str] = mapped_column(sa.Text(), nullable=False)

    attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("0"))
    max_attempts: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default=sa.text("3"))
    available_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())

    lease_owner: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    leased_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    lease_expires_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    cancel_requested_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    cancelled_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    finished_at: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    dedupe_active: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
