from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from sandboxer.db.models.base import Base, now_default


class RuntimeSetting(Base):
    """Process-wide knobs that every worker re-reads each tick (queue pause, concurrency)."""

    __tablename__ = "runtime_settings"

    key: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    value_json: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())
    updated_by: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
