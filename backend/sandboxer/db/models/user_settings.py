from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from sandboxer.db.models.base import Base, now_default


class UserSettingsRow(Base):
    __tablename__ = "user_settings"

    user_id: Mapped[str] = mapped_column(sa.Text(), primary_key=True)
    provider_api_key_enc: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    default_model: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    updated_at: Mapped[str] = mapped_column(sa.Text(), nullable=False, server_default=now_default())
