from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase

NOW_ISO_SQL = "(strftime('%Y-%m-%dT%H:%M:%fZ','now'))"


def now_default() -> sa.TextClause:
    return sa.text(NOW_ISO_SQL)


class Base(DeclarativeBase):
    pass


# Import all model modules so Base.metadata is fully populated for create_all().
from sandboxer.db.models import projects as _projects  # noqa: F401,E402
from sandboxer.db.models import queue_jobs as _queue_jobs  # noqa: F401,E402
from sandboxer.db.models import runtime_settings as _runtime_settings  # noqa: F401,E402
from sandboxer.db.models import user_settings as _user_settings  # noqa: F401,E402
