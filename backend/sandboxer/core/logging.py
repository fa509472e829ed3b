from __future__ import annotations

import logging
import os

from sandboxer.core.redact import redact_any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


class RedactFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
            record.msg = redact_any(message)
            record.args = ()
            for key, value in list(record.__dict__.items()):
                if key.startswith("_") or key == "msg":
                    continue
                if isinstance(value, (str, dict, list, tuple)):
                    record.__dict__[key] = redact_any(value)
        except Exception:
            pass
        return True


def _level_from_env(default: int) -> int:
    raw = (os.environ.get("LOG_LEVEL") or "").strip().upper()
    if not raw:
        return default
    value = logging.getLevelName(raw)
    return value if isinstance(value, int) else default


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=_level_from_env(level), format=LOG_FORMAT)
    root = logging.getLogger()
    # Filters on the root logger do not see records propagated from child loggers.
    for handler in root.handlers:
        if not any(isinstance(f, RedactFilter) for f in handler.filters):
            handler.addFilter(RedactFilter())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
