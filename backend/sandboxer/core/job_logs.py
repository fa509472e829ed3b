"""Per-job log files.

While a handler runs, records logged from its task are mirrored into
``{DATA_DIR}/queue-logs/{job_id}.log`` so operators can read what one job did
without grepping the worker output. The current job id travels in a
``ContextVar``, which asyncio copies into each task.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import re
from collections.abc import Iterator
from pathlib import Path

from sandboxer.core.logging import LOG_FORMAT, RedactFilter

QUEUE_LOGS_DIRNAME = "queue-logs"
DEFAULT_TAIL_BYTES = 64 * 1024

_current_job_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("sandboxer_job_id", default=None)

_SAFE_JOB_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def current_job_id() -> str | None:
    return _current_job_id.get()


def job_log_path(data_dir: str | Path, job_id: str) -> Path:
    if not _SAFE_JOB_ID_RE.match(job_id or ""):
        raise ValueError("invalid job id")
    return Path(data_dir) / QUEUE_LOGS_DIRNAME / f"{job_id}.log"


@contextlib.contextmanager
def job_log_context(job_id: str) -> Iterator[None]:
    token = _current_job_id.set(job_id)
    try:
        yield
    finally:
        _current_job_id.reset(token)


class JobLogHandler(logging.Handler):
    def __init__(self, data_dir: str | Path) -> None:
        super().__init__()
        self._data_dir = Path(data_dir)
        self.setFormatter(logging.Formatter(LOG_FORMAT))
        self.addFilter(RedactFilter())

    def emit(self, record: logging.LogRecord) -> None:
        job_id = current_job_id()
        if not job_id:
            return
        try:
            path = job_log_path(self._data_dir, job_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as fh:
                fh.write(self.format(record) + "\n")
        except Exception:
            self.handleError(record)


def install_job_log_handler(data_dir: str | Path, *, logger_name: str = "sandboxer") -> JobLogHandler:
    logger = logging.getLogger(logger_name)
    for handler in logger.handlers:
        if isinstance(handler, JobLogHandler):
            return handler
    handler = JobLogHandler(data_dir)
    logger.addHandler(handler)
    return handler


def read_job_log(data_dir: str | Path, job_id: str, *, max_bytes: int = DEFAULT_TAIL_BYTES) -> str:
    path = job_log_path(data_dir, job_id)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return ""
    with path.open("rb") as fh:
        if size > max_bytes:
            fh.seek(size - max_bytes)
        data = fh.read()
    return data.decode("utf-8", errors="replace")


def delete_job_log(data_dir: str | Path, job_id: str) -> bool:
    try:
        job_log_path(data_dir, job_id).unlink()
    except FileNotFoundError:
        return False
    return True
