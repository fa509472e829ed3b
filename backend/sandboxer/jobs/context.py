from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel

from sandboxer.core.logging import get_logger
from sandboxer.core.metrics import JOBS_LEASE_LOST_TOTAL
from sandboxer.core.time import utc_now
from sandboxer.jobs.model import Job, JobOutcome
from sandboxer.jobs.payloads import validate_payload
from sandboxer.jobs.store import DEFAULT_LEASE_MS, QueueStore

log = get_logger(__name__)

P = TypeVar("P", bound=BaseModel)


@dataclass(slots=True)
class JobContext:
    """Everything a handler may touch about the job it is running.

    ``cancel_requested()`` is the cooperative-cancellation check handlers call
    at safe points; it also turns true once the lease has been lost, because
    another worker now owns the job.
    """

    job: Job
    worker_id: str
    store: QueueStore
    lease_ms: int = DEFAULT_LEASE_MS
    clock: Callable[[], datetime] = utc_now
    lease_lost: bool = False
    _payload: BaseModel | None = field(default=None, repr=False)

    @property
    def job_id(self) -> str:
        return self.job.id

    def now(self) -> datetime:
        return self.clock()

    def payload(self, model: type[P] | None = None) -> Any:
        if self._payload is None:
            self._payload = validate_payload(self.job.type, self.job.payload_json)
        if model is not None and not isinstance(self._payload, model):
            raise TypeError(f"payload of {self.job.type} is {type(self._payload).__name__}, not {model.__name__}")
        return self._payload

    async def heartbeat(self) -> bool:
        if self.lease_lost:
            return False
        ok = await self.store.heartbeat_lease(
            job_id=self.job.id,
            worker_id=self.worker_id,
            lease_ms=self.lease_ms,
            now=self.now(),
        )
        if not ok:
            self.lease_lost = True
            JOBS_LEASE_LOST_TOTAL.inc()
            log.warning("job_lease_lost job_id=%s worker_id=%s", self.job.id, self.worker_id)
        return ok

    async def cancel_requested(self) -> bool:
        if self.lease_lost:
            return True
        return await self.store.get_cancel_requested_at(self.job.id) is not None

    def reschedule(self, delay_ms: int) -> JobOutcome:
        return JobOutcome.reschedule(delay_ms)
