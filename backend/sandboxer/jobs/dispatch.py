from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from sandboxer.jobs.context import JobContext
from sandboxer.jobs.errors import NoHandlerError
from sandboxer.jobs.model import JobOutcome

JobHandler = Callable[[JobContext], Awaitable[JobOutcome | None]]


@dataclass(slots=True)
class JobDispatcher:
    handlers: dict[str, JobHandler] = field(default_factory=dict)

    def register(self, job_type: str, handler: JobHandler) -> None:
        job_type = str(job_type).strip()
        if not job_type:
            raise ValueError("job_type is required")
        self.handlers[job_type] = handler

    def handler(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        def _wrap(fn: JobHandler) -> JobHandler:
            self.register(job_type, fn)
            return fn

        return _wrap

    def get(self, job_type: str) -> JobHandler | None:
        return self.handlers.get(str(job_type or "").strip())

    async def dispatch(self, ctx: JobContext) -> JobOutcome:
        handler = self.get(ctx.job.type)
        if handler is None:
            raise NoHandlerError(ctx.job.type)
        outcome = await handler(ctx)
        return outcome if outcome is not None else JobOutcome.success()
