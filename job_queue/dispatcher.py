"""
Job Dispatcher — Claims due jobs and runs them through typed handlers.

Each tick:
  1. If the previous tick is still running, skip (ticks never overlap).
  2. claim_batch(concurrency).
  3. Run every claimed job concurrently, each raced against a timeout.
  4. Success → complete. PermanentJobError / unknown type → fail_permanently.
     Anything else (including timeout) → fail_with_backoff.

Nothing a handler does can escape the tick.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError

from job_queue.ticker import PeriodicTicker
from job_queue.work_queue import WorkQueue
from models.schemas import Job, JobType, parse_job_payload

logger = structlog.get_logger()

JobHandler = Callable[[BaseModel, Job], Awaitable[Optional[dict[str, Any]]]]


class PermanentJobError(Exception):
    """Raised by a handler when retrying the job cannot help."""


# ──────────────────────────────────────────────────────────────
#  Handler registry
# ──────────────────────────────────────────────────────────────

class HandlerRegistry:
    """Static JobType → handler table, filled once at startup."""

    def __init__(self):
        self._handlers: dict[JobType, JobHandler] = {}

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        if not isinstance(job_type, JobType):
            raise TypeError(f"Handlers are keyed by JobType, got {job_type!r}")
        if job_type in self._handlers:
            raise ValueError(f"Handler already registered for {job_type.value}")
        self._handlers[job_type] = handler
        logger.info("job_handler_registered", job_type=job_type.value)

    def resolve(self, job_type: str) -> Optional[JobHandler]:
        try:
            return self._handlers.get(JobType(job_type))
        except ValueError:
            return None

    @property
    def registered_types(self) -> list[str]:
        return [t.value for t in self._handlers]


@dataclass
class TickReport:
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: bool = False


# ──────────────────────────────────────────────────────────────
#  Dispatcher
# ──────────────────────────────────────────────────────────────

class JobDispatcher:
    """
    Usage:
        registry = HandlerRegistry()
        registry.register(JobType.CAMPAIGN_STEP, executor.handle)
        dispatcher = JobDispatcher(queue, registry, concurrency=5, timeout_seconds=300)
        dispatcher.start_background(poll_interval_seconds=30)
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        queue: WorkQueue,
        registry: HandlerRegistry,
        concurrency: int = 5,
        timeout_seconds: float = 300.0,
        ticker: Optional[PeriodicTicker] = None,
    ):
        self.queue = queue
        self.registry = registry
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.ticker = ticker
        self._in_flight = False

    @property
    def busy(self) -> bool:
        return self._in_flight

    async def tick(self) -> TickReport:
        if self._in_flight:
            logger.debug("dispatcher_tick_skipped")
            return TickReport(skipped=True)

        self._in_flight = True
        try:
            jobs = await self.queue.claim_batch(self.concurrency)
            report = TickReport(claimed=len(jobs))
            if not jobs:
                return report

            outcomes = await asyncio.gather(
                *(self._run_job(job) for job in jobs), return_exceptions=True,
            )
            for job, outcome in zip(jobs, outcomes):
                if isinstance(outcome, BaseException):
                    # The status write itself failed; the job is left PROCESSING.
                    logger.error("job_bookkeeping_error", job_id=job.id, job_type=job.type,
                                 error=str(outcome) or type(outcome).__name__)
            report.completed = sum(1 for ok in outcomes if ok is True)
            report.failed = report.claimed - report.completed
            logger.info("dispatcher_tick", claimed=report.claimed,
                        completed=report.completed, failed=report.failed)
            return report
        finally:
            self._in_flight = False

    async def _run_job(self, job: Job) -> bool:
        handler = self.registry.resolve(job.type)
        if handler is None:
            logger.warning("unknown_job_type", job_id=job.id, job_type=job.type)
            await self.queue.fail_permanently(job.id, f"Unknown job type: {job.type}")
            return False

        try:
            payload = parse_job_payload(JobType(job.type), job.payload)
        except ValidationError as e:
            await self.queue.fail_permanently(job.id, f"Invalid payload: {e.errors(include_url=False)}")
            return False

        try:
            result = await asyncio.wait_for(handler(payload, job), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("job_timeout", job_id=job.id, job_type=job.type,
                         timeout=self.timeout_seconds)
            await self.queue.fail_with_backoff(job.id, f"Timed out after {self.timeout_seconds}s")
            return False
        except PermanentJobError as e:
            logger.error("job_permanent_error", job_id=job.id, job_type=job.type, error=str(e))
            await self.queue.fail_permanently(job.id, str(e))
            return False
        except Exception as e:
            logger.error("job_handler_error", job_id=job.id, job_type=job.type,
                         error=str(e), exc_info=True)
            await self.queue.fail_with_backoff(job.id, str(e) or type(e).__name__)
            return False

        await self.queue.complete(job.id)
        logger.debug("job_result", job_id=job.id, result=result)
        return True

    # ── Background loop ───────────────────────────────────────

    def start_background(self, poll_interval_seconds: float = 30.0) -> None:
        if self.ticker is None:
            self.ticker = PeriodicTicker("dispatcher", poll_interval_seconds, self.tick)
        self.ticker.start()
        logger.info("dispatcher_started", concurrency=self.concurrency,
                    timeout=self.timeout_seconds, handlers=self.registry.registered_types)

    async def stop(self) -> None:
        if self.ticker is not None:
            await self.ticker.stop()
        logger.info("dispatcher_stopped")
