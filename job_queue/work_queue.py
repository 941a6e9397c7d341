"""
Work Queue — Durable, database-backed job queue.

Job lifecycle:
  PENDING ──claim──▶ PROCESSING ──complete──▶ COMPLETED
     ▲                   │
     └── fail_with_backoff (attempts < max) ─┤
                         └── fail_with_backoff (attempts == max) / fail_permanently ──▶ FAILED

Claiming increments ``attempts`` once per execution, so the value a handler
sees on the claimed job is the attempt number it is running. Retries are
rescheduled ``2**attempts`` minutes out.

The store is the single serialization point: claims are conditional on the
row still being PENDING, so any number of WorkQueue instances (in one
process or many) can poll the same table.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from pydantic import BaseModel, ValidationError

from core.clock import Clock, SYSTEM_CLOCK
from database.store_base import BaseOutreachStore
from models.schemas import Job, JobStatus, JobType, parse_job_payload

logger = structlog.get_logger()


class PayloadValidationError(ValueError):
    """Raised when an enqueued payload does not match its job type's schema."""


class JobNotFoundError(LookupError):
    pass


def backoff_delay(attempts: int) -> timedelta:
    """Exponential retry delay: 2, 4, 8 ... minutes for attempts 1, 2, 3 ..."""
    return timedelta(minutes=2 ** attempts)


class WorkQueue:
    """
    Usage:
        queue = WorkQueue(store)
        job = await queue.enqueue(JobType.CAMPAIGN_STEP,
                                  CampaignStepPayload(recipient_id="r1", campaign_id="c1"))
        for job in await queue.claim_batch(5):
            ...
            await queue.complete(job.id)
    """

    def __init__(
        self,
        store: BaseOutreachStore,
        clock: Clock = SYSTEM_CLOCK,
        default_max_attempts: int = 3,
    ):
        self.store = store
        self.clock = clock
        self.default_max_attempts = default_max_attempts

    # ── Producer side ─────────────────────────────────────────

    async def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Union[BaseModel, dict[str, Any]],
        *,
        tenant_id: Optional[str] = None,
        priority: int = 0,
        scheduled_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        dedupe_key: Optional[str] = None,
    ) -> Job:
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise PayloadValidationError(f"Unknown job type: {job_type!r}") from None

        try:
            model = parse_job_payload(job_type, payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid {job_type.value} payload: {e.errors(include_url=False)}"
            ) from e

        now = self.clock.now()
        job = Job(
            tenant_id=tenant_id,
            type=job_type.value,
            payload=model.model_dump(mode="json", by_alias=True),
            priority=priority,
            max_attempts=max_attempts or self.default_max_attempts,
            dedupe_key=dedupe_key,
            scheduled_at=scheduled_at or now,
            created_at=now,
        )
        await self.store.insert_job(job)
        logger.debug("job_enqueued", job_id=job.id, job_type=job.type,
                     priority=priority, scheduled_at=job.scheduled_at.isoformat())
        return job

    # ── Consumer side ─────────────────────────────────────────

    async def claim_batch(self, limit: int) -> list[Job]:
        if limit <= 0:
            return []
        jobs = await self.store.claim_due_jobs(limit, self.clock.now())
        for job in jobs:
            logger.info("job_claimed", job_id=job.id, job_type=job.type,
                        attempt=job.attempts, max_attempts=job.max_attempts)
        return jobs

    async def complete(self, job_id: str) -> Job:
        job = await self.store.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            completed_at=self.clock.now(),
            error_message=None,
        )
        if job is None:
            raise JobNotFoundError(job_id)
        logger.info("job_completed", job_id=job_id, job_type=job.type, attempts=job.attempts)
        return job

    async def fail_with_backoff(self, job_id: str, error: str) -> Job:
        """Reschedule the job, or fail it for good once attempts are exhausted."""
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        now = self.clock.now()
        if job.attempts < job.max_attempts:
            retry_at = now + backoff_delay(job.attempts)
            updated = await self.store.update_job(
                job_id,
                status=JobStatus.PENDING,
                scheduled_at=retry_at,
                error_message=error,
            )
            logger.warning("job_retry_scheduled", job_id=job_id, job_type=job.type,
                           attempt=job.attempts, max_attempts=job.max_attempts,
                           retry_at=retry_at.isoformat(), error=error)
        else:
            updated = await self.store.update_job(
                job_id,
                status=JobStatus.FAILED,
                completed_at=now,
                error_message=error,
            )
            logger.error("job_failed", job_id=job_id, job_type=job.type,
                         attempts=job.attempts, error=error)
        return updated

    async def fail_permanently(self, job_id: str, error: str) -> Job:
        """Fail without retry. Attempts are pinned to max_attempts."""
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        updated = await self.store.update_job(
            job_id,
            status=JobStatus.FAILED,
            attempts=job.max_attempts,
            completed_at=self.clock.now(),
            error_message=error,
        )
        logger.error("job_failed_permanently", job_id=job_id, job_type=job.type, error=error)
        return updated

    # ── Inspection & maintenance ──────────────────────────────

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.store.get_job(job_id)

    async def has_open_job(self, dedupe_key: str) -> bool:
        return await self.store.has_open_job(dedupe_key)

    async def stats(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        counts = await self.store.count_jobs_by_status(tenant_id)
        result = {s.value.lower(): counts.get(s.value, 0) for s in JobStatus}
        result["total"] = sum(result.values())
        return result

    async def cleanup(self, days: int = 30) -> int:
        """Delete COMPLETED/FAILED jobs that finished more than ``days`` ago."""
        cutoff = self.clock.now() - timedelta(days=days)
        deleted = await self.store.delete_finished_jobs(cutoff)
        logger.info("jobs_cleaned_up", deleted=deleted, older_than_days=days)
        return deleted
