"""High-level job queue API."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from uuid import UUID

import asyncpg

from survey_jobs.errors import JobNotFoundError
from survey_jobs.models import Job, JobSource, JobStatus
from survey_jobs.store import JobStore

DEFAULT_MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 30
BACKOFF_FACTOR = 4
BACKOFF_CAP_SECONDS = 8 * 60


def calculate_backoff(attempts: int) -> int:
    """
    Delay in seconds before retrying a job that has failed ``attempts`` times.

    Attempt 1 waits 30s, attempt 2 waits 2min, attempt 3 and later wait 8min.
    """
    attempts = max(1, attempts)
    return min(BACKOFF_BASE_SECONDS * BACKOFF_FACTOR ** (attempts - 1), BACKOFF_CAP_SECONDS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobQueue:
    """Durable job queue: enqueue, acquire, complete and fail."""

    def __init__(
        self,
        db_pool: asyncpg.Pool,
        logger: Optional[logging.Logger] = None,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = JobStore(db_pool)
        self.logger = logger or logging.getLogger(__name__)
        self.default_max_attempts = default_max_attempts
        self.clock = clock

    async def enqueue(
        self,
        *,
        tenant_id: str,
        idempotency_key: str,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        max_attempts: Optional[int] = None,
    ) -> Optional[UUID]:
        """
        Enqueue a new job.

        Args:
            tenant_id: Owning tenant
            idempotency_key: Globally unique key for this unit of work
            source: Origin tag ("webhook" or "internal")
            event_type: Handler key
            payload: Handler-interpreted job data
            max_attempts: Retry ceiling (defaults to the queue's default)

        Returns:
            The new job id, or None if a job with this key already exists.
            None is not an error; the work is already queued.
        """
        if max_attempts is None:
            max_attempts = self.default_max_attempts
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        if isinstance(source, JobSource):
            source = source.value

        job_id = await self.store.insert_job(
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            source=source,
            event_type=event_type,
            payload=payload,
            max_attempts=max_attempts,
            now=self.clock(),
        )

        if job_id is None:
            self.logger.info(f"Job with key {idempotency_key} already queued, skipping")
            return None

        self.logger.info(
            f"Enqueued job {job_id} ({event_type}) for tenant {tenant_id}"
        )
        return job_id

    async def acquire(self) -> Optional[Job]:
        """Claim the next due pending job, or None if nothing is due."""
        return await self.store.acquire_next_job(self.clock())

    async def acquire_by_id(self, job_id: UUID) -> Optional[Job]:
        """Claim a specific job; None unless it was still pending."""
        return await self.store.acquire_job_by_id(job_id, self.clock())

    async def complete(self, job_id: UUID, locked_at: Optional[datetime] = None) -> bool:
        """
        Mark a processing job as completed.

        Pass the ``locked_at`` of the claimed job so a claim that was since
        reclaimed and handed to another worker cannot complete it. Returns
        False when the job was not held.
        """
        completed = await self.store.update_job_completed(
            job_id, self.clock(), locked_at=locked_at
        )
        if completed:
            self.logger.info(f"Job {job_id} completed")
        else:
            self.logger.warning(f"Job {job_id} not completed: no longer held by this worker")
        return completed

    async def fail(
        self,
        job_id: UUID,
        error: Any,
        retryable: bool = True,
        locked_at: Optional[datetime] = None,
    ) -> Optional[Job]:
        """
        Record a failed attempt on a processing job.

        The job goes back to pending with backoff while attempts remain and
        the failure is retryable, otherwise it is marked failed for good.
        This is the only place retry delays are chosen.

        Returns the job as it was before the update, or None if it is gone
        or no longer held by the caller.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            self.logger.warning(f"Cannot fail job {job_id}: not found")
            return None
        if job.status != JobStatus.PROCESSING or (
            locked_at is not None and job.locked_at != locked_at
        ):
            self.logger.warning(f"Cannot fail job {job_id}: no longer held by this worker")
            return None

        error_message = str(error)
        attempts = job.attempts + 1
        now = self.clock()
        retry = retryable and attempts < job.max_attempts

        if retry:
            next_retry_at = now + timedelta(seconds=calculate_backoff(attempts))
            updated = await self.store.update_job_retry(
                job_id,
                attempts=attempts,
                error_message=error_message,
                next_retry_at=next_retry_at,
                now=now,
                locked_at=job.locked_at,
            )
            message = (
                f"Job {job_id} will retry (attempt {attempts}/{job.max_attempts}) "
                f"at {next_retry_at.isoformat()}"
            )
        else:
            attempts = min(attempts, job.max_attempts)
            updated = await self.store.update_job_failed(
                job_id,
                attempts=attempts,
                error_message=error_message,
                now=now,
                locked_at=job.locked_at,
            )
            message = f"Job {job_id} marked as failed after {attempts} attempts: {error_message}"

        if not updated:
            # Reclaimed between the read and the write
            self.logger.warning(f"Cannot fail job {job_id}: no longer held by this worker")
            return None

        if retry:
            self.logger.info(message)
        else:
            self.logger.error(message)
        return job

    async def release(self, job_id: UUID, locked_at: Optional[datetime] = None) -> bool:
        """Hand a claimed job back to the queue without using up an attempt."""
        released = await self.store.release_job(job_id, self.clock(), locked_at=locked_at)
        if released:
            self.logger.info(f"Job {job_id} released back to pending")
        return released

    async def requeue_stale_jobs(self, timeout: timedelta) -> int:
        """
        Recover jobs left in processing by a crashed worker.

        A job untouched for longer than ``timeout`` counts as one failed
        attempt: it is retried with backoff or marked failed when exhausted.
        Returns the number of jobs recovered.
        """
        now = self.clock()
        older_than = now - timeout
        recovered = 0

        for job in await self.store.list_stale_processing_jobs(older_than):
            attempts = min(job.attempts + 1, job.max_attempts)
            error_message = f"Job stuck in processing for over {int(timeout.total_seconds())}s"
            if attempts < job.max_attempts:
                status = JobStatus.PENDING
                next_retry_at = now + timedelta(seconds=calculate_backoff(attempts))
            else:
                status = JobStatus.FAILED
                next_retry_at = None

            reclaimed = await self.store.reclaim_stale_job(
                job.id,
                older_than=older_than,
                attempts=attempts,
                status=status,
                error_message=error_message,
                next_retry_at=next_retry_at,
                now=now,
            )
            if reclaimed:
                recovered += 1
                self.logger.warning(f"Recovered stale job {job.id} as {status.value}")

        return recovered

    async def get_job(self, job_id: UUID, tenant_id: Optional[str] = None) -> Job:
        """Get a job by ID."""
        job = await self.store.get_job(job_id, tenant_id=tenant_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self, *, tenant_id: str, status: Optional[str] = None, limit: int = 50
    ) -> list[Job]:
        """List a tenant's jobs."""
        return await self.store.list_jobs(tenant_id=tenant_id, status=status, limit=limit)
