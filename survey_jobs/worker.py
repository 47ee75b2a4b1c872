"""Polling job processor."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from survey_jobs.models import Completed, Job, Outcome, RetryableFailure
from survey_jobs.registry import JobRegistry
from survey_jobs.service import JobQueue

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


async def run_handler(registry: JobRegistry, job: Job, logger: logging.Logger) -> Outcome:
    """
    Invoke the handler for ``job`` and normalise whatever happens into an Outcome.

    Never raises: a missing handler or an exception from the handler both
    come back as a RetryableFailure.
    """
    handler = registry.get_handler(job.event_type)
    if handler is None:
        logger.error(f"No handler registered for event type {job.event_type}")
        return RetryableFailure(f"No handler registered for event type: {job.event_type}")

    try:
        outcome = await handler(job)
    except Exception as e:
        logger.error(f"Job {job.id} failed: {str(e)}", exc_info=True)
        return RetryableFailure(str(e) or type(e).__name__)

    if outcome is None:
        return Completed()
    return outcome


class JobProcessor:
    """
    Generic dispatch loop over a JobQueue.

    Polls once on start and then every ``poll_interval`` seconds. When a job
    was processed the next poll happens straight away, so a backlog drains
    without waiting a full interval per job. Several processors may run
    against the same store; the queue's skip-locked claim keeps them apart.

    Example:
        ```python
        processor = JobProcessor(queue, registry, logger)
        processor.start()
        ...
        await processor.stop()
        ```
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: JobRegistry,
        logger: Optional[logging.Logger] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stale_job_timeout: Optional[timedelta] = timedelta(minutes=10),
        stale_job_check_interval: float = 60.0,
    ):
        self.queue = queue
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.poll_interval = poll_interval
        self.stale_job_timeout = stale_job_timeout
        self.stale_job_check_interval = stale_job_check_interval
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_stale_check: Optional[float] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the polling loop as a background task."""
        if self.is_running:
            return self._task
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Stop polling. An in-flight job is allowed to finish."""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.logger.info("Job processor stopped")

    async def run(self) -> None:
        """Run the loop until ``stop`` is called."""
        self.logger.info(f"Starting job processor with {self.poll_interval}s polling interval")

        while not self._stop_event.is_set():
            processed = None
            try:
                await self._maybe_requeue_stale_jobs()
                processed = await self.process_next_job()
            except Exception as e:
                self.logger.error(f"Error in job processor loop: {str(e)}", exc_info=True)

            if processed is not None:
                continue

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def process_next_job(self) -> Optional[Job]:
        """Acquire and process one job. Returns the job, or None if the queue was idle."""
        job = await self.queue.acquire()
        if job is None:
            return None

        await self.process_job(job)
        return job

    async def process_job(self, job: Job) -> Outcome:
        """Dispatch an already-claimed job and report the result to the queue."""
        self.logger.info(
            f"Processing job {job.id} ({job.event_type}, attempt {job.attempts + 1}/{job.max_attempts})"
        )

        outcome = await run_handler(self.registry, job, self.logger)

        if outcome.failed:
            await self.queue.fail(
                job.id,
                outcome.reason or "Job failed",
                retryable=outcome.retry,
                locked_at=job.locked_at,
            )
        else:
            await self.queue.complete(job.id, locked_at=job.locked_at)

        return outcome

    async def _maybe_requeue_stale_jobs(self) -> None:
        if self.stale_job_timeout is None:
            return

        now = asyncio.get_running_loop().time()
        if (
            self._last_stale_check is not None
            and now - self._last_stale_check < self.stale_job_check_interval
        ):
            return

        self._last_stale_check = now
        try:
            recovered = await self.queue.requeue_stale_jobs(self.stale_job_timeout)
            if recovered > 0:
                self.logger.info(f"Recovered {recovered} stale jobs")
        except Exception as e:
            self.logger.error(f"Error recovering stale jobs: {str(e)}", exc_info=True)
