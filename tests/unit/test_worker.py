"""Unit tests for the job processor."""

import asyncio
from datetime import timedelta

import pytest

from survey_jobs.models import Completed, JobSource, JobStatus, RetryableFailure, TerminalFailure
from survey_jobs.registry import JobRegistry
from survey_jobs.worker import JobProcessor, run_handler


@pytest.fixture
def registry():
    return JobRegistry()


@pytest.fixture
def processor(queue, registry, logger):
    return JobProcessor(queue, registry, logger, poll_interval=0.01, stale_job_timeout=None)


async def _enqueue(queue, event_type="kapso.message.received", key="kapso:msg-1", **kwargs):
    return await queue.enqueue(
        tenant_id="tenant-123",
        idempotency_key=key,
        source=JobSource.WEBHOOK,
        event_type=event_type,
        payload={"message_id": "msg-1"},
        **kwargs,
    )


@pytest.mark.asyncio
async def test_process_next_job_idle(processor):
    assert await processor.process_next_job() is None


@pytest.mark.asyncio
async def test_completed_outcome_completes_job(processor, registry, queue):
    seen = []

    @registry.handler("kapso.message.received")
    async def handler(job):
        seen.append(job.id)
        return Completed()

    job_id = await _enqueue(queue)
    await processor.process_next_job()

    assert seen == [job_id]
    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_none_return_completes_job(processor, registry, queue):
    @registry.handler("kapso.message.received")
    async def handler(job):
        return None

    job_id = await _enqueue(queue)
    await processor.process_next_job()

    assert (await queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_handler_fails_job(processor, queue):
    """A job with no registered handler is failed and eventually dead-lettered."""
    job_id = await _enqueue(queue, event_type="unknown.event", max_attempts=1)

    await processor.process_next_job()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "No handler registered for event type: unknown.event"


@pytest.mark.asyncio
async def test_retryable_failure_schedules_retry(processor, registry, queue):
    @registry.handler("kapso.message.received")
    async def handler(job):
        return RetryableFailure("provider timeout")

    job_id = await _enqueue(queue)
    await processor.process_next_job()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.error_message == "provider timeout"


@pytest.mark.asyncio
async def test_terminal_failure_dead_letters(processor, registry, queue):
    @registry.handler("kapso.message.received")
    async def handler(job):
        return TerminalFailure("no matching delivery")

    job_id = await _enqueue(queue)
    await processor.process_next_job()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_handler_exception_is_retried(processor, registry, queue):
    @registry.handler("kapso.message.received")
    async def handler(job):
        raise RuntimeError("database went away")

    job_id = await _enqueue(queue)
    outcome = await processor.process_next_job()

    job = await queue.get_job(job_id)
    assert outcome is not None
    assert job.status == JobStatus.PENDING
    assert job.error_message == "database went away"


@pytest.mark.asyncio
async def test_run_handler_never_raises(registry, queue, logger):
    @registry.handler("kapso.message.received")
    async def handler(job):
        raise ValueError()

    job_id = await _enqueue(queue)
    job = await queue.acquire_by_id(job_id)

    outcome = await run_handler(registry, job, logger)

    assert outcome == RetryableFailure("ValueError")


@pytest.mark.asyncio
async def test_start_and_stop_drains_queue(processor, registry, queue):
    done = asyncio.Event()
    handled = []

    @registry.handler("kapso.message.received")
    async def handler(job):
        handled.append(job.id)
        if len(handled) == 3:
            done.set()

    for i in range(3):
        await _enqueue(queue, key=f"kapso:msg-{i}")

    processor.start()
    assert processor.is_running
    await asyncio.wait_for(done.wait(), timeout=2)
    await processor.stop()

    assert not processor.is_running
    assert len(handled) == 3


@pytest.mark.asyncio
async def test_stop_wakes_idle_processor(queue, registry, logger):
    processor = JobProcessor(queue, registry, logger, poll_interval=30, stale_job_timeout=None)
    processor.start()
    await asyncio.sleep(0)

    await asyncio.wait_for(processor.stop(), timeout=1)

    assert not processor.is_running


@pytest.mark.asyncio
async def test_loop_survives_queue_errors(queue, registry, logger, monkeypatch):
    calls = []

    async def flaky_acquire():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("pool closed")
        return None

    monkeypatch.setattr(queue, "acquire", flaky_acquire)
    processor = JobProcessor(queue, registry, logger, poll_interval=0.01, stale_job_timeout=None)

    processor.start()
    await asyncio.sleep(0.05)
    await processor.stop()

    assert len(calls) >= 2


@pytest.mark.asyncio
async def test_processor_requeues_stale_jobs(queue, registry, logger, clock):
    job_id = await _enqueue(queue)
    await queue.acquire()
    clock.advance(601)

    processor = JobProcessor(
        queue, registry, logger, poll_interval=0.01, stale_job_timeout=timedelta(minutes=10)
    )
    await processor._maybe_requeue_stale_jobs()

    job = await queue.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_stalled_worker_result_is_dropped_after_reclaim(processor, registry, queue, clock):
    """A handler that outlives its claim does not overwrite the new owner's job."""
    reacquired = []

    @registry.handler("kapso.message.received")
    async def handler(job):
        clock.advance(700)
        await queue.requeue_stale_jobs(timedelta(minutes=10))
        clock.advance(60)
        reacquired.append(await queue.acquire())
        return Completed()

    job_id = await _enqueue(queue)
    await processor.process_next_job()

    job = await queue.get_job(job_id)
    assert reacquired[0].id == job_id
    assert job.status == JobStatus.PROCESSING
    assert job.locked_at == reacquired[0].locked_at
    assert job.processed_at is None
