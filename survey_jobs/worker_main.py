"""CLI entrypoint and programmatic interface for the job processor."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from datetime import timedelta
from typing import Optional

import asyncpg

from survey_jobs.config import SurveyJobsConfig
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory
from survey_jobs.handlers import build_registry
from survey_jobs.http_client import create_kapso_client
from survey_jobs.registry import JobRegistry
from survey_jobs.service import JobQueue
from survey_jobs.worker import JobProcessor


def setup_logging():
    """Setup logging configuration."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def create_db_pool(config: SurveyJobsConfig):
    """Create database connection pool."""
    return await asyncpg.create_pool(config.db_dsn, min_size=2, max_size=10)


def build_processor(
    config: SurveyJobsConfig,
    db_pool,
    logger: logging.Logger,
    registry: Optional[JobRegistry] = None,
) -> JobProcessor:
    """Wire a JobProcessor with the built-in handlers."""
    queue = JobQueue(db_pool, logger, default_max_attempts=config.default_max_attempts)

    if registry is None:
        client = create_kapso_client(config)
        if client is None:
            logger.warning("KAPSO_API_KEY not set, survey send jobs have no handler")
        registry = build_registry(DeliveryStore(db_pool), TenantDirectory(db_pool), client, logger)

    return JobProcessor(
        queue,
        registry,
        logger,
        poll_interval=config.poll_interval_seconds,
        stale_job_timeout=timedelta(seconds=config.stale_job_timeout_seconds),
        stale_job_check_interval=config.stale_job_check_interval_seconds,
    )


async def run_worker(
    config: Optional[SurveyJobsConfig] = None,
    db_pool=None,
    registry: Optional[JobRegistry] = None,
    logger: Optional[logging.Logger] = None,
    shutdown_event: Optional[asyncio.Event] = None,
):
    """
    Run the job processor until ``shutdown_event`` is set.

    Args:
        config: SurveyJobsConfig instance. If None, will load from environment.
        db_pool: Database connection pool. If None, will create from config.
        registry: JobRegistry instance. If None, the built-in handlers are used.
        logger: Logger instance. If None, will create default logger.
        shutdown_event: Optional asyncio.Event for graceful shutdown.
    """
    if config is None:
        config = SurveyJobsConfig.from_env()

    if logger is None:
        logger = logging.getLogger(__name__)

    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    db_pool_provided = db_pool is not None
    if db_pool is None:
        db_pool = await create_db_pool(config)

    processor = build_processor(config, db_pool, logger, registry)

    try:
        processor.start()
        await shutdown_event.wait()
        await processor.stop()
    finally:
        if not db_pool_provided and db_pool:
            await db_pool.close()


def main():
    """Main entrypoint for the worker."""
    setup_logging()
    logger = logging.getLogger(__name__)

    parser = argparse.ArgumentParser(description="Survey Jobs Worker")
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between polls when the queue is empty (default: from env or 5)",
    )

    args = parser.parse_args()

    try:
        config = SurveyJobsConfig.from_env()
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    if args.poll_interval is not None:
        config.poll_interval_seconds = args.poll_interval

    async def run():
        """Async main function."""
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            shutdown_event.set()

        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, signal_handler, signum)

        try:
            logger.info("Starting survey jobs worker...")
            await run_worker(config=config, logger=logger, shutdown_event=shutdown_event)
        except Exception as e:
            logger.error(f"Fatal error in worker: {e}", exc_info=True)
            sys.exit(1)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
