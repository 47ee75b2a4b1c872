"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI

from survey_jobs.config import SurveyJobsConfig
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory
from survey_jobs.fastapi_router import create_api_router, create_webhook_router
from survey_jobs.rate_limiter import RateLimiter
from survey_jobs.service import JobQueue
from survey_jobs.survey_send import SurveySendService
from survey_jobs.webhooks import WebhookIngestor
from survey_jobs.worker_main import build_processor, create_db_pool

logger = logging.getLogger(__name__)


def create_app(
    config: SurveyJobsConfig,
    tenant_resolver: Callable[[str], Awaitable[Optional[str]]],
    run_processor: bool = False,
) -> FastAPI:
    """
    Build the HTTP application.

    Args:
        config: SurveyJobsConfig instance
        tenant_resolver: Maps an API key to its tenant id
        run_processor: Also run a JobProcessor inside the web process
    """
    state = {}
    rate_limiter = RateLimiter(
        limit=config.rate_limit, window_seconds=config.rate_limit_window_seconds
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db_pool = await create_db_pool(config)
        state["db_pool"] = db_pool
        state["queue"] = JobQueue(db_pool, logger, default_max_attempts=config.default_max_attempts)
        state["deliveries"] = DeliveryStore(db_pool)
        state["directory"] = TenantDirectory(db_pool)

        processor = build_processor(config, db_pool, logger)
        state["registry"] = processor.registry
        if run_processor:
            processor.start()
        rate_limiter.start_cleanup(config.rate_limit_window_seconds)

        try:
            yield
        finally:
            await rate_limiter.stop_cleanup()
            if processor.is_running:
                await processor.stop()
            await db_pool.close()

    def ingestor_factory() -> WebhookIngestor:
        return WebhookIngestor(
            secret=config.webhook_secret,
            queue=state["queue"],
            tenant_lookup=state["directory"].find_tenant_by_phone_number_id,
            registry=state["registry"],
            fast_path_message_types=config.fast_path_message_types,
            logger=logger,
        )

    def survey_send_factory() -> SurveySendService:
        return SurveySendService(state["queue"], state["deliveries"], state["directory"], logger)

    app = FastAPI(title="Survey Jobs", lifespan=lifespan)
    app.include_router(create_webhook_router(ingestor_factory))
    app.include_router(
        create_api_router(
            survey_send_factory,
            lambda: state["deliveries"],
            rate_limiter,
            tenant_resolver,
        )
    )
    return app
