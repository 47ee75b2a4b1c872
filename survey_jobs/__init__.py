"""Survey delivery jobs: queue, webhook ingestion and delivery tracking."""

from survey_jobs.config import SurveyJobsConfig
from survey_jobs.ddl import ALL_TABLES_DDL, DELIVERIES_TABLE_DDL, JOBS_TABLE_DDL
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.errors import (
    DeliveryNotFoundError,
    JobNotFoundError,
    ProviderError,
    RemoteHttpError,
    SurveyJobsError,
    SurveySendError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from survey_jobs.fastapi_router import create_api_router, create_webhook_router
from survey_jobs.handlers import build_registry
from survey_jobs.http_client import KapsoClient
from survey_jobs.models import (
    Completed,
    Delivery,
    DeliveryStatus,
    Job,
    JobSource,
    JobStatus,
    Outcome,
    RetryableFailure,
    TerminalFailure,
)
from survey_jobs.rate_limiter import RateLimiter
from survey_jobs.registry import JobRegistry
from survey_jobs.service import JobQueue, calculate_backoff
from survey_jobs.survey_send import SurveySendService
from survey_jobs.webhooks import WebhookIngestor, parse_webhook, verify_signature
from survey_jobs.worker import JobProcessor

__version__ = "0.1.0"

__all__ = [
    "SurveyJobsConfig",
    "ALL_TABLES_DDL",
    "DELIVERIES_TABLE_DDL",
    "JOBS_TABLE_DDL",
    "DeliveryStore",
    "DeliveryNotFoundError",
    "JobNotFoundError",
    "ProviderError",
    "RemoteHttpError",
    "SurveyJobsError",
    "SurveySendError",
    "WebhookPayloadError",
    "WebhookSignatureError",
    "create_api_router",
    "create_webhook_router",
    "build_registry",
    "KapsoClient",
    "Completed",
    "Delivery",
    "DeliveryStatus",
    "Job",
    "JobSource",
    "JobStatus",
    "Outcome",
    "RetryableFailure",
    "TerminalFailure",
    "RateLimiter",
    "JobRegistry",
    "JobQueue",
    "calculate_backoff",
    "SurveySendService",
    "WebhookIngestor",
    "parse_webhook",
    "verify_signature",
    "JobProcessor",
]
