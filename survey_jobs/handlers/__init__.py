"""Job handlers and the registry that wires them up."""

import logging
from typing import Optional

from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory
from survey_jobs.handlers.delivery_status import STATUS_EVENT_TARGETS, DeliveryStatusHandler
from survey_jobs.handlers.survey_response import SurveyResponseHandler
from survey_jobs.handlers.survey_send import SURVEY_SEND_EVENT, SurveySendHandler
from survey_jobs.http_client import KapsoClient
from survey_jobs.registry import JobRegistry
from survey_jobs.webhooks import MESSAGE_RECEIVED_EVENT


def build_registry(
    deliveries: DeliveryStore,
    directory: TenantDirectory,
    client: Optional[KapsoClient],
    logger: Optional[logging.Logger] = None,
) -> JobRegistry:
    """
    Create a registry with every built-in handler.

    Without a provider client the survey send handler is left out, so send
    jobs dead-letter with a clear "no handler" error instead of failing
    somewhere deeper.
    """
    registry = JobRegistry()

    if client is not None:
        registry.register(
            SURVEY_SEND_EVENT, SurveySendHandler(deliveries, directory, client, logger)
        )
    registry.register(MESSAGE_RECEIVED_EVENT, SurveyResponseHandler(deliveries, directory, logger))

    status_handler = DeliveryStatusHandler(deliveries, logger)
    for event_type in STATUS_EVENT_TARGETS:
        registry.register(event_type, status_handler)

    return registry


__all__ = [
    "build_registry",
    "DeliveryStatusHandler",
    "SurveyResponseHandler",
    "SurveySendHandler",
    "SURVEY_SEND_EVENT",
]
