"""Queueing survey sends on behalf of API callers."""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory
from survey_jobs.errors import SurveySendError
from survey_jobs.handlers.survey_send import SURVEY_SEND_EVENT
from survey_jobs.models import DeliveryStatus, JobSource
from survey_jobs.service import JobQueue
from survey_jobs.utils import hash_phone_number, is_valid_e164, mask_phone_number

INVALID_PHONE_MESSAGE = "Phone number must be in E.164 format (e.g., +5511999999999)"


def validate_phone(phone: str) -> None:
    """Raise SurveySendError(INVALID_PHONE) unless ``phone`` is E.164."""
    if not is_valid_e164(phone):
        raise SurveySendError(INVALID_PHONE_MESSAGE, "INVALID_PHONE")


class SurveySendService:
    """Validates a send request, records the delivery and queues the send job."""

    def __init__(
        self,
        queue: JobQueue,
        deliveries: DeliveryStore,
        directory: TenantDirectory,
        logger: Optional[logging.Logger] = None,
    ):
        self.queue = queue
        self.deliveries = deliveries
        self.directory = directory
        self.logger = logger or logging.getLogger(__name__)

    async def queue_survey_send(
        self,
        *,
        tenant_id: str,
        survey_id: UUID,
        phone_number: str,
        metadata: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
    ) -> UUID:
        """
        Queue a survey for delivery to ``phone_number``.

        Returns:
            The delivery id; the send itself happens asynchronously

        Raises:
            SurveySendError: INVALID_PHONE, SURVEY_NOT_FOUND, SURVEY_INACTIVE
                or QUEUE_FAILED
        """
        validate_phone(phone_number)

        survey = await self.directory.get_survey(tenant_id, survey_id)
        if survey is None:
            raise SurveySendError("Survey not found", "SURVEY_NOT_FOUND")
        if survey.get("status") != "active":
            raise SurveySendError("Survey is not active", "SURVEY_INACTIVE")

        delivery = await self.deliveries.create_delivery(
            tenant_id=tenant_id,
            survey_id=survey_id,
            recipient_address=phone_number,
            recipient_address_hash=hash_phone_number(phone_number),
            metadata=metadata,
            is_test=is_test,
        )

        job_id = await self.queue.enqueue(
            tenant_id=tenant_id,
            idempotency_key=f"survey-send:{delivery.id}",
            source=JobSource.INTERNAL,
            event_type=SURVEY_SEND_EVENT,
            payload={
                "delivery_id": str(delivery.id),
                "survey_id": str(survey_id),
                "phone_number": phone_number,
                "metadata": metadata,
            },
        )
        if job_id is None:
            await self.deliveries.transition(
                delivery.id, DeliveryStatus.UNDELIVERABLE, error_message="Failed to queue job"
            )
            raise SurveySendError("Failed to queue job", "QUEUE_FAILED")

        await self.deliveries.transition(delivery.id, DeliveryStatus.QUEUED)

        self.logger.info(
            f"Queued survey {survey_id} for {mask_phone_number(phone_number)} "
            f"(delivery {delivery.id}, job {job_id})"
        )
        return delivery.id
