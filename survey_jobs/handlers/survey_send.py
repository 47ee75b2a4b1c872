"""Handler for internal.survey.send jobs."""

import logging
from typing import Optional
from uuid import UUID

from survey_jobs.delivery import is_terminal
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory, first_question_text
from survey_jobs.errors import ProviderError
from survey_jobs.http_client import KapsoClient
from survey_jobs.models import (
    Completed,
    Delivery,
    DeliveryStatus,
    Job,
    Outcome,
    RetryableFailure,
    TerminalFailure,
)
from survey_jobs.utils import mask_phone_number

SURVEY_SEND_EVENT = "internal.survey.send"


def is_final_attempt(job: Job, delivery: Delivery) -> bool:
    """
    True when this run is the last one the delivery's retry budget allows.

    The delivery gets one first try plus ``max_retries`` retries. This is
    counted from the job's attempts but bounded by the delivery, independent
    of the job's own ``max_attempts``.
    """
    return job.attempts + 1 >= delivery.max_retries + 1


class SurveySendHandler:
    """
    Sends one queued survey through the messaging provider.

    Retry contract:
        - provider accepted: delivery ``sent``, job completes
        - retryable provider error with budget left: delivery ``failed``,
          job is retried with backoff
        - non-retryable error or last attempt: delivery ``undeliverable``,
          job completes since retrying cannot help
    """

    def __init__(
        self,
        deliveries: DeliveryStore,
        directory: TenantDirectory,
        client: KapsoClient,
        logger: Optional[logging.Logger] = None,
    ):
        self.deliveries = deliveries
        self.directory = directory
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    async def __call__(self, job: Job) -> Outcome:
        payload = job.payload or {}
        if not all(payload.get(key) for key in ("delivery_id", "survey_id", "phone_number")):
            return TerminalFailure("Invalid survey send payload")

        delivery_id = UUID(str(payload["delivery_id"]))
        delivery = await self.deliveries.get_delivery(delivery_id, tenant_id=job.tenant_id)
        if delivery is None:
            return TerminalFailure(f"Delivery {delivery_id} not found")

        if delivery.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED) or is_terminal(
            delivery.status
        ):
            self.logger.info(
                f"Delivery {delivery_id} already {delivery.status.value}, nothing to send"
            )
            return Completed()

        if delivery.status == DeliveryStatus.PENDING:
            # The job can be picked up before the API marks the delivery queued.
            await self.deliveries.transition(delivery_id, DeliveryStatus.QUEUED)

        survey = await self.directory.get_survey(job.tenant_id, delivery.survey_id)
        if survey is None:
            return await self._undeliverable(delivery_id, "Survey not found")

        phone_number_id = await self.directory.get_active_phone_number_id(job.tenant_id)
        if not phone_number_id:
            return await self._undeliverable(delivery_id, "No active WhatsApp connection")

        try:
            provider_delivery_id = await self.client.send_text(
                phone_number_id=phone_number_id,
                to=delivery.recipient_address,
                body=first_question_text(survey),
            )
        except ProviderError as e:
            return await self._handle_provider_error(job, delivery, e)

        updated = await self.deliveries.transition(
            delivery_id, DeliveryStatus.SENT, provider_delivery_id=provider_delivery_id
        )
        if updated is None:
            self.logger.warning(
                f"Delivery {delivery_id} was sent as {provider_delivery_id} "
                "but had already moved on"
            )
        else:
            self.logger.info(
                f"Survey sent to {mask_phone_number(delivery.recipient_address)} "
                f"(delivery {delivery_id}, provider id {provider_delivery_id})"
            )
        return Completed()

    async def _handle_provider_error(
        self, job: Job, delivery: Delivery, error: ProviderError
    ) -> Outcome:
        message = f"{error.code}: {error}"

        if error.retryable and not is_final_attempt(job, delivery):
            await self.deliveries.transition(
                delivery.id,
                DeliveryStatus.FAILED,
                error_message=message,
                increment_retry=True,
            )
            self.logger.warning(f"Delivery {delivery.id} failed, will retry: {message}")
            return RetryableFailure(message)

        return await self._undeliverable(delivery.id, message)

    async def _undeliverable(self, delivery_id: UUID, reason: str) -> Outcome:
        await self.deliveries.transition(
            delivery_id, DeliveryStatus.UNDELIVERABLE, error_message=reason
        )
        self.logger.warning(f"Delivery {delivery_id} undeliverable: {reason}")
        return Completed()
