"""Handler for provider delivery status events."""

import logging
from typing import Optional

from survey_jobs.delivery import can_transition
from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.models import Completed, DeliveryStatus, Job, Outcome

STATUS_EVENT_TARGETS = {
    "kapso.message.sent": None,
    "kapso.message.delivered": DeliveryStatus.DELIVERED,
    "kapso.message.failed": DeliveryStatus.UNDELIVERABLE,
}


class DeliveryStatusHandler:
    """Advances a delivery when the provider reports on a message we sent."""

    def __init__(self, deliveries: DeliveryStore, logger: Optional[logging.Logger] = None):
        self.deliveries = deliveries
        self.logger = logger or logging.getLogger(__name__)

    async def __call__(self, job: Job) -> Outcome:
        provider_delivery_id = (job.payload or {}).get("message_id")
        target = STATUS_EVENT_TARGETS.get(job.event_type)
        if not provider_delivery_id or target is None:
            return Completed()

        delivery = await self.deliveries.find_by_provider_delivery_id(
            job.tenant_id, provider_delivery_id
        )
        if delivery is None:
            self.logger.info(f"No delivery for provider message {provider_delivery_id}")
            return Completed()

        if not can_transition(delivery.status, target):
            # Late event, e.g. delivered after the customer already replied
            self.logger.info(
                f"Ignoring {job.event_type} for delivery {delivery.id} in status {delivery.status.value}"
            )
            return Completed()

        error_message = None
        if target == DeliveryStatus.UNDELIVERABLE:
            error_message = "Provider reported delivery failure"

        updated = await self.deliveries.transition(
            delivery.id, target, error_message=error_message
        )
        if updated is None:
            self.logger.info(f"Delivery {delivery.id} moved on before {job.event_type} was applied")
        return Completed()
