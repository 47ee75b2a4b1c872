"""Handler for kapso.message.received jobs."""

import logging
from typing import Any, Dict, Optional, Tuple

from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.directory import TenantDirectory
from survey_jobs.models import Completed, DeliveryStatus, Job, Outcome, TerminalFailure
from survey_jobs.utils import hash_phone_number, mask_phone_number
from survey_jobs.webhooks import SCORE_RANGES, parse_survey_response


def categorize_nps(score: int) -> str:
    if score >= 9:
        return "promoter"
    if score >= 7:
        return "passive"
    return "detractor"


def categorize_score(score: int, survey_type: str = "nps") -> str:
    """Bucket a score, rescaling CSAT/CES onto the 0-10 NPS scale first."""
    low, high = SCORE_RANGES.get(survey_type, SCORE_RANGES["nps"])
    if (low, high) == SCORE_RANGES["nps"]:
        return categorize_nps(score)
    return categorize_nps(round((score - low) * 10 / (high - low)))


def _score_from_flow(flow_response: Dict[str, Any], survey_type: str) -> Tuple[Optional[int], Optional[str]]:
    feedback = flow_response.get("feedback") or None
    rating = flow_response.get("rating")
    try:
        score = int(rating) if rating is not None else None
    except (TypeError, ValueError):
        score = None

    low, high = SCORE_RANGES.get(survey_type, SCORE_RANGES["nps"])
    if score is not None and not low <= score <= high:
        score = None
    return score, feedback


class SurveyResponseHandler:
    """Matches an inbound reply to the delivery it answers and records it."""

    def __init__(
        self,
        deliveries: DeliveryStore,
        directory: TenantDirectory,
        logger: Optional[logging.Logger] = None,
    ):
        self.deliveries = deliveries
        self.directory = directory
        self.logger = logger or logging.getLogger(__name__)

    async def __call__(self, job: Job) -> Outcome:
        payload = job.payload or {}
        customer_phone = payload.get("customer_phone")
        if not customer_phone:
            return TerminalFailure("Response payload has no customer phone")

        phone_hash = hash_phone_number(customer_phone)
        delivery = await self.deliveries.find_awaiting_response(job.tenant_id, phone_hash)
        if delivery is None:
            return TerminalFailure("No matching delivery found for response")

        survey = await self.directory.get_survey(job.tenant_id, delivery.survey_id)
        survey_type = (survey or {}).get("type") or "nps"

        if payload.get("flow_response"):
            score, feedback = _score_from_flow(payload["flow_response"], survey_type)
        else:
            score, feedback = parse_survey_response(payload.get("content") or "", survey_type)

        if score is None:
            self.logger.info(
                f"Reply from {mask_phone_number(customer_phone)} has no {survey_type} score, skipping"
            )
            return Completed()

        response_id = await self.deliveries.insert_response(
            delivery,
            customer_phone_hash=phone_hash,
            score=score,
            category=categorize_score(score, survey_type),
            feedback=feedback,
        )
        await self.deliveries.transition(delivery.id, DeliveryStatus.RESPONDED)

        self.logger.info(
            f"Recorded response {response_id} (score {score}) for delivery {delivery.id}"
        )
        return Completed()
