"""FastAPI routers for the webhook and survey send HTTP APIs."""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from survey_jobs.delivery_store import DeliveryStore
from survey_jobs.errors import (
    DeliveryNotFoundError,
    SurveySendError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from survey_jobs.rate_limiter import RateLimiter, RateLimitInfo
from survey_jobs.survey_send import SurveySendService
from survey_jobs.webhooks import WebhookIngestor

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"

SEND_ERROR_STATUS = {
    "INVALID_PHONE": 400,
    "SURVEY_INACTIVE": 400,
    "SURVEY_NOT_FOUND": 404,
    "QUEUE_FAILED": 500,
}


class SurveySendRequest(BaseModel):
    """Request model for sending a survey."""

    phone: str
    metadata: Optional[Dict[str, Any]] = None


class SurveySendResponse(BaseModel):
    """Response model for a queued survey send."""

    delivery_id: str
    status: str = "queued"
    message: str = "Survey send queued successfully"


class DeliveryResponse(BaseModel):
    """Response model for delivery details."""

    id: str
    tenant_id: str
    survey_id: str
    status: str
    retry_count: int
    max_retries: int
    provider_delivery_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    is_test: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    delivered_at: Optional[str] = None
    responded_at: Optional[str] = None


def create_webhook_router(ingestor_factory: Callable[[], WebhookIngestor]) -> APIRouter:
    """
    Create the router that receives provider webhooks.

    Args:
        ingestor_factory: Callable that returns a WebhookIngestor instance

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_ingestor() -> WebhookIngestor:
        """Dependency to get WebhookIngestor instance."""
        return ingestor_factory()

    @router.post("/webhooks/kapso")
    async def receive_kapso_webhook(
        request: Request,
        x_webhook_signature: Optional[str] = Header(None, alias=SIGNATURE_HEADER),
        x_webhook_event: Optional[str] = Header(None, alias=EVENT_HEADER),
        ingestor: WebhookIngestor = Depends(get_ingestor),
    ):
        """Verify, parse and queue a Kapso webhook."""
        raw_body = await request.body()

        try:
            result = await ingestor.ingest(raw_body, x_webhook_signature, x_webhook_event)
        except WebhookSignatureError as e:
            return JSONResponse(status_code=401, content={"error": str(e)})
        except WebhookPayloadError as e:
            logger.warning(f"Invalid webhook payload: {e}")
            return JSONResponse(status_code=400, content={"error": "Invalid payload"})

        return JSONResponse(status_code=result.http_status, content=result.to_dict())

    return router


class RateLimitedRequest:
    """A request that went through the tenant rate limit.

    ``rejection`` holds the 429 response when the tenant is over its limit.
    """

    def __init__(
        self, tenant_id: str, headers: Dict[str, str], rejection: Optional[JSONResponse] = None
    ):
        self.tenant_id = tenant_id
        self.headers = headers
        self.rejection = rejection


def _rate_limit_headers(info: RateLimitInfo, consumed: bool) -> Dict[str, str]:
    remaining = max(0, info.remaining - 1) if consumed else 0
    return {
        "X-RateLimit-Limit": str(info.limit),
        "X-RateLimit-Remaining": str(remaining),
        "X-RateLimit-Reset": str(math.ceil(info.reset_at)),
    }


def create_api_router(
    survey_send_factory: Callable[[], SurveySendService],
    delivery_store_factory: Callable[[], DeliveryStore],
    rate_limiter: RateLimiter,
    tenant_resolver: Callable[[str], Awaitable[Optional[str]]],
) -> APIRouter:
    """
    Create the public v1 API router.

    Args:
        survey_send_factory: Callable that returns a SurveySendService instance
        delivery_store_factory: Callable that returns a DeliveryStore instance
        rate_limiter: Limiter shared by every request of this process
        tenant_resolver: Maps an API key to its tenant id, or None if unknown

    Returns:
        APIRouter instance
    """
    router = APIRouter(prefix="/api/v1")

    async def get_survey_send_service() -> SurveySendService:
        return survey_send_factory()

    async def get_delivery_store() -> DeliveryStore:
        return delivery_store_factory()

    async def resolve_tenant(
        authorization: Optional[str] = Header(None, alias="Authorization")
    ) -> str:
        """Resolve the calling tenant from a bearer API key."""
        api_key = None
        if authorization and authorization.lower().startswith("bearer "):
            api_key = authorization[7:].strip()

        tenant_id = await tenant_resolver(api_key) if api_key else None
        if not tenant_id:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        return tenant_id

    def throttled(info: RateLimitInfo) -> JSONResponse:
        retry_after = info.retry_after(rate_limiter.clock())
        headers = _rate_limit_headers(info, consumed=False)
        headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=429,
            headers=headers,
            content={
                "error": "Too Many Requests",
                "message": f"Rate limit exceeded. Try again in {retry_after} seconds.",
                "retry_after": retry_after,
            },
        )

    async def apply_rate_limit(
        response: Response, tenant_id: str = Depends(resolve_tenant)
    ) -> RateLimitedRequest:
        """Count the request against the tenant's window and set rate-limit headers."""
        info = rate_limiter.check(tenant_id)
        if not info.allowed:
            return RateLimitedRequest(tenant_id, {}, rejection=throttled(info))

        rate_limiter.increment(tenant_id)
        headers = _rate_limit_headers(info, consumed=True)
        response.headers.update(headers)
        return RateLimitedRequest(tenant_id, headers)

    @router.get("/health")
    async def health():
        """Check if the API is running."""
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @router.post("/surveys/{survey_id}/send", status_code=202, response_model=SurveySendResponse)
    async def send_survey(
        survey_id: str,
        body: SurveySendRequest,
        limited: RateLimitedRequest = Depends(apply_rate_limit),
        service: SurveySendService = Depends(get_survey_send_service),
    ):
        """Queue a survey for delivery to a customer phone number."""
        if limited.rejection is not None:
            return limited.rejection

        try:
            survey_uuid = UUID(survey_id)
        except ValueError:
            return JSONResponse(
                status_code=404,
                headers=limited.headers,
                content={"error": "Survey not found", "code": "SURVEY_NOT_FOUND"},
            )

        try:
            delivery_id = await service.queue_survey_send(
                tenant_id=limited.tenant_id,
                survey_id=survey_uuid,
                phone_number=body.phone,
                metadata=body.metadata,
            )
        except SurveySendError as e:
            return JSONResponse(
                status_code=SEND_ERROR_STATUS.get(e.code, 500),
                headers=limited.headers,
                content={"error": str(e), "code": e.code},
            )

        return SurveySendResponse(delivery_id=str(delivery_id))

    @router.get("/deliveries/{delivery_id}", response_model=DeliveryResponse)
    async def get_delivery(
        delivery_id: str,
        limited: RateLimitedRequest = Depends(apply_rate_limit),
        deliveries: DeliveryStore = Depends(get_delivery_store),
    ):
        """Get the current status of a delivery."""
        if limited.rejection is not None:
            return limited.rejection

        try:
            delivery_uuid = UUID(delivery_id)
        except ValueError as e:
            raise HTTPException(
                status_code=400, detail="Invalid delivery ID format", headers=limited.headers
            ) from e

        try:
            delivery = await deliveries.require_delivery(
                delivery_uuid, tenant_id=limited.tenant_id
            )
        except DeliveryNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e), headers=limited.headers) from e
        return DeliveryResponse(**delivery.to_dict())

    return router
