"""Inbound webhook verification, parsing and enqueueing."""

import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from survey_jobs.errors import WebhookPayloadError, WebhookSignatureError
from survey_jobs.models import JobSource
from survey_jobs.registry import JobRegistry
from survey_jobs.service import JobQueue
from survey_jobs.utils import mask_phone_number
from survey_jobs.worker import run_handler

PROVIDER = "kapso"
MESSAGE_RECEIVED_EVENT = "kapso.message.received"

# Provider batch types that report on a message we sent.
STATUS_EVENTS = {
    "whatsapp.message.sent": "kapso.message.sent",
    "whatsapp.message.delivered": "kapso.message.delivered",
    "whatsapp.message.failed": "kapso.message.failed",
}

SCORE_RANGES = {"nps": (0, 10), "csat": (1, 5), "ces": (1, 7)}
_SCORE_PATTERN = re.compile(r"\b(\d{1,2})\b")


def compute_signature(secret: str, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    """Constant-time check of a webhook signature. Missing signatures fail."""
    if not signature:
        return False
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(signature.strip().lower().encode(), expected.encode())


class _Text(BaseModel):
    body: str = ""


class _NfmReply(BaseModel):
    name: Optional[str] = None
    body: Optional[str] = None
    response_json: Optional[str] = None


class _Interactive(BaseModel):
    type: Optional[str] = None
    nfm_reply: Optional[_NfmReply] = None


class _KapsoMeta(BaseModel):
    direction: str = "inbound"
    content: Optional[str] = None
    message_type_data: Optional[Dict[str, Any]] = None


class _ProviderMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    type: str = "text"
    timestamp: Optional[str] = None
    text: Optional[_Text] = None
    interactive: Optional[_Interactive] = None
    kapso: Optional[_KapsoMeta] = None


class _WebhookItem(BaseModel):
    phone_number_id: str = Field(min_length=1)
    message: _ProviderMessage


class InboundMessage(BaseModel):
    """Canonical form of one message carried by a provider webhook."""

    phone_number_id: str
    customer_phone: str
    message_id: str
    content: str
    direction: str
    message_type: str
    timestamp: str
    flow_response: Optional[Dict[str, Any]] = None
    event: Optional[str] = None


def _is_flow_response(message: _ProviderMessage) -> bool:
    if message.type != "interactive":
        return False
    if message.interactive and message.interactive.type == "nfm_reply":
        return True
    type_data = message.kapso.message_type_data if message.kapso else None
    return bool(type_data) and type_data.get("type") == "nfm_reply"


def _parse_flow_response(message: _ProviderMessage) -> Optional[Dict[str, Any]]:
    raw = None
    if message.interactive and message.interactive.nfm_reply:
        raw = message.interactive.nfm_reply.response_json
    if raw is None and message.kapso:
        raw = message.kapso.content
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _to_inbound_message(raw_item: Any, event: Optional[str]) -> InboundMessage:
    try:
        item = _WebhookItem.model_validate(raw_item)
    except ValidationError as e:
        raise WebhookPayloadError(f"Invalid webhook payload: {e.errors()[0]['msg']}") from e

    message = item.message
    flow_response = _parse_flow_response(message) if _is_flow_response(message) else None
    content = (message.kapso.content if message.kapso else None) or (
        message.text.body if message.text else ""
    )

    return InboundMessage(
        phone_number_id=item.phone_number_id,
        customer_phone=message.from_ or message.to or "",
        message_id=message.id,
        content=content or "",
        direction=message.kapso.direction if message.kapso else "inbound",
        message_type="flow_response" if flow_response is not None else "text",
        timestamp=message.timestamp or datetime.now(timezone.utc).isoformat(),
        flow_response=flow_response,
        event=event,
    )


def parse_webhook(payload: Any, event: Optional[str] = None) -> List[InboundMessage]:
    """
    Normalize a provider webhook body into inbound messages.

    Accepts a single ``{phone_number_id, message}`` item or a batch
    ``{type, batch: true, data: [...]}``.

    Raises:
        WebhookPayloadError: If required fields are missing
    """
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Invalid webhook payload: missing required fields")

    if payload.get("batch") is True:
        data = payload.get("data")
        if not isinstance(data, list) or not data:
            raise WebhookPayloadError("Invalid webhook payload: empty batch")
        batch_event = payload.get("type") or event
        return [_to_inbound_message(item, batch_event) for item in data]

    if not payload.get("message") or not payload.get("phone_number_id"):
        raise WebhookPayloadError("Invalid webhook payload: missing required fields")

    return [_to_inbound_message(payload, payload.get("type") or event)]


def parse_survey_response(content: str, survey_type: str = "nps") -> Tuple[Optional[int], Optional[str]]:
    """
    Pull a score and free-text feedback out of a reply.

    The first one- or two-digit number inside the survey type's range is the
    score; what remains is feedback.
    """
    low, high = SCORE_RANGES.get(survey_type, SCORE_RANGES["nps"])
    score = None
    match = _SCORE_PATTERN.search(content or "")
    if match:
        value = int(match.group(1))
        if low <= value <= high:
            score = value

    remainder = _SCORE_PATTERN.sub("", content, count=1) if score is not None else content or ""
    feedback = " ".join(remainder.split()) or None
    return score, feedback


class IngestResult:
    """What happened to each message of one webhook call."""

    def __init__(
        self,
        status: str,
        results: Optional[List[Dict[str, Any]]] = None,
        reason: Optional[str] = None,
    ):
        self.status = status
        self.results = results or []
        self.reason = reason

    @property
    def http_status(self) -> int:
        return 202 if self.status == "processed" else 200

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status}
        if self.reason:
            body["reason"] = self.reason
        if self.results:
            body["results"] = self.results
        return body


TenantLookup = Callable[[str], Awaitable[Optional[str]]]


class WebhookIngestor:
    """
    Turns verified provider webhooks into queued jobs.

    Every inbound message is enqueued with an idempotency key derived from
    the provider message id. Message types listed in
    ``fast_path_message_types`` are then claimed and handled inline; if that
    fails the job goes back to pending for the processor to retry.
    """

    def __init__(
        self,
        secret: str,
        queue: JobQueue,
        tenant_lookup: TenantLookup,
        registry: Optional[JobRegistry] = None,
        fast_path_message_types: Optional[List[str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.secret = secret
        self.queue = queue
        self.tenant_lookup = tenant_lookup
        self.registry = registry
        self.fast_path_message_types = set(fast_path_message_types or [])
        self.logger = logger or logging.getLogger(__name__)

    async def ingest(
        self, raw_body: bytes, signature: Optional[str], event: Optional[str] = None
    ) -> IngestResult:
        """
        Verify, parse and enqueue one webhook delivery.

        Raises:
            WebhookSignatureError: Missing or invalid signature
            WebhookPayloadError: Body is not a valid provider payload
        """
        if not signature:
            raise WebhookSignatureError("Missing signature")
        if not verify_signature(self.secret, raw_body, signature):
            self.logger.warning("Invalid webhook signature received")
            raise WebhookSignatureError("Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise WebhookPayloadError("Invalid webhook payload: body is not JSON") from e

        messages = parse_webhook(payload, event)

        accepted = [m for m in messages if self._event_type_for(m) is not None]
        if not accepted:
            return IngestResult("ignored", reason="No inbound messages")

        results = []
        for message in accepted:
            results.append(await self._ingest_message(message))

        if all(r["status"] == "duplicate" for r in results):
            return IngestResult("duplicate", results)
        return IngestResult("processed", results)

    def _event_type_for(self, message: InboundMessage) -> Optional[str]:
        if message.event in STATUS_EVENTS:
            return STATUS_EVENTS[message.event]
        if message.direction == "inbound":
            return MESSAGE_RECEIVED_EVENT
        return None

    async def _ingest_message(self, message: InboundMessage) -> Dict[str, Any]:
        tenant_id = await self.tenant_lookup(message.phone_number_id)
        if tenant_id is None:
            self.logger.warning(
                f"Webhook received for unknown phone_number_id {message.phone_number_id}"
            )
            return {"message_id": message.message_id, "status": "unknown_phone"}

        event_type = self._event_type_for(message)
        if event_type == MESSAGE_RECEIVED_EVENT:
            idempotency_key = f"{PROVIDER}:{message.message_id}"
        else:
            idempotency_key = f"{PROVIDER}:{message.message_id}:{event_type.rsplit('.', 1)[-1]}"

        job_id = await self.queue.enqueue(
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            source=JobSource.WEBHOOK,
            event_type=event_type,
            payload={
                "phone_number_id": message.phone_number_id,
                "customer_phone": message.customer_phone,
                "message_id": message.message_id,
                "content": message.content,
                "message_type": message.message_type,
                "flow_response": message.flow_response,
                "timestamp": message.timestamp,
            },
        )

        if job_id is None:
            self.logger.info(f"Duplicate webhook ignored for message {message.message_id}")
            return {"message_id": message.message_id, "status": "duplicate"}

        self.logger.info(
            f"Webhook queued as job {job_id} for message {message.message_id} "
            f"from {mask_phone_number(message.customer_phone)}"
        )

        status = "accepted"
        if event_type == MESSAGE_RECEIVED_EVENT and message.message_type in self.fast_path_message_types:
            if await self._handle_inline(job_id):
                status = "completed"

        return {"message_id": message.message_id, "status": status, "job_id": str(job_id)}

    async def _handle_inline(self, job_id) -> bool:
        """Try to finish a job right away. Returns True if it completed."""
        if self.registry is None:
            return False

        job = await self.queue.acquire_by_id(job_id)
        if job is None:
            # Someone else claimed it first
            return False

        outcome = await run_handler(self.registry, job, self.logger)
        try:
            if outcome.failed:
                self.logger.info(
                    f"Inline handling of job {job_id} failed, leaving it for the processor"
                )
                await self.queue.release(job_id, locked_at=job.locked_at)
                return False

            return await self.queue.complete(job_id, locked_at=job.locked_at)
        except Exception as e:
            # The job stays in processing until the stale sweep picks it up
            self.logger.error(
                f"Could not record inline result for job {job_id}: {str(e)}", exc_info=True
            )
            return False
