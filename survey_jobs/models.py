"""Data models for jobs, deliveries and handler outcomes."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from uuid import UUID


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobSource(str, Enum):
    """Where a job came from."""

    WEBHOOK = "webhook"
    INTERNAL = "internal"


class DeliveryStatus(str, Enum):
    """Lifecycle of one survey send to one recipient."""

    PENDING = "pending"
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERABLE = "undeliverable"
    RESPONDED = "responded"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        tenant_id: str,
        idempotency_key: str,
        source: str,
        event_type: str,
        payload: Dict[str, Any],
        status: JobStatus,
        attempts: int = 0,
        max_attempts: int = 3,
        next_retry_at: Optional[datetime] = None,
        processed_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        locked_at: Optional[datetime] = None,
    ):
        self.id = id
        self.tenant_id = tenant_id
        self.idempotency_key = idempotency_key
        self.source = source
        self.event_type = event_type
        self.payload = payload
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.next_retry_at = next_retry_at
        self.processed_at = processed_at
        self.error_message = error_message
        self.created_at = created_at
        self.updated_at = updated_at
        # Set when a worker claims the job; identifies that claim
        self.locked_at = locked_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "idempotency_key": self.idempotency_key,
            "source": self.source,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_at": _iso(self.next_retry_at),
            "processed_at": _iso(self.processed_at),
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, event_type={self.event_type!r}, "
            f"status={self.status.value}, attempts={self.attempts}/{self.max_attempts})"
        )


class Delivery:
    """Represents one survey delivery record."""

    def __init__(
        self,
        id: UUID,
        tenant_id: str,
        survey_id: UUID,
        recipient_address: str,
        recipient_address_hash: str,
        status: DeliveryStatus,
        retry_count: int = 0,
        max_retries: int = 2,
        provider_delivery_id: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_test: bool = False,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        delivered_at: Optional[datetime] = None,
        responded_at: Optional[datetime] = None,
    ):
        self.id = id
        self.tenant_id = tenant_id
        self.survey_id = survey_id
        self.recipient_address = recipient_address
        self.recipient_address_hash = recipient_address_hash
        self.status = DeliveryStatus(status) if isinstance(status, str) else status
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.provider_delivery_id = provider_delivery_id
        self.error_message = error_message
        self.metadata = metadata
        self.is_test = is_test
        self.created_at = created_at
        self.updated_at = updated_at
        self.delivered_at = delivered_at
        self.responded_at = responded_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert delivery to dictionary for JSON serialization.

        The plaintext recipient address is left out on purpose; callers
        already know who they sent to.
        """
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "survey_id": str(self.survey_id),
            "status": self.status.value,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "provider_delivery_id": self.provider_delivery_id,
            "error_message": self.error_message,
            "metadata": self.metadata,
            "is_test": self.is_test,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "delivered_at": _iso(self.delivered_at),
            "responded_at": _iso(self.responded_at),
        }


class Outcome:
    """Result a handler hands back to the processor."""

    retry = False
    failed = False

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.reason == other.reason

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason!r})"


class Completed(Outcome):
    """The job is done; nothing left to retry."""


class RetryableFailure(Outcome):
    """The job failed and should be retried with backoff."""

    retry = True
    failed = True


class TerminalFailure(Outcome):
    """The job failed and retrying will not help."""

    failed = True
