"""In-memory stand-ins for the database stores, used by unit tests."""

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from survey_jobs.delivery import sources_for
from survey_jobs.models import Delivery, DeliveryStatus, Job, JobStatus
from survey_jobs.utils import hash_phone_number

WEBHOOK_SECRET = "test-webhook-secret"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeJobStore:
    """Mirrors JobStore against a dict."""

    def __init__(self):
        self.jobs: dict[UUID, Job] = {}

    async def insert_job(
        self, tenant_id, idempotency_key, source, event_type, payload, max_attempts, now
    ) -> Optional[UUID]:
        if any(job.idempotency_key == idempotency_key for job in self.jobs.values()):
            return None
        job = Job(
            id=uuid4(),
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            source=source,
            event_type=event_type,
            payload=copy.deepcopy(payload),
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return job.id

    async def get_job(self, job_id, tenant_id=None) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
            return None
        return copy.copy(job)

    async def list_jobs(self, tenant_id, status=None, limit=50) -> list[Job]:
        jobs = [
            copy.copy(job)
            for job in self.jobs.values()
            if job.tenant_id == tenant_id and (status is None or job.status.value == status)
        ]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def acquire_next_job(self, now) -> Optional[Job]:
        due = [
            job
            for job in self.jobs.values()
            if job.status == JobStatus.PENDING and job.next_retry_at <= now
        ]
        if not due:
            return None
        job = min(due, key=lambda job: job.next_retry_at)
        self._claim(job, now)
        return copy.copy(job)

    async def acquire_job_by_id(self, job_id, now) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None
        self._claim(job, now)
        return copy.copy(job)

    def _claim(self, job, now) -> None:
        job.status = JobStatus.PROCESSING
        job.locked_at = now
        job.updated_at = now

    def _held(self, job_id, locked_at) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        if locked_at is not None and job.locked_at != locked_at:
            return None
        return job

    async def update_job_completed(self, job_id, now, locked_at=None) -> bool:
        job = self._held(job_id, locked_at)
        if job is None:
            return False
        job.status = JobStatus.COMPLETED
        job.processed_at = job.processed_at or now
        job.locked_at = None
        job.updated_at = now
        return True

    async def update_job_retry(
        self, job_id, attempts, error_message, next_retry_at, now, locked_at=None
    ) -> bool:
        job = self._held(job_id, locked_at)
        if job is None:
            return False
        job.status = JobStatus.PENDING
        job.attempts = attempts
        job.error_message = error_message
        job.next_retry_at = next_retry_at
        job.locked_at = None
        job.updated_at = now
        return True

    async def update_job_failed(self, job_id, attempts, error_message, now, locked_at=None) -> bool:
        job = self._held(job_id, locked_at)
        if job is None:
            return False
        job.status = JobStatus.FAILED
        job.attempts = attempts
        job.error_message = error_message
        job.next_retry_at = None
        job.locked_at = None
        job.updated_at = now
        return True

    async def release_job(self, job_id, now, locked_at=None) -> bool:
        job = self._held(job_id, locked_at)
        if job is None:
            return False
        job.status = JobStatus.PENDING
        job.next_retry_at = now
        job.locked_at = None
        job.updated_at = now
        return True

    async def list_stale_processing_jobs(self, older_than) -> list[Job]:
        return [
            copy.copy(job)
            for job in self.jobs.values()
            if job.status == JobStatus.PROCESSING and job.updated_at < older_than
        ]

    async def reclaim_stale_job(
        self, job_id, older_than, attempts, status, error_message, next_retry_at, now
    ) -> bool:
        job = self.jobs[job_id]
        if job.status != JobStatus.PROCESSING or job.updated_at >= older_than:
            return False
        job.status = status
        job.attempts = attempts
        job.error_message = error_message
        job.next_retry_at = next_retry_at
        job.locked_at = None
        job.updated_at = now
        return True


class FakeDeliveryStore:
    """Mirrors DeliveryStore against dicts."""

    def __init__(self):
        self.deliveries: dict[UUID, Delivery] = {}
        self.responses: list[dict[str, Any]] = []
        self._tick = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def _now(self) -> datetime:
        self._tick += timedelta(seconds=1)
        return self._tick

    def add(self, **fields) -> Delivery:
        """Insert a delivery directly, in any status."""
        now = self._now()
        fields.setdefault("id", uuid4())
        fields.setdefault("tenant_id", "tenant-1")
        fields.setdefault("survey_id", uuid4())
        fields.setdefault("recipient_address", "+5511999999999")
        fields.setdefault("status", DeliveryStatus.QUEUED)
        if "recipient_address_hash" not in fields:
            fields["recipient_address_hash"] = hash_phone_number(fields["recipient_address"])
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        delivery = Delivery(**fields)
        self.deliveries[delivery.id] = delivery
        return delivery

    async def create_delivery(
        self, tenant_id, survey_id, recipient_address, recipient_address_hash, metadata=None, is_test=False
    ) -> Delivery:
        return copy.copy(
            self.add(
                tenant_id=tenant_id,
                survey_id=survey_id,
                recipient_address=recipient_address,
                recipient_address_hash=recipient_address_hash,
                status=DeliveryStatus.PENDING,
                metadata=metadata,
                is_test=is_test,
            )
        )

    async def get_delivery(self, delivery_id, tenant_id=None) -> Optional[Delivery]:
        delivery = self.deliveries.get(delivery_id)
        if delivery is None or (tenant_id is not None and delivery.tenant_id != tenant_id):
            return None
        return copy.copy(delivery)

    async def transition(
        self,
        delivery_id,
        target,
        *,
        provider_delivery_id=None,
        error_message=None,
        increment_retry=False,
        now=None,
    ) -> Optional[Delivery]:
        delivery = self.deliveries.get(delivery_id)
        target = DeliveryStatus(target)
        if delivery is None or delivery.status not in sources_for(target):
            return None
        now = now or self._now()
        delivery.status = target
        delivery.updated_at = now
        if provider_delivery_id is not None:
            delivery.provider_delivery_id = provider_delivery_id
        if error_message is not None:
            delivery.error_message = error_message
        if increment_retry:
            delivery.retry_count += 1
        if target == DeliveryStatus.DELIVERED:
            delivery.delivered_at = now
        if target == DeliveryStatus.RESPONDED:
            delivery.responded_at = now
        return copy.copy(delivery)

    async def find_awaiting_response(self, tenant_id, recipient_address_hash):
        candidates = [
            d
            for d in self.deliveries.values()
            if d.tenant_id == tenant_id
            and d.recipient_address_hash == recipient_address_hash
            and d.status in (DeliveryStatus.SENT, DeliveryStatus.DELIVERED)
        ]
        if not candidates:
            return None
        return copy.copy(max(candidates, key=lambda d: d.created_at))

    async def find_by_provider_delivery_id(self, tenant_id, provider_delivery_id):
        for delivery in self.deliveries.values():
            if delivery.tenant_id == tenant_id and delivery.provider_delivery_id == provider_delivery_id:
                return copy.copy(delivery)
        return None

    async def insert_response(self, delivery, customer_phone_hash, score, category, feedback):
        if any(r["delivery_id"] == delivery.id for r in self.responses):
            return None
        response_id = uuid4()
        self.responses.append(
            {
                "id": response_id,
                "delivery_id": delivery.id,
                "survey_id": delivery.survey_id,
                "customer_phone_hash": customer_phone_hash,
                "score": score,
                "category": category,
                "feedback": feedback,
                "metadata": delivery.metadata,
            }
        )
        return response_id


class FakeDirectory:
    """Mirrors TenantDirectory against dicts."""

    def __init__(self):
        self.tenants_by_phone_number_id: dict[str, str] = {}
        self.active_phone_number_ids: dict[str, str] = {}
        self.surveys: dict[tuple, dict[str, Any]] = {}

    def add_connection(self, tenant_id: str, phone_number_id: str, active: bool = True) -> None:
        self.tenants_by_phone_number_id[phone_number_id] = tenant_id
        if active:
            self.active_phone_number_ids[tenant_id] = phone_number_id

    def add_survey(self, tenant_id: str, survey_id: UUID, status="active", type="nps", questions=None):
        self.surveys[(tenant_id, survey_id)] = {
            "id": survey_id,
            "tenant_id": tenant_id,
            "type": type,
            "status": status,
            "questions": questions if questions is not None else [{"text": "Rate us 0-10"}],
        }

    async def find_tenant_by_phone_number_id(self, phone_number_id):
        return self.tenants_by_phone_number_id.get(phone_number_id)

    async def get_active_phone_number_id(self, tenant_id):
        return self.active_phone_number_ids.get(tenant_id)

    async def get_survey(self, tenant_id, survey_id):
        return self.surveys.get((tenant_id, survey_id))
