"""Database store layer for survey deliveries and responses."""

import json
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import asyncpg

from survey_jobs.delivery import sources_for
from survey_jobs.errors import DeliveryNotFoundError
from survey_jobs.models import Delivery, DeliveryStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryStore:
    """Database layer for delivery operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def create_delivery(
        self,
        tenant_id: str,
        survey_id: UUID,
        recipient_address: str,
        recipient_address_hash: str,
        metadata: Optional[dict[str, Any]] = None,
        is_test: bool = False,
    ) -> Delivery:
        """Insert a new delivery in pending state."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO survey_delivery (
                    tenant_id, survey_id, recipient_address, recipient_address_hash,
                    status, metadata, is_test
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                """,
                tenant_id,
                survey_id,
                recipient_address,
                recipient_address_hash,
                DeliveryStatus.PENDING.value,
                json.dumps(metadata) if metadata is not None else None,
                is_test,
            )

        return self._row_to_delivery(row)

    async def get_delivery(
        self, delivery_id: UUID, tenant_id: Optional[str] = None
    ) -> Optional[Delivery]:
        """Get a delivery by ID, optionally scoped to a tenant."""
        query = "SELECT * FROM survey_delivery WHERE id = $1"
        params: list[Any] = [delivery_id]
        if tenant_id is not None:
            query += " AND tenant_id = $2"
            params.append(tenant_id)

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        return self._row_to_delivery(row) if row else None

    async def require_delivery(
        self, delivery_id: UUID, tenant_id: Optional[str] = None
    ) -> Delivery:
        """
        Get a delivery by ID or fail.

        Raises:
            DeliveryNotFoundError: If the delivery does not exist for this tenant
        """
        delivery = await self.get_delivery(delivery_id, tenant_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def transition(
        self,
        delivery_id: UUID,
        target: DeliveryStatus,
        *,
        provider_delivery_id: Optional[str] = None,
        error_message: Optional[str] = None,
        increment_retry: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[Delivery]:
        """
        Move a delivery to ``target`` if its current status allows it.

        The allowed source statuses go into the WHERE clause, so the check and
        the write are one statement. Returns the updated delivery, or None if
        the delivery is missing or sits in a status that cannot reach
        ``target`` (for example a late provider event after a response).
        """
        target = DeliveryStatus(target)
        now = now or _utcnow()

        assignments = ["status = $1", "updated_at = $2"]
        params: list[Any] = [target.value, now]

        def add(column: str, value: Any) -> None:
            params.append(value)
            assignments.append(f"{column} = ${len(params)}")

        if provider_delivery_id is not None:
            add("provider_delivery_id", provider_delivery_id)
        if error_message is not None:
            add("error_message", error_message)
        if increment_retry:
            assignments.append("retry_count = retry_count + 1")
        if target == DeliveryStatus.DELIVERED:
            assignments.append("delivered_at = $2")
        if target == DeliveryStatus.RESPONDED:
            assignments.append("responded_at = $2")

        params.append(delivery_id)
        id_idx = len(params)
        params.append([status.value for status in sources_for(target)])
        sources_idx = len(params)

        query = (
            f"UPDATE survey_delivery SET {', '.join(assignments)} "
            f"WHERE id = ${id_idx} AND status = ANY(${sources_idx}::text[]) "
            "RETURNING *"
        )

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        return self._row_to_delivery(row) if row else None

    async def find_awaiting_response(
        self, tenant_id: str, recipient_address_hash: str
    ) -> Optional[Delivery]:
        """Most recent delivery to this phone that a reply can still be matched to."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM survey_delivery
                WHERE tenant_id = $1
                  AND recipient_address_hash = $2
                  AND status = ANY($3::text[])
                ORDER BY created_at DESC
                LIMIT 1
                """,
                tenant_id,
                recipient_address_hash,
                [DeliveryStatus.SENT.value, DeliveryStatus.DELIVERED.value],
            )

        return self._row_to_delivery(row) if row else None

    async def find_by_provider_delivery_id(
        self, tenant_id: str, provider_delivery_id: str
    ) -> Optional[Delivery]:
        """Look a delivery up by the id the messaging provider assigned."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM survey_delivery
                WHERE tenant_id = $1 AND provider_delivery_id = $2
                """,
                tenant_id,
                provider_delivery_id,
            )

        return self._row_to_delivery(row) if row else None

    async def insert_response(
        self,
        delivery: Delivery,
        customer_phone_hash: str,
        score: int,
        category: str,
        feedback: Optional[str],
    ) -> Optional[UUID]:
        """
        Record a survey response for ``delivery``.

        Returns None when the delivery already has a response.
        """
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO survey_response (
                    tenant_id, survey_id, delivery_id, customer_phone_hash,
                    score, category, feedback, metadata, is_test
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (delivery_id) DO NOTHING
                RETURNING id
                """,
                delivery.tenant_id,
                delivery.survey_id,
                delivery.id,
                customer_phone_hash,
                score,
                category,
                feedback,
                json.dumps(delivery.metadata) if delivery.metadata is not None else None,
                delivery.is_test,
            )

    def _row_to_delivery(self, row: asyncpg.Record) -> Delivery:
        """Convert a database row to a Delivery model."""
        metadata = row["metadata"]
        if isinstance(metadata, str):
            metadata = json.loads(metadata)

        return Delivery(
            id=row["id"],
            tenant_id=row["tenant_id"],
            survey_id=row["survey_id"],
            recipient_address=row["recipient_address"],
            recipient_address_hash=row["recipient_address_hash"],
            status=DeliveryStatus(row["status"]),
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            provider_delivery_id=row["provider_delivery_id"],
            error_message=row["error_message"],
            metadata=metadata,
            is_test=row["is_test"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            delivered_at=row["delivered_at"],
            responded_at=row["responded_at"],
        )
