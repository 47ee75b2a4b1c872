"""Database store layer for the job queue."""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from survey_jobs.models import Job, JobStatus


def _rows_updated(result: str) -> int:
    # Command tag looks like "UPDATE 1"
    return int(result.split()[-1]) if result else 0


class JobStore:
    """Database layer for job operations."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def insert_job(
        self,
        tenant_id: str,
        idempotency_key: str,
        source: str,
        event_type: str,
        payload: dict[str, Any],
        max_attempts: int,
        now: datetime,
    ) -> Optional[UUID]:
        """
        Insert a new pending job.

        Returns the new job id, or None when the idempotency key already exists.
        The unique index is the only dedupe check, so this is safe under
        concurrent callers.
        """
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO webhook_job (
                    tenant_id, idempotency_key, source, event_type, payload,
                    status, attempts, max_attempts, next_retry_at,
                    created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, 0, $7, $8, $8, $8)
                ON CONFLICT (idempotency_key) DO NOTHING
                RETURNING id
                """,
                tenant_id,
                idempotency_key,
                source,
                event_type,
                json.dumps(payload),
                JobStatus.PENDING.value,
                max_attempts,
                now,
            )

    async def get_job(self, job_id: UUID, tenant_id: Optional[str] = None) -> Optional[Job]:
        """Get a job by ID, optionally scoped to a tenant."""
        query = "SELECT * FROM webhook_job WHERE id = $1"
        params: list[Any] = [job_id]
        if tenant_id is not None:
            query += " AND tenant_id = $2"
            params.append(tenant_id)

        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(query, *params)

        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        tenant_id: str,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List a tenant's jobs, newest first."""
        query = "SELECT * FROM webhook_job WHERE tenant_id = $1"
        params: list[Any] = [tenant_id]
        param_idx = 2

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def acquire_next_job(self, now: datetime) -> Optional[Job]:
        """
        Atomically claim the oldest due pending job.

        Uses FOR UPDATE SKIP LOCKED so concurrent workers never wait on or
        double-claim the same row. ``locked_at`` on the returned job
        identifies this claim for the later complete/fail/release.
        """
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE webhook_job
                SET status = $1, locked_at = $3, updated_at = $3
                WHERE id = (
                    SELECT id FROM webhook_job
                    WHERE status = $2
                      AND next_retry_at <= $3
                    ORDER BY next_retry_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.PROCESSING.value,
                JobStatus.PENDING.value,
                now,
            )

        return self._row_to_job(row) if row else None

    async def acquire_job_by_id(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """Claim a specific job, only if it is still pending."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE webhook_job
                SET status = $1, locked_at = $3, updated_at = $3
                WHERE id = $4 AND status = $2
                RETURNING *
                """,
                JobStatus.PROCESSING.value,
                JobStatus.PENDING.value,
                now,
                job_id,
            )

        return self._row_to_job(row) if row else None

    async def _update_claimed_job(
        self, assignments: str, params: list[Any], job_id: UUID, locked_at: Optional[datetime]
    ) -> bool:
        """
        Run ``UPDATE ... SET <assignments>`` against a job this caller still holds.

        The row must be processing and, when ``locked_at`` is given, still
        carry that claim. A worker whose job was reclaimed and handed to
        someone else matches nothing. Returns True if the row was updated.
        """
        params = params + [job_id, JobStatus.PROCESSING.value, locked_at]
        base = len(params) - 2
        query = (
            f"UPDATE webhook_job SET {assignments}, locked_at = NULL "
            f"WHERE id = ${base} AND status = ${base + 1} "
            f"AND (${base + 2}::timestamptz IS NULL OR locked_at = ${base + 2})"
        )

        async with self.db_pool.acquire() as conn:
            result = await conn.execute(query, *params)

        return _rows_updated(result) == 1

    async def update_job_completed(
        self, job_id: UUID, now: datetime, locked_at: Optional[datetime] = None
    ) -> bool:
        """Mark a held job as completed."""
        return await self._update_claimed_job(
            "status = $1, processed_at = COALESCE(processed_at, $2), updated_at = $2",
            [JobStatus.COMPLETED.value, now],
            job_id,
            locked_at,
        )

    async def update_job_retry(
        self,
        job_id: UUID,
        attempts: int,
        error_message: str,
        next_retry_at: datetime,
        now: datetime,
        locked_at: Optional[datetime] = None,
    ) -> bool:
        """Put a held job back to pending for another attempt."""
        return await self._update_claimed_job(
            "status = $1, attempts = $2, error_message = $3, "
            "next_retry_at = $4, updated_at = $5",
            [JobStatus.PENDING.value, attempts, error_message, next_retry_at, now],
            job_id,
            locked_at,
        )

    async def update_job_failed(
        self,
        job_id: UUID,
        attempts: int,
        error_message: str,
        now: datetime,
        locked_at: Optional[datetime] = None,
    ) -> bool:
        """Mark a held job as permanently failed (dead-lettered)."""
        return await self._update_claimed_job(
            "status = $1, attempts = $2, error_message = $3, "
            "next_retry_at = NULL, updated_at = $4",
            [JobStatus.FAILED.value, attempts, error_message, now],
            job_id,
            locked_at,
        )

    async def release_job(
        self, job_id: UUID, now: datetime, locked_at: Optional[datetime] = None
    ) -> bool:
        """Return a held job to pending without consuming an attempt."""
        return await self._update_claimed_job(
            "status = $1, next_retry_at = $2, updated_at = $2",
            [JobStatus.PENDING.value, now],
            job_id,
            locked_at,
        )

    async def list_stale_processing_jobs(self, older_than: datetime) -> list[Job]:
        """Processing jobs not touched since ``older_than``."""
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM webhook_job
                WHERE status = $1 AND updated_at < $2
                ORDER BY updated_at ASC
                """,
                JobStatus.PROCESSING.value,
                older_than,
            )

        return [self._row_to_job(row) for row in rows]

    async def reclaim_stale_job(
        self,
        job_id: UUID,
        older_than: datetime,
        attempts: int,
        status: JobStatus,
        error_message: str,
        next_retry_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """
        Move a stale processing job to ``status``.

        Guarded on the row still being stale, so a worker that finished in
        the meantime or a second sweeper wins cleanly. Returns True if the row
        was updated.
        """
        async with self.db_pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE webhook_job
                SET status = $1,
                    attempts = $2,
                    error_message = $3,
                    next_retry_at = $4,
                    locked_at = NULL,
                    updated_at = $5
                WHERE id = $6
                  AND status = $7
                  AND updated_at < $8
                """,
                status.value,
                attempts,
                error_message,
                next_retry_at,
                now,
                job_id,
                JobStatus.PROCESSING.value,
                older_than,
            )

        return _rows_updated(result) == 1

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            tenant_id=row["tenant_id"],
            idempotency_key=row["idempotency_key"],
            source=row["source"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"])
            if isinstance(row["payload"], str)
            else row["payload"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            next_retry_at=row["next_retry_at"],
            processed_at=row["processed_at"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            locked_at=row["locked_at"],
        )
