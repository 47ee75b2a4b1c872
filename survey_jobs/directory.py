"""Read-only lookups into tables owned by other services."""

import json
from typing import Any, Optional
from uuid import UUID

import asyncpg

DEFAULT_QUESTION = "How likely are you to recommend us? Reply 0-10"


class TenantDirectory:
    """Resolves connections and surveys for the job handlers and webhook router."""

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    async def find_tenant_by_phone_number_id(self, phone_number_id: str) -> Optional[str]:
        """Tenant that owns the provider phone number, or None if unknown."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT tenant_id FROM whatsapp_connection
                WHERE phone_number_id = $1
                LIMIT 1
                """,
                phone_number_id,
            )

    async def get_active_phone_number_id(self, tenant_id: str) -> Optional[str]:
        """Sending phone number id of the tenant's active connection."""
        async with self.db_pool.acquire() as conn:
            return await conn.fetchval(
                """
                SELECT phone_number_id FROM whatsapp_connection
                WHERE tenant_id = $1 AND status = 'active'
                LIMIT 1
                """,
                tenant_id,
            )

    async def get_survey(self, tenant_id: str, survey_id: UUID) -> Optional[dict[str, Any]]:
        """Survey summary (id, type, status, questions) scoped to the tenant."""
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, tenant_id, type, status, questions FROM survey
                WHERE id = $1 AND tenant_id = $2
                """,
                survey_id,
                tenant_id,
            )

        if not row:
            return None

        survey = dict(row)
        if isinstance(survey["questions"], str):
            survey["questions"] = json.loads(survey["questions"])
        return survey


def first_question_text(survey: dict[str, Any]) -> str:
    """Text of the survey's opening question, with a generic NPS fallback."""
    questions = survey.get("questions") or []
    if questions and isinstance(questions[0], dict) and questions[0].get("text"):
        return questions[0]["text"]
    return DEFAULT_QUESTION
