"""HTTP client for the Kapso WhatsApp messaging provider."""

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from survey_jobs.config import DEFAULT_KAPSO_BASE_URL
from survey_jobs.errors import ProviderError, RemoteHttpError

GRAPH_API_VERSION = "v21.0"


def classify_http_error(error: RemoteHttpError) -> ProviderError:
    """Map a failed provider response onto a typed, retry-classified error."""
    if error.status_code == 429:
        code = "rate_limited"
    elif error.status_code == 0:
        code = "connection_lost"
    elif error.status_code >= 500:
        code = "unknown_error"
    elif error.status_code in (401, 403):
        code = "phone_not_connected"
    elif error.response_body and "phone" in error.response_body.lower():
        code = "invalid_phone"
    else:
        code = "message_failed"
    return ProviderError(code, str(error))


class KapsoClient:
    """Sends WhatsApp messages through Kapso."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_KAPSO_BASE_URL,
        timeout: float = 10.0,
    ):
        """
        Initialize the client.

        Args:
            api_key: Kapso API key, sent as X-API-Key
            base_url: Base URL of the WhatsApp Cloud API proxy
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def send_text(self, *, phone_number_id: str, to: str, body: str) -> str:
        """
        Send a text message.

        Returns:
            The provider-assigned message id

        Raises:
            ProviderError: With ``retryable`` set from the failure kind
        """
        url = f"{self.base_url}/{GRAPH_API_VERSION}/{phone_number_id}/messages"
        request_body = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }

        try:
            response_data = await self._post(url, request_body)
        except RemoteHttpError as e:
            raise classify_http_error(e) from e

        messages = response_data.get("messages") or []
        message_id = messages[0].get("id") if messages else None
        if not message_id:
            raise ProviderError("message_failed", "No message ID returned from Kapso")
        return message_id

    async def _post(self, url: str, request_body: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.post(url, json=request_body, headers=headers) as resp:
                    response_body = await resp.text()

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"Failed to send message: {response_body}",
                            response_body=response_body,
                        )

                    return await resp.json()

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e) or type(e).__name__}",
                ) from e


def create_kapso_client(config) -> Optional[KapsoClient]:
    """Build a client from SurveyJobsConfig, or None when no API key is set."""
    if not config.kapso_api_key:
        return None
    return KapsoClient(
        api_key=config.kapso_api_key,
        base_url=config.kapso_base_url,
        timeout=config.kapso_timeout_seconds,
    )
