"""
Webhook delivery for completed transcriptions.

One JSON POST per attempt. A non-2xx answer or any transport failure is a
``WebhookError``; retries are the queue driver's business.
"""

import logging

import httpx

from secretary.core.exceptions import WebhookError
from secretary.core.models import WebhookPayload

logger = logging.getLogger(__name__)


class WebhookClient:
    """Posts ``WebhookPayload`` bodies to user-configured endpoints.

    Args:
        timeout: Request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one).
    """

    def __init__(self, timeout: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, url: str, payload: WebhookPayload) -> None:
        """Deliver *payload* to *url*.

        Raises:
            WebhookError: On a non-2xx response or network error.
        """
        body = payload.model_dump(mode="json", by_alias=True)
        try:
            response = await self._client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise WebhookError(
                f"Webhook request failed: {exc}",
                details={"url": url, "error": type(exc).__name__},
            ) from exc
        if not response.is_success:
            raise WebhookError(
                f"Webhook failed: {response.status_code} {response.reason_phrase}",
                details={"url": url, "status_code": response.status_code},
            )
        logger.info("Webhook delivered for recording %s", payload.id)

    async def close(self) -> None:
        await self._client.aclose()
