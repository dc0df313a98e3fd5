"""Transactional email transport."""

import logging
from typing import Dict, Optional, Protocol

import httpx

from releasewatch.config import settings
from releasewatch.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """Send failed for a reason that may clear up; the queue item is retried."""


class EmailValidationError(Exception):
    """The message itself is unsendable; the queue item fails immediately."""


class _RetryableStatus(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


class EmailTransport(Protocol):
    """Anything that can deliver a rendered email and return the provider's message id."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        ...


class ResendTransport:
    """Resend-compatible HTTP API client."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        from_address: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.api_url = api_url or settings.resend_api_url
        self.from_address = from_address or settings.email_from
        self.timeout = timeout or settings.transport_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post(self, body: dict) -> dict:
        client = await self._get_client()
        response = await client.post(self.api_url, json=body)

        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableStatus(response.status_code, response.text)
        if response.status_code in (400, 422):
            raise EmailValidationError(
                f"Provider rejected message ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise TransportError(f"Provider error {response.status_code}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Unreadable provider response: {e}") from e

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Send one email.

        Transient HTTP failures (connection errors, 429, 5xx) are retried
        inside this call with the configured backoff policy.

        Returns:
            Provider message id

        Raises:
            EmailValidationError: Recipient or content rejected
            TransportError: Provider unreachable or failing after retries
        """
        if not to or "@" not in to:
            raise EmailValidationError(f"Invalid recipient address: {to!r}")
        if not self.api_key:
            raise TransportError("Email transport API key is not configured")

        body = {
            "from": self.from_address,
            "to": [to],
            "subject": subject,
            "html": html,
            "text": text,
        }
        if headers:
            body["headers"] = headers

        try:
            data = await self.retry_policy.run(
                self._post,
                body,
                retry_on=(httpx.TransportError, _RetryableStatus),
            )
        except (httpx.TransportError, _RetryableStatus) as e:
            raise TransportError(str(e) or e.__class__.__name__) from e

        message_id = data.get("id") if isinstance(data, dict) else None
        if not message_id:
            raise TransportError("Provider response did not include a message id")

        logger.debug(f"Sent email to {to} (provider id {message_id})")
        return message_id
