"""
Email delivery providers for the notification outbox.

The Resend provider talks to the HTTP API with httpx. The dry-run provider
only logs, and is used when OUTBOX_DRY_RUN is set or no API key exists.
"""
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from opscore.core.config import settings
from opscore.core.exceptions import DeliveryError
from opscore.core.logging import get_logger

logger = get_logger(__name__)


class EmailProvider(ABC):
    name: str = "base"

    @abstractmethod
    def send(self, to_email: str, subject: str, body: str) -> Optional[str]:
        """Deliver one message. Returns the provider message id when known.

        Raises:
            DeliveryError: on timeout, transport failure or non-2xx response
        """


class DryRunEmailProvider(EmailProvider):
    name = "dry_run"

    def send(self, to_email: str, subject: str, body: str) -> Optional[str]:
        logger.info(f"[DRY RUN] email to={to_email} subject={subject!r} ({len(body or '')} chars)")
        return None


class ResendEmailProvider(EmailProvider):
    """Resend HTTP API: POST {from, to: [...], subject, text}."""

    name = "resend"

    def __init__(
        self,
        api_key: str,
        from_email: str = None,
        api_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.from_email = from_email or settings.FROM_EMAIL
        self.api_url = api_url or settings.RESEND_API_URL
        self.timeout = timeout if timeout is not None else settings.EMAIL_HTTP_TIMEOUT
        self._transport = transport

    def send(self, to_email: str, subject: str, body: str) -> Optional[str]:
        payload = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "text": body or "",
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.api_url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Email provider timeout after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Email provider request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise DeliveryError(
                f"Resend error {response.status_code}: {response.text[:500]}",
                details={"status_code": response.status_code},
            )

        try:
            return response.json().get("id")
        except ValueError:
            return None


def get_email_provider(dry_run: Optional[bool] = None) -> EmailProvider:
    if dry_run is None:
        dry_run = settings.OUTBOX_DRY_RUN
    if dry_run or not settings.RESEND_API_KEY:
        return DryRunEmailProvider()
    return ResendEmailProvider(api_key=settings.RESEND_API_KEY)
