"""Transactional email delivery for takedown notices (Resend HTTP API)."""
import logging
from typing import Optional

import httpx

from ... import config

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class DeliveryError(Exception):
    """
    Raised by delivery collaborators.

    transient=True: retry with backoff (timeout, rate limit, 5xx, network).
    transient=False: permanent, fail the item (bad recipient, rejected payload).
    """

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.message = message
        self.transient = transient


class ResendMailer:
    """Sends plain-text notices through Resend and returns the provider message id."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key if api_key is not None else config.RESEND_API_KEY
        self.from_email = from_email or config.DMCA_FROM_EMAIL
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def close(self):
        """Close HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def send(
        self,
        to: str,
        subject: str,
        body: str,
        reply_to: Optional[str] = None,
    ) -> str:
        """
        Send one email.

        Returns:
            Provider message id

        Raises:
            DeliveryError
        """
        if not self.api_key:
            raise DeliveryError("RESEND_API_KEY is not configured", transient=False)
        if not to:
            raise DeliveryError("No recipient email address", transient=False)

        payload = {
            "from": self.from_email,
            "to": [to],
            "subject": subject,
            "text": body,
        }
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            response = self._get_client().post(
                RESEND_API_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Mail provider timed out: {e}", transient=True)
        except httpx.HTTPError as e:
            raise DeliveryError(f"Mail provider unreachable: {e}", transient=True)

        if response.status_code == 429 or response.status_code >= 500:
            raise DeliveryError(
                f"Mail provider returned {response.status_code}", transient=True
            )
        if response.status_code >= 400:
            raise DeliveryError(
                f"Mail provider rejected message ({response.status_code}): {response.text[:200]}",
                transient=False,
            )

        try:
            message_id = response.json().get("id")
        except ValueError:
            # Accepted but unreadable; treat as not sent so it is retried
            raise DeliveryError(
                f"Mail provider returned an unreadable response ({response.status_code})",
                transient=True,
            )
        logger.info(f"Sent email to {to}, provider id {message_id}")
        return message_id
