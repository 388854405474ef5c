"""
Email Client

Sends transactional email through a Postmark-style HTTP API.
"""
import httpx
import structlog

from app.config import settings
from app.exceptions import PermanentDeliveryError, TransientDeliveryError


logger = structlog.get_logger()


class EmailClient:
    """HTTP client for the email delivery API."""

    def __init__(
        self,
        base_url: str,
        sender: str,
        authorization_token: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None
    ):
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.authorization_token = authorization_token
        self.timeout = timeout
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def send_email(
        self,
        recipient: str,
        subject: str,
        html_content: str,
        text_content: str
    ) -> None:
        """
        Send one email.

        Raises:
            TransientDeliveryError: timeout, network error, unreadable response,
                429 or 5xx
            PermanentDeliveryError: any other 4xx
        """
        payload = {
            "From": self.sender,
            "To": recipient,
            "Subject": subject,
            "HtmlBody": html_content,
            "TextBody": text_content,
        }
        headers = {"X-Postmark-Server-Token": self.authorization_token}

        try:
            response = await self.http_client.post(
                f"{self.base_url}/email",
                json=payload,
                headers=headers,
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Email API timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Email API unreachable: {e}") from e
        except httpx.HTTPError as e:
            # Broken response, e.g. a body that does not match its Content-Encoding
            raise TransientDeliveryError(f"Email API request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDeliveryError(
                f"Email API returned HTTP {response.status_code}",
                status_code=response.status_code
            )
        if response.status_code >= 400:
            raise PermanentDeliveryError(
                f"Email API rejected message: HTTP {response.status_code}",
                status_code=response.status_code
            )

        logger.debug("email_sent", recipient=recipient, status_code=response.status_code)

    async def aclose(self) -> None:
        await self.http_client.aclose()


def build_email_client() -> EmailClient:
    """Create an EmailClient from application settings."""
    return EmailClient(
        base_url=settings.EMAIL_BASE_URL,
        sender=settings.EMAIL_SENDER,
        authorization_token=settings.EMAIL_AUTHORIZATION_TOKEN,
        timeout=settings.EMAIL_TIMEOUT_SECONDS,
    )
