"""
HTTP client for the outbound chat messaging gateway.

The gateway accepts a form-encoded message and answers with a submission
status. Delivery receipts are not tracked: "submitted" is success.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from bookingdesk.config import get_settings

logger = logging.getLogger(__name__)

STATUS_SUBMITTED = "submitted"
STATUS_FAILED = "failed"


@dataclass
class SendResult:
    """Outcome of a send attempt."""

    status: str
    error: Optional[str] = None

    @property
    def submitted(self) -> bool:
        """True if the gateway accepted the message."""
        return self.status == STATUS_SUBMITTED


class MessagingGateway:
    """
    HTTP client for the messaging gateway API.

    send() never raises: transport errors and rejected requests come back
    as a failed SendResult carrying the error text.
    """

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        source_number: Optional[str] = None,
        app_name: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize client.

        Args:
            api_url: Gateway endpoint (defaults to settings)
            api_key: Gateway API key (defaults to settings)
            source_number: Sending number (defaults to settings)
            app_name: Gateway app name (defaults to settings)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.api_url = api_url or settings.messaging_api_url
        self.api_key = api_key if api_key is not None else settings.messaging_api_key
        self.source_number = source_number or settings.messaging_source_number
        self.app_name = app_name or settings.messaging_app_name
        self.timeout = timeout or settings.messaging_timeout_seconds
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, phone: str, text: str) -> SendResult:
        """Send a text message.

        Args:
            phone: Destination phone number
            text: Message body

        Returns:
            SendResult with status "submitted" or "failed"
        """
        client = await self._get_client()

        form = {
            "channel": "whatsapp",
            "source": self.source_number,
            "destination": phone,
            "message": json.dumps({"type": "text", "text": text}),
            "src.name": self.app_name,
        }

        try:
            response = await client.post(
                self.api_url,
                data=form,
                headers={"apikey": self.api_key},
            )
            response.raise_for_status()

            data = response.json() if response.content else {}
            status = data.get("status", STATUS_SUBMITTED) if isinstance(data, dict) else STATUS_SUBMITTED

            if status != STATUS_SUBMITTED:
                logger.warning(f"Gateway did not accept message to {phone}: {data}")
                return SendResult(status=STATUS_FAILED, error=str(data)[:500])

            return SendResult(status=STATUS_SUBMITTED)

        except httpx.HTTPStatusError as e:
            logger.error(f"Gateway rejected message: {e.response.status_code} - {e.response.text[:200]}")
            return SendResult(status=STATUS_FAILED, error=f"HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error(f"Gateway request failed: {e}")
            return SendResult(status=STATUS_FAILED, error=str(e) or e.__class__.__name__)
        except ValueError as e:
            logger.error(f"Gateway returned invalid JSON: {e}")
            return SendResult(status=STATUS_FAILED, error="Invalid gateway response")


# Singleton
_gateway: Optional[MessagingGateway] = None


def get_messaging_gateway() -> MessagingGateway:
    """Get singleton MessagingGateway."""
    global _gateway
    if _gateway is None:
        _gateway = MessagingGateway()
    return _gateway
