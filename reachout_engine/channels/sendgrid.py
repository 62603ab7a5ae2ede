"""
SendGrid email adapter over the v3 mail/send API.
"""

import html
import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import ProviderError
from .base import ChannelAdapter, OutboundMessage, SendResult

logger = logging.getLogger(__name__)


def text_to_html(text: str) -> str:
    return html.escape(text or "").replace("\n", "<br>")


class SendGridAdapter(ChannelAdapter):
    provider = "sendgrid"
    channel = "email"

    def __init__(
        self,
        api_key: str,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        api_base: str = "https://api.sendgrid.com/v3",
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ):
        self.from_email = from_email
        self.from_name = from_name
        self.api_base = api_base.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)
        self._api_key = api_key

    def close(self) -> None:
        self.client.close()

    def _payload(self, message: OutboundMessage) -> Dict[str, Any]:
        from_email = message.from_address or self.from_email
        if not from_email:
            raise ProviderError("No sender email address configured", provider=self.provider)
        sender: Dict[str, str] = {"email": from_email}
        from_name = message.from_name or self.from_name
        if from_name:
            sender["name"] = from_name

        return {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": sender,
            "subject": message.subject or "",
            "content": [
                {"type": "text/plain", "value": message.body},
                {"type": "text/html", "value": text_to_html(message.body)},
            ],
            "tracking_settings": {
                "click_tracking": {"enable": True},
                "open_tracking": {"enable": True},
            },
        }

    def send(self, message: OutboundMessage) -> SendResult:
        payload = self._payload(message)
        try:
            response = self.client.post(
                f"{self.api_base}/mail/send",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        except httpx.RequestError as e:
            logger.error(f"SendGrid request failed: {e}")
            raise ProviderError(f"SendGrid request failed: {e}", provider=self.provider)

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            errors = body.get("errors") if isinstance(body, dict) else None
            if not isinstance(errors, list):
                errors = []
            text = ", ".join(
                str(e["message"]) for e in errors if isinstance(e, dict) and e.get("message")
            )
            logger.warning(f"SendGrid rejected message: {response.status_code}")
            raise ProviderError(
                text or f"SendGrid returned HTTP {response.status_code}",
                provider=self.provider,
                provider_code=str(response.status_code),
            )

        message_id = response.headers.get("X-Message-Id")
        if not message_id:
            raise ProviderError("SendGrid response carried no message id", provider=self.provider)
        return SendResult(provider_id=message_id, provider_status="processed")
