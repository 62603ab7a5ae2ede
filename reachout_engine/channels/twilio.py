"""
Twilio SMS adapter over the Programmable Messaging REST API.
"""

import logging
import re
from typing import Optional

import httpx

from ..errors import ProviderError
from .base import ChannelAdapter, OutboundMessage, SendResult

logger = logging.getLogger(__name__)

TWILIO_ERROR_MESSAGES = {
    "21211": "Invalid 'To' phone number",
    "21408": "Permission to send SMS denied",
    "21610": "Recipient has opted out",
    "21614": "Phone number not capable of SMS",
    "30003": "Unreachable destination phone number",
    "30004": "Message blocked by carrier",
    "30005": "Unknown destination phone number",
    "30006": "Landline or unreachable carrier",
    "30007": "Message filtered by carrier",
    "30008": "Unknown error from carrier",
}


def normalize_phone(phone: str) -> str:
    """Normalize a phone number towards E.164, assuming +1 for 10 digits."""
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if len(cleaned) == 10 and not cleaned.startswith("+"):
        return f"+1{cleaned}"
    if len(cleaned) == 11 and cleaned.startswith("1"):
        return f"+{cleaned}"
    if cleaned and not cleaned.startswith("+"):
        return f"+{cleaned}"
    return cleaned


def phone_lookup_forms(phone: str) -> list:
    """Forms a stored contact phone may take for the same number."""
    normalized = normalize_phone(phone)
    digits = normalized.lstrip("+")
    forms = [normalized, digits, phone.strip()]
    if len(digits) == 11 and digits.startswith("1"):
        local = digits[1:]
        forms += [
            local,
            f"({local[:3]}) {local[3:6]}-{local[6:]}",
            f"{local[:3]}-{local[3:6]}-{local[6:]}",
        ]
    return [f for f in dict.fromkeys(forms) if f]


def _json_object(response: httpx.Response) -> dict:
    """Response body as a dict; anything undecodable or non-object is empty."""
    try:
        payload = response.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def format_twilio_error(code: Optional[str]) -> str:
    if not code:
        return "Twilio error"
    return TWILIO_ERROR_MESSAGES.get(str(code), f"Twilio error: {code}")


class TwilioAdapter(ChannelAdapter):
    provider = "twilio"
    channel = "sms"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: Optional[str] = None,
        api_base: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 15.0,
        status_callback_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.account_sid = account_sid
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.status_callback_url = status_callback_url
        self.client = client or httpx.Client(timeout=timeout)
        self._auth = httpx.BasicAuth(account_sid, auth_token)

    def close(self) -> None:
        self.client.close()

    def send(self, message: OutboundMessage) -> SendResult:
        sender = message.from_address or self.from_number
        if not sender:
            raise ProviderError("No sender phone number configured", provider=self.provider)

        data = {
            "To": normalize_phone(message.to),
            "From": sender,
            "Body": message.body,
        }
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        url = f"{self.api_base}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = self.client.post(url, data=data, auth=self._auth)
        except httpx.RequestError as e:
            logger.error(f"Twilio request failed: {e}")
            raise ProviderError(f"Twilio request failed: {e}", provider=self.provider)

        payload = _json_object(response)
        if response.status_code >= 400:
            code = str(payload["code"]) if payload.get("code") else None
            text = payload.get("message") or format_twilio_error(code)
            logger.warning(f"Twilio rejected message: {response.status_code} {code}")
            raise ProviderError(text, provider=self.provider, provider_code=code)

        sid = payload.get("sid")
        if not sid:
            raise ProviderError("Twilio response carried no message sid", provider=self.provider)
        return SendResult(provider_id=sid, provider_status=payload.get("status"))
