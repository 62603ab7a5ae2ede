"""
Channel adapters and the factory that builds them from stored credentials.
"""

from typing import Optional

from ..config import Settings, get_settings
from ..db.services import SettingsService
from ..errors import ProviderError, ValidationError
from .base import ChannelAdapter, OutboundMessage, SendResult
from .sendgrid import SendGridAdapter
from .twilio import TwilioAdapter, normalize_phone

TWILIO_KEYS = ("twilio_account_sid", "twilio_auth_token", "twilio_phone_number")
SENDGRID_KEYS = ("sendgrid_api_key", "sendgrid_from_email", "sendgrid_from_name")


def get_adapter(
    channel: str,
    store: SettingsService,
    settings: Optional[Settings] = None,
) -> ChannelAdapter:
    """Build the adapter for ``channel`` from credentials read now.

    Credentials are fetched per send so operator changes apply without a
    restart. Raises ProviderError when the provider is not configured.
    """
    settings = settings or get_settings()

    if channel == "sms":
        creds = store.get_many(TWILIO_KEYS)
        if not creds["twilio_account_sid"] or not creds["twilio_auth_token"]:
            raise ProviderError("Twilio is not configured", provider="twilio")
        return TwilioAdapter(
            account_sid=creds["twilio_account_sid"],
            auth_token=creds["twilio_auth_token"],
            from_number=creds["twilio_phone_number"],
            api_base=settings.twilio_api_base,
            timeout=settings.provider_timeout_seconds,
            status_callback_url=settings.status_callback_url,
        )

    if channel == "email":
        creds = store.get_many(SENDGRID_KEYS)
        if not creds["sendgrid_api_key"]:
            raise ProviderError("SendGrid is not configured", provider="sendgrid")
        return SendGridAdapter(
            api_key=creds["sendgrid_api_key"],
            from_email=creds["sendgrid_from_email"],
            from_name=creds["sendgrid_from_name"] or settings.default_from_name,
            api_base=settings.sendgrid_api_base,
            timeout=settings.provider_timeout_seconds,
        )

    raise ValidationError(f"Unsupported channel: {channel}")


__all__ = [
    "ChannelAdapter",
    "OutboundMessage",
    "SendResult",
    "TwilioAdapter",
    "SendGridAdapter",
    "get_adapter",
    "normalize_phone",
]
