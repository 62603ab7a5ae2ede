"""
Provider vocabulary mapping and payload helpers.
"""

import html
import re
from typing import List

TWILIO_STATUS_MAP = {
    "accepted": "queued",
    "scheduled": "queued",
    "queued": "queued",
    "sending": "sending",
    "sent": "sent",
    "delivered": "delivered",
    "read": "delivered",
    "undelivered": "failed",
    "failed": "failed",
    "canceled": "failed",
}

SENDGRID_EVENT_MAP = {
    "processed": "sending",
    "deferred": "sending",
    "delivered": "delivered",
    "dropped": "failed",
    "blocked": "failed",
    "bounce": "bounced",
}


def map_twilio_status(status: str) -> str:
    """Unknown Twilio statuses count as failures."""
    return TWILIO_STATUS_MAP.get((status or "").lower(), "failed")


def map_sendgrid_event(event: str) -> str:
    """Engagement events (open, click, ...) imply the message was sent."""
    return SENDGRID_EVENT_MAP.get((event or "").lower(), "sent")


def sendgrid_message_id_candidates(sg_message_id: str) -> List[str]:
    """``sg_message_id`` is ``<x-message-id>.<filter suffix>``; try the prefix first."""
    if not sg_message_id:
        return []
    prefix = sg_message_id.split(".", 1)[0]
    return [prefix] if prefix == sg_message_id else [prefix, sg_message_id]


def extract_email_address(value: str) -> str:
    """``"Jane Doe <jane@example.com>"`` -> ``"jane@example.com"``."""
    match = re.search(r"<([^>]+)>", value or "")
    address = match.group(1) if match else (value or "")
    return address.strip().lower()


def html_to_text(markup: str) -> str:
    text = re.sub(r"<br\s*/?>", "\n", markup or "", flags=re.IGNORECASE)
    text = re.sub(r"</p>", "\n\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    return html.unescape(text).strip()
