"""
Message dispatch.

Creates outbound Message rows, moves them through
queued/scheduled -> sending -> sent|failed around exactly one provider
call, and reconciles asynchronous delivery status reported by provider
webhooks. The conditional ``queued|scheduled -> sending`` UPDATE in
front of the provider call is what keeps a message from being sent twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ..channels import ChannelAdapter, OutboundMessage, get_adapter
from ..config import Settings, get_settings
from ..db.models import CHANNELS, ContactModel, MessageModel, as_utc, utc_now
from ..db.services import (
    ContactService,
    MessageService,
    SenderIdentityService,
    SettingsService,
)
from ..errors import NotFoundError, ProviderError, ValidationError
from .renderer import contact_to_placeholder_values, render

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str], ChannelAdapter]


@dataclass
class SweepSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
        }


def contact_block_reason(contact: Optional[ContactModel], channel: str) -> Optional[str]:
    """Why a message on ``channel`` may not go to ``contact``, or None."""
    if contact is None:
        return "Contact not found"
    if contact.do_not_contact:
        return "Contact is marked as Do Not Contact"
    if channel == "sms" and not contact.phone:
        return "Contact does not have a phone number"
    if channel == "email" and not contact.email:
        return "Contact does not have an email address"
    return None


class MessageDispatcher:
    """Send, schedule, and reconcile messages for one database session."""

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        adapter_factory: Optional[AdapterFactory] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.messages = MessageService(db)
        self.contacts = ContactService(db)
        self.identities = SenderIdentityService(db)
        self._adapter_factory = adapter_factory or self._default_adapter

    def _default_adapter(self, channel: str) -> ChannelAdapter:
        return get_adapter(channel, SettingsService(self.db), self.settings)

    def _resolve_identity(
        self, channel: str, identity_id: Optional[str]
    ) -> Optional[Dict[str, str]]:
        identity = None
        if identity_id:
            identity = self.identities.get_identity(identity_id)
            if identity is None or identity.channel != channel:
                logger.warning(
                    f"Sender identity {identity_id} not usable for {channel}, using default"
                )
                identity = None
        if identity is None:
            identity = self.identities.get_default(channel)
        if identity is None:
            return None
        return {
            "type": channel,
            "identity_id": identity.id,
            "address": identity.address,
            "label": identity.label,
        }

    def send(
        self,
        contact_id: str,
        channel: str,
        body: str,
        subject: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        template_id: Optional[str] = None,
        from_identity_id: Optional[str] = None,
        source: str = "manual",
        workflow_execution_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> MessageModel:
        """Create a message and send it now, or park it as ``scheduled``.

        Raises ValidationError or NotFoundError before anything is written
        when the contact cannot receive on ``channel``. Provider failures do
        not raise; they are recorded on the returned message.
        """
        now = now or utc_now()
        if channel not in CHANNELS:
            raise ValidationError(f"Unsupported channel: {channel}")
        if not body or not body.strip():
            raise ValidationError("Message body is required")

        contact = self.contacts.get_contact(contact_id)
        if contact is None:
            raise NotFoundError("Contact", contact_id)
        reason = contact_block_reason(contact, channel)
        if reason:
            raise ValidationError(reason, {"contact_id": contact_id, "channel": channel})

        values = contact_to_placeholder_values(contact)
        rendered_body = render(body, values).text
        rendered_subject = None
        if channel == "email":
            rendered_subject = render(
                subject or self.settings.default_email_subject, values
            ).text

        scheduled_at = as_utc(scheduled_at)
        is_scheduled = scheduled_at is not None and scheduled_at > now

        message = self.messages.create_message(
            contact_id=contact.id,
            channel=channel,
            direction="outbound",
            subject=rendered_subject,
            body=rendered_body,
            status="scheduled" if is_scheduled else "queued",
            source=source,
            template_id=template_id,
            scheduled_at=scheduled_at,
            from_identity=self._resolve_identity(channel, from_identity_id),
            workflow_execution_id=workflow_execution_id,
        )
        logger.info(
            f"Message {message.id} created ({message.status}) "
            f"for contact {contact.id} on {channel}"
        )

        if is_scheduled:
            return message
        self._deliver(message, contact, "queued", now)
        return message

    def _deliver(
        self,
        message: MessageModel,
        contact: ContactModel,
        expected_status: str,
        now: datetime,
    ) -> bool:
        """Claim ``message`` and make the single provider call.

        Returns False without calling the provider if the claim was lost.
        """
        if not self.messages.claim(message.id, expected_status, now):
            logger.info(f"Message {message.id} already claimed, skipping send")
            self.db.refresh(message)
            return False
        self.db.refresh(message)
        logger.info(f"Message {message.id} sending via {message.channel}")

        to = contact.phone if message.channel == "sms" else contact.email
        identity = message.from_identity or {}
        outbound = OutboundMessage(
            to=to,
            body=message.body,
            subject=message.subject,
            from_address=identity.get("address"),
            from_name=identity.get("label") if message.channel == "email" else None,
        )

        adapter = None
        try:
            adapter = self._adapter_factory(message.channel)
            result = adapter.send(outbound)
        except ProviderError as e:
            self._record_failure(message, e.message)
            logger.warning(f"Message {message.id} failed: {e.message}")
            return True
        except Exception as e:
            # the claim is already held, so the row must still leave "sending"
            self._record_failure(message, f"Unexpected provider error: {e}")
            logger.exception(f"Message {message.id} failed unexpectedly: {e}")
            return True
        finally:
            if adapter is not None:
                adapter.close()

        message.status = "sent"
        message.provider_id = result.provider_id
        message.sent_at = utc_now()
        self.db.commit()
        logger.info(f"Message {message.id} sent, provider id {result.provider_id}")
        return True

    def _record_failure(self, message: MessageModel, error: str) -> None:
        message.status = "failed"
        message.provider_error = error
        message.failed_at = utc_now()
        self.db.commit()

    def _fail_unsendable(self, message: MessageModel, reason: str, now: datetime) -> bool:
        if not self.messages.claim(message.id, "scheduled", now, new_status="failed"):
            return False
        self.db.refresh(message)
        message.provider_error = reason
        message.failed_at = now
        self.db.commit()
        logger.warning(f"Scheduled message {message.id} failed: {reason}")
        return True

    def sweep_scheduled(
        self, limit: Optional[int] = None, now: Optional[datetime] = None
    ) -> SweepSummary:
        """Send every due ``scheduled`` message, up to ``limit``.

        Contact state is re-checked at send time and the stored body is
        re-rendered so placeholders left unresolved at scheduling time pick
        up values added since. One bad message never stops the sweep.
        """
        now = now or utc_now()
        limit = limit or self.settings.message_sweep_batch_size
        summary = SweepSummary()

        for message_id in self.messages.get_due_scheduled_ids(now, limit):
            summary.processed += 1
            try:
                message = self.messages.get_message(message_id)
                contact = self.contacts.get_contact(message.contact_id)
                reason = contact_block_reason(contact, message.channel)
                if reason:
                    if self._fail_unsendable(message, reason, now):
                        summary.failed += 1
                    else:
                        summary.skipped += 1
                    continue

                values = contact_to_placeholder_values(contact)
                message.body = render(message.body, values).text
                if message.subject:
                    message.subject = render(message.subject, values).text
                self.db.commit()

                if not self._deliver(message, contact, "scheduled", now):
                    summary.skipped += 1
                elif message.status == "sent":
                    summary.sent += 1
                else:
                    summary.failed += 1
            except Exception as e:
                self.db.rollback()
                summary.failed += 1
                logger.exception(f"Error sweeping scheduled message {message_id}: {e}")

        if summary.processed:
            logger.info(f"Scheduled message sweep finished: {summary.to_dict()}")
        return summary

    def apply_delivery_status(
        self,
        provider_id: str,
        status: str,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[Optional[MessageModel], bool]:
        """Apply a canonical status reported by a provider.

        Returns ``(message, changed)``; message is None when no row carries
        ``provider_id``.
        """
        message = self.messages.get_by_provider_id(provider_id)
        if message is None:
            return None, False
        changed = self.messages.apply_status(message, status, now=now, error=error)
        return message, changed

    def record_inbound(
        self,
        contact: ContactModel,
        channel: str,
        body: str,
        subject: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> MessageModel:
        """Store a message the contact sent us.

        Redelivered webhooks carrying a provider id already on file return
        the existing row.
        """
        if provider_id:
            existing = self.messages.get_by_provider_id(provider_id)
            if existing is not None:
                return existing

        message = self.messages.create_message(
            contact_id=contact.id,
            channel=channel,
            direction="inbound",
            subject=subject,
            body=body or "",
            status="delivered",
            source="inbound",
            provider_id=provider_id or None,
            delivered_at=utc_now(),
        )
        logger.info(f"Inbound {channel} message {message.id} from contact {contact.id}")
        return message
