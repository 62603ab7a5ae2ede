"""
Provider webhook endpoints.

Signatures are checked before anything is read from or written to the
database. Payloads that parse but match nothing are acknowledged with 200
so providers do not retry them.
"""

import json
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.orm import Session

from ..channels.twilio import phone_lookup_forms
from ..config import Settings, get_settings
from ..db.base import get_db
from ..db.services import ContactService
from ..deps import get_dispatcher
from ..engine.dispatch import MessageDispatcher
from .providers import (
    extract_email_address,
    html_to_text,
    map_sendgrid_event,
    map_twilio_status,
    sendgrid_message_id_candidates,
)
from .signatures import (
    SENDGRID_SIGNATURE_HEADER,
    SENDGRID_TIMESTAMP_HEADER,
    TWILIO_SIGNATURE_HEADER,
    verify_sendgrid_signature,
    verify_twilio_signature,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def _bypassed(settings: Settings, provider: str, request: Request) -> bool:
    if settings.insecure_skip_webhook_signatures:
        logger.warning(
            "webhook_signature_check_bypassed",
            provider=provider,
            path=request.url.path,
            setting="insecure_skip_webhook_signatures",
        )
        return True
    return False


def _signed_url(request: Request, settings: Settings) -> str:
    """The URL Twilio signed: the public URL when behind a proxy."""
    if not settings.public_base_url:
        return str(request.url)
    url = settings.public_base_url.rstrip("/") + request.url.path
    if request.url.query:
        url += "?" + request.url.query
    return url


async def _twilio_form(request: Request, settings: Settings) -> Dict[str, str]:
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if not _bypassed(settings, "twilio", request):
        verify_twilio_signature(
            settings.twilio_webhook_auth_token,
            request.headers.get(TWILIO_SIGNATURE_HEADER),
            _signed_url(request, settings),
            params,
        )
    return params


async def _sendgrid_body(request: Request, settings: Settings) -> bytes:
    body = await request.body()
    if not _bypassed(settings, "sendgrid", request):
        verify_sendgrid_signature(
            settings.sendgrid_webhook_public_key,
            request.headers.get(SENDGRID_SIGNATURE_HEADER),
            request.headers.get(SENDGRID_TIMESTAMP_HEADER),
            body,
        )
    return body


@router.post("/twilio/status")
async def twilio_status(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Response:
    """Delivery status callback for outbound SMS."""
    params = await _twilio_form(request, settings)
    sid = params.get("MessageSid")
    twilio_status_value = params.get("MessageStatus")
    if not sid or not twilio_status_value:
        raise HTTPException(status_code=400, detail="MessageSid and MessageStatus are required")

    status = map_twilio_status(twilio_status_value)
    error = None
    if params.get("ErrorCode") or params.get("ErrorMessage"):
        error = f"{params.get('ErrorCode', '')}: {params.get('ErrorMessage', '')}".strip()

    message, changed = dispatcher.apply_delivery_status(sid, status, error=error)
    if message is None:
        logger.info("twilio_status_unmatched", provider_id=sid, status=twilio_status_value)
    else:
        logger.info(
            "twilio_status_applied" if changed else "twilio_status_ignored",
            message_id=message.id,
            provider_id=sid,
            status=status,
            current_status=message.status,
        )
    return PlainTextResponse("OK")


@router.post("/twilio/inbound")
async def twilio_inbound(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Response:
    """Inbound SMS. Replies with empty TwiML so Twilio sends nothing back."""
    params = await _twilio_form(request, settings)
    sid = params.get("MessageSid")
    sender = params.get("From")
    body = params.get("Body")
    if not sid or not sender or body is None:
        raise HTTPException(status_code=400, detail="MessageSid, From and Body are required")

    contact = ContactService(db).find_by_phone(phone_lookup_forms(sender))
    if contact is None:
        logger.info("twilio_inbound_unmatched", provider_id=sid)
    else:
        message = dispatcher.record_inbound(contact, "sms", body, provider_id=sid)
        logger.info("twilio_inbound_recorded", message_id=message.id, contact_id=contact.id)
    return Response(content=EMPTY_TWIML, media_type="text/xml")


@router.post("/sendgrid/events")
async def sendgrid_events(
    request: Request,
    settings: Settings = Depends(get_settings),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Dict[str, Any]:
    """SendGrid event webhook: a JSON array of delivery and engagement events."""
    body = await _sendgrid_body(request, settings)
    try:
        events = json.loads(body or b"null")
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="Expected a JSON array of events")

    applied = ignored = unmatched = 0
    for event in events:
        if not isinstance(event, dict) or not event.get("sg_message_id"):
            ignored += 1
            continue
        try:
            status = map_sendgrid_event(event.get("event", ""))
            error = ": ".join(
                str(part)
                for part in (event.get("bounce_classification"), event.get("reason"))
                if part
            ) or None

            message = None
            for candidate in sendgrid_message_id_candidates(event["sg_message_id"]):
                message, changed = dispatcher.apply_delivery_status(
                    candidate, status, error=error
                )
                if message is not None:
                    break
        except Exception as e:
            dispatcher.db.rollback()
            ignored += 1
            logger.error(
                "sendgrid_event_failed", sg_message_id=event.get("sg_message_id"), error=str(e)
            )
            continue

        if message is None:
            unmatched += 1
        elif changed:
            applied += 1
        else:
            ignored += 1

    logger.info(
        "sendgrid_events_processed",
        received=len(events),
        applied=applied,
        ignored=ignored,
        unmatched=unmatched,
    )
    return {
        "received": len(events),
        "applied": applied,
        "ignored": ignored,
        "unmatched": unmatched,
    }


@router.post("/sendgrid/inbound")
async def sendgrid_inbound(
    request: Request,
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> Response:
    """SendGrid Inbound Parse (multipart form)."""
    await _sendgrid_body(request, settings)
    form = await request.form()
    sender = form.get("from")
    if not sender:
        raise HTTPException(status_code=400, detail="'from' is required")

    address = extract_email_address(str(sender))
    contact = ContactService(db).find_by_email(address)
    if contact is None:
        logger.info("sendgrid_inbound_unmatched")
        return PlainTextResponse("OK")

    text = str(form.get("text") or "")
    body = text or html_to_text(str(form.get("html") or ""))
    subject = str(form.get("subject") or "") or None
    message = dispatcher.record_inbound(contact, "email", body.strip(), subject=subject)
    logger.info("sendgrid_inbound_recorded", message_id=message.id, contact_id=contact.id)
    return PlainTextResponse("OK")
