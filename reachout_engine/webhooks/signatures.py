"""
Webhook signature verification.

Twilio signs form posts with HMAC-SHA1 over the request URL followed by
every POST parameter (sorted by name, key then value). SendGrid signs
event and inbound-parse posts with ECDSA P-256/SHA-256 over the timestamp
header followed by the raw body.
"""

import base64
import hashlib
import hmac
from typing import Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..errors import SignatureError

TWILIO_SIGNATURE_HEADER = "X-Twilio-Signature"
SENDGRID_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
SENDGRID_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"


def compute_twilio_signature(auth_token: str, url: str, params: Mapping[str, str]) -> str:
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode(), data.encode(), hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_twilio_signature(
    auth_token: Optional[str],
    signature: Optional[str],
    url: str,
    params: Mapping[str, str],
) -> None:
    """Raise SignatureError unless ``signature`` matches."""
    if not auth_token:
        raise SignatureError("Twilio webhook auth token is not configured")
    if not signature:
        raise SignatureError("Missing Twilio signature")
    expected = compute_twilio_signature(auth_token, url, params)
    if not hmac.compare_digest(expected.encode(), signature.encode()):
        raise SignatureError("Invalid Twilio signature")


def load_sendgrid_public_key(key: str) -> ec.EllipticCurvePublicKey:
    """Accept a PEM block or the bare base64 DER string SendGrid shows."""
    key = key.strip()
    try:
        if key.startswith("-----BEGIN"):
            public_key = serialization.load_pem_public_key(key.encode())
        else:
            public_key = serialization.load_der_public_key(base64.b64decode(key))
    except ValueError as e:
        raise SignatureError(f"Unusable SendGrid verification key: {e}")
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise SignatureError("SendGrid verification key is not an EC key")
    return public_key


def verify_sendgrid_signature(
    public_key: Optional[str],
    signature: Optional[str],
    timestamp: Optional[str],
    body: bytes,
) -> None:
    """Raise SignatureError unless ``signature`` covers ``timestamp + body``."""
    if not public_key:
        raise SignatureError("SendGrid webhook verification key is not configured")
    if not signature or not timestamp:
        raise SignatureError("Missing SendGrid signature headers")
    key = load_sendgrid_public_key(public_key)
    try:
        raw = base64.b64decode(signature, validate=True)
    except ValueError:
        raise SignatureError("Malformed SendGrid signature")
    try:
        key.verify(raw, timestamp.encode() + body, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        raise SignatureError("Invalid SendGrid signature")
