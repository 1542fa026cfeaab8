"""WhatsApp Cloud API adapter - validate and normalize webhook traffic.

Handles the subscription handshake, the optional payload signature, and
normalization of inbound webhook envelopes into NormalizedInboundEvent.
No network access happens here; see graph_client for outbound calls.
"""

import hashlib
import hmac
from typing import Any

from wabridge.infra.time import from_epoch_seconds

from .models import UNSUPPORTED_CONTENT_PLACEHOLDER, Modality, NormalizedInboundEvent

# Envelope marker for WhatsApp Business Account webhooks
WHATSAPP_OBJECT_TYPE = "whatsapp_business_account"

# hub.mode value sent during subscription confirmation
SUBSCRIBE_MODE = "subscribe"


class MalformedPayloadError(Exception):
    """Raised when a webhook body is not a WhatsApp Business Account envelope."""

    pass


class HandshakeRejectedError(Exception):
    """Raised when a subscription handshake does not match the expected secret."""

    pass


class SignatureVerificationError(Exception):
    """Raised when HMAC signature verification fails."""

    pass


def verify_handshake(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
) -> str:
    """Validate a webhook subscription handshake.

    Args:
        mode: hub.mode, must be "subscribe".
        token: hub.verify_token presented by the provider.
        challenge: hub.challenge to echo back.
        expected_token: The business verification secret.

    Returns:
        The challenge string to echo.

    Raises:
        HandshakeRejectedError: On mode or token mismatch, or no expected token.
    """
    if mode != SUBSCRIBE_MODE:
        raise HandshakeRejectedError("unexpected mode")
    if not token or not expected_token:
        raise HandshakeRejectedError("missing token")
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        raise HandshakeRejectedError("token mismatch")
    return challenge or ""


def verify_signature(payload_bytes: bytes, signature_header: str, app_secret: str) -> None:
    """Verify webhook signature (HMAC-SHA256).

    Meta signs webhooks with sha256=<hex_signature> format.

    Args:
        payload_bytes: Raw request body bytes.
        signature_header: X-Hub-Signature-256 header value (sha256=...).
        app_secret: App Secret for HMAC verification.

    Raises:
        SignatureVerificationError: If signature is invalid or missing.
    """
    if not signature_header:
        raise SignatureVerificationError("missing signature header")

    if not signature_header.startswith("sha256="):
        raise SignatureVerificationError("invalid signature format")

    expected_sig = signature_header[7:]  # Remove "sha256=" prefix

    computed_sig = hmac.new(
        key=app_secret.encode("utf-8"),
        msg=payload_bytes,
        digestmod=hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(computed_sig, expected_sig):
        raise SignatureVerificationError("signature mismatch")


def parse_inbound_payload(payload: Any) -> NormalizedInboundEvent | None:
    """Normalize a webhook envelope into a NormalizedInboundEvent.

    Envelope shape:
    {
      "object": "whatsapp_business_account",
      "entry": [{
        "changes": [{
          "value": {
            "metadata": {"phone_number_id": "..."},
            "messages": [{"from": "PHONE", "id": "MSG_ID", "timestamp": "...", "text": {"body": "..."}}]
          },
          "field": "messages"
        }]
      }]
    }

    Only the first message of the first change is processed.

    Args:
        payload: Decoded JSON body.

    Returns:
        The normalized event, or None for a valid envelope carrying no
        messages (status/delivery callbacks).

    Raises:
        MalformedPayloadError: If the envelope markers are missing or the
            message lacks sender, id or channel identifier.
    """
    value = _extract_change_value(payload)

    messages = value.get("messages")
    if not messages:
        return None
    if not isinstance(messages, list) or not isinstance(messages[0], dict):
        raise MalformedPayloadError("messages is not a list of objects")

    message = messages[0]

    # The channel id comes from the envelope itself: one process serves many channels
    metadata = value.get("metadata")
    phone_number_id = metadata.get("phone_number_id") if isinstance(metadata, dict) else None
    if not phone_number_id:
        raise MalformedPayloadError("missing metadata.phone_number_id")

    sender = message.get("from")
    if not sender or not isinstance(sender, str):
        raise MalformedPayloadError("missing sender phone number")

    message_id = message.get("id")
    if not message_id or not isinstance(message_id, str):
        raise MalformedPayloadError("missing or invalid message id")

    modality, fields = _dispatch_modality(message)

    return NormalizedInboundEvent(
        counterparty=sender,
        phone_number_id=str(phone_number_id),
        message_id=message_id,
        modality=modality,
        sent_at=from_epoch_seconds(message.get("timestamp")),
        **fields,
    )


def _extract_change_value(payload: Any) -> dict[str, Any]:
    """Walk object/entry/changes down to the first change value."""
    if not isinstance(payload, dict):
        raise MalformedPayloadError("payload is not an object")

    if payload.get("object") != WHATSAPP_OBJECT_TYPE:
        raise MalformedPayloadError("not a whatsapp business account webhook")

    entry = payload.get("entry")
    if not entry or not isinstance(entry, list) or not isinstance(entry[0], dict):
        raise MalformedPayloadError("no entry found")

    changes = entry[0].get("changes")
    if not changes or not isinstance(changes, list) or not isinstance(changes[0], dict):
        raise MalformedPayloadError("no changes found")

    value = changes[0].get("value")
    if not isinstance(value, dict):
        raise MalformedPayloadError("no change value found")

    return value


def _dispatch_modality(message: dict[str, Any]) -> tuple[Modality, dict[str, Any]]:
    """Pick the modality by which content field is present."""
    text = message.get("text")
    if isinstance(text, dict):
        return Modality.TEXT, {"text": str(text.get("body") or "")}

    image = message.get("image")
    if isinstance(image, dict):
        # Images carry no direct URL, only a media id
        return Modality.IMAGE, {
            "text": str(image.get("caption") or ""),
            "media_id": image.get("id"),
            "mime_type": image.get("mime_type"),
        }

    audio = message.get("audio")
    if isinstance(audio, dict):
        return Modality.AUDIO, {
            "text": "",
            "media_id": audio.get("id"),
            "media_url": audio.get("url"),
            "mime_type": audio.get("mime_type"),
        }

    document = message.get("document")
    if isinstance(document, dict):
        return Modality.DOCUMENT, {
            "text": str(document.get("caption") or ""),
            "media_id": document.get("id"),
            "media_url": document.get("url"),
            "filename": document.get("filename"),
            "mime_type": document.get("mime_type"),
        }

    return Modality.UNKNOWN, {"text": UNSUPPORTED_CONTENT_PLACEHOLDER}
