"""WhatsApp message models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Modality(str, Enum):
    """Content type of a WhatsApp message."""

    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"
    UNKNOWN = "unknown"


# Modalities the pipeline downloads before generating a reply
DOWNLOADABLE_MODALITIES = frozenset({Modality.IMAGE, Modality.AUDIO})

UNSUPPORTED_CONTENT_PLACEHOLDER = "Unsupported message type"


@dataclass(frozen=True)
class NormalizedInboundEvent:
    """Parsed form of one inbound WhatsApp message.

    PII: `counterparty` and `text` are phone number and message body.
    Never log them; log `hash_identifier(counterparty)` and `len(text)`.
    """

    counterparty: str
    phone_number_id: str
    message_id: str
    modality: Modality
    text: str
    media_id: str | None = None
    media_url: str | None = None
    filename: str | None = None
    mime_type: str | None = None
    sent_at: datetime | None = None


@dataclass(frozen=True)
class ChannelCredentials:
    """Per-business credential bundle passed explicitly to every Graph API call."""

    phone_number_id: str
    access_token: str = field(repr=False)


@dataclass(frozen=True)
class ProviderReceipt:
    """Result of an accepted outbound send."""

    message_id: str | None
    to: str = field(repr=False)


@dataclass(frozen=True)
class MediaInfo:
    """Transient download location resolved from a media id."""

    url: str = field(repr=False)
    mime_type: str | None = None
    file_size: int | None = None
