"""Shared test helpers: payload builders and in-memory fakes.

These are NOT fixtures - they are regular functions and classes that can be
imported by conftest.py and individual test files.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any
from unittest.mock import MagicMock

from wabridge.domain.conversations import Conversation, Direction, MediaFile, Message, history_content
from wabridge.infra.business_directory import ChannelConfig, Tone
from wabridge.infra.time import utc_now
from wabridge.whatsapp.graph_client import MediaStream
from wabridge.whatsapp.media_storage import StoredMedia
from wabridge.whatsapp.models import ChannelCredentials, MediaInfo, Modality, ProviderReceipt

PHONE_NUMBER_ID = "123456789"
COUNTERPARTY = "15551234567"
ACCESS_TOKEN = "EAAtesttoken"
VERIFY_TOKEN = "business-verify-secret"


def make_envelope(
    message: dict[str, Any] | None = None,
    phone_number_id: str = PHONE_NUMBER_ID,
) -> dict[str, Any]:
    """Build a WhatsApp Business Account webhook envelope."""
    value: dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "15550000000", "phone_number_id": phone_number_id},
    }
    if message is not None:
        value["messages"] = [message]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_ID", "changes": [{"value": value, "field": "messages"}]}],
    }


def text_message(body: str = "Hello", message_id: str = "wamid.TEXT1", sender: str = COUNTERPARTY) -> dict:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1704067200",
        "type": "text",
        "text": {"body": body},
    }


def image_message(caption: str | None = None, message_id: str = "wamid.IMG1") -> dict:
    image: dict[str, Any] = {"id": "media-img-1", "mime_type": "image/jpeg"}
    if caption is not None:
        image["caption"] = caption
    return {"from": COUNTERPARTY, "id": message_id, "timestamp": "1704067200", "type": "image", "image": image}


def audio_message(message_id: str = "wamid.AUD1") -> dict:
    return {
        "from": COUNTERPARTY,
        "id": message_id,
        "timestamp": "1704067200",
        "type": "audio",
        "audio": {"id": "media-aud-1", "mime_type": "audio/ogg; codecs=opus"},
    }


def make_channel_config(business_id: int = 1, phone_number_id: str = PHONE_NUMBER_ID) -> ChannelConfig:
    return ChannelConfig(
        id=10,
        business_id=business_id,
        business_name="Acme",
        phone_number_id=phone_number_id,
        access_token=ACCESS_TOKEN,
        verify_token=VERIFY_TOKEN,
    )


def make_openai_client(reply: str = "Hi there!", transcript: str = "hello from audio") -> MagicMock:
    """MagicMock standing in for openai.OpenAI with canned answers."""
    client = MagicMock()
    completion = MagicMock()
    completion.choices = [MagicMock()]
    completion.choices[0].message.content = reply
    client.chat.completions.create.return_value = completion
    client.audio.transcriptions.create.return_value = transcript
    return client


class FakeDirectory:
    """In-memory BusinessDirectory."""

    def __init__(self, configs: list[ChannelConfig] | None = None, tones: dict[int, Tone] | None = None):
        self.configs = {c.phone_number_id: c for c in (configs or [])}
        self.tones = tones or {}
        self.lookups: list[str] = []

    def resolve_channel_config(self, phone_number_id: str) -> ChannelConfig | None:
        self.lookups.append(phone_number_id)
        return self.configs.get(phone_number_id)

    def get_tone(self, business_id: int) -> Tone | None:
        return self.tones.get(business_id)

    def has_verify_token(self, token: str) -> bool:
        return any(c.verify_token == token for c in self.configs.values())


class FakeStore:
    """In-memory ConversationStore with the same idempotency semantics."""

    def __init__(self):
        self._lock = threading.Lock()
        self.conversations: dict[tuple[int, str], Conversation] = {}
        self.messages: list[Message] = []
        self.media_files: list[MediaFile] = []
        self.writes = 0

    def create_or_get_conversation(self, business_id: int, counterparty: str) -> Conversation:
        with self._lock:
            self.writes += 1
            key = (business_id, counterparty)
            if key not in self.conversations:
                now = utc_now()
                self.conversations[key] = Conversation(
                    id=len(self.conversations) + 1,
                    business_id=business_id,
                    phone_number=counterparty,
                    status="active",
                    created_at=now,
                    updated_at=now,
                )
            return self.conversations[key]

    def save_message(self, **kw: Any) -> tuple[Message, bool]:
        with self._lock:
            self.writes += 1
            for existing in self.messages:
                if (
                    existing.business_id == kw["business_id"]
                    and existing.provider_message_id == kw["provider_message_id"]
                ):
                    return existing, False
            message = Message(
                id=len(self.messages) + 1,
                business_id=kw["business_id"],
                conversation_id=kw["conversation_id"],
                provider_message_id=kw["provider_message_id"],
                direction=kw["direction"],
                modality=kw["modality"],
                content=kw["content"],
                media_id=kw.get("media_id"),
                media_url=kw.get("media_url"),
                ai_response=kw.get("ai_response"),
                provider_timestamp=kw.get("provider_timestamp"),
                created_at=utc_now(),
            )
            self.messages.append(message)
            return message, True

    def get_message(self, business_id: int, provider_message_id: str) -> Message | None:
        for message in self.messages:
            if message.business_id == business_id and message.provider_message_id == provider_message_id:
                return message
        return None

    def save_media_file(self, **kw: Any) -> tuple[MediaFile, bool]:
        with self._lock:
            self.writes += 1
            existing = self.get_media_file(kw["message_id"])
            if existing is not None:
                return existing, False
            media_file = MediaFile(id=len(self.media_files) + 1, created_at=utc_now(), **kw)
            self.media_files.append(media_file)
            return media_file, True

    def get_media_file(self, message_id: int) -> MediaFile | None:
        for media_file in self.media_files:
            if media_file.message_id == message_id:
                return media_file
        return None

    def get_recent_history(self, business_id, counterparty, limit=10, *, exclude_message_id=None):
        conversation = self.conversations.get((business_id, counterparty))
        if conversation is None:
            return []
        rows = [
            m
            for m in self.messages
            if m.conversation_id == conversation.id and m.id != exclude_message_id
        ][-limit:]
        return [
            {
                "role": "user" if m.direction is Direction.INBOUND else "assistant",
                "content": history_content(m.modality, m.content),
            }
            for m in rows
        ]

    def by_direction(self, direction: Direction) -> list[Message]:
        return [m for m in self.messages if m.direction is direction]


class FakeSender:
    """Records send_text calls; optionally raises."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls: list[tuple[str, str, ChannelCredentials]] = []

    def __call__(self, to: str, body: str, credentials: ChannelCredentials, *, correlation_id=None):
        self.calls.append((to, body, credentials))
        if self.error is not None:
            raise self.error
        return ProviderReceipt(message_id="wamid.OUT", to=to)


class FakeMediaFetcher:
    """Stands in for store_media: writes a small file or raises."""

    def __init__(self, tmp_dir, error: Exception | None = None, content: bytes = b"\xff\xd8fakejpeg"):
        self.tmp_dir = tmp_dir
        self.error = error
        self.content = content
        self.calls: list[tuple[str, int, ChannelCredentials]] = []

    def __call__(self, event, business_id, credentials) -> StoredMedia:
        self.calls.append((event.message_id, business_id, credentials))
        if self.error is not None:
            raise self.error
        suffix = ".jpg" if event.modality is Modality.IMAGE else ".ogg"
        path = self.tmp_dir / f"{business_id}_{event.message_id}{suffix}"
        path.write_bytes(self.content)
        return StoredMedia(path=str(path), size=len(self.content), mime_type=event.mime_type, original_filename=None)


class FakeResponse:
    """Minimal requests.Response stand-in."""

    def __init__(self, status_code: int = 200, json_body: Any = None, chunks: list[bytes] | None = None,
                 headers: dict[str, str] | None = None):
        self.status_code = status_code
        self._json = json_body
        self._chunks = chunks or []
        self.headers = headers or {}
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size: int = 1):
        yield from self._chunks

    def close(self):
        self.closed = True


def fake_downloader(chunks: list[bytes], mime_type: str | None = "image/jpeg", fail_after: Exception | None = None):
    """Build a download_media replacement yielding `chunks`, then optionally raising."""

    class _Stream(MediaStream):
        def chunks(self):
            yield from chunks
            if fail_after is not None:
                raise fail_after

    @contextmanager
    def _download(media_id, credentials):
        yield _Stream(info=MediaInfo(url="https://lookaside.example/x", mime_type=mime_type), response=None)

    return _download


class LogRecorder:
    """Simple recorder to capture log calls deterministically."""

    def __init__(self):
        self.calls: list[tuple[str, tuple, dict]] = []

    def _record(self, level: str, *args, **kwargs):
        self.calls.append((level, args, kwargs))

    def debug(self, *args, **kwargs):
        self._record("debug", *args, **kwargs)

    def info(self, *args, **kwargs):
        self._record("info", *args, **kwargs)

    def warning(self, *args, **kwargs):
        self._record("warning", *args, **kwargs)

    def error(self, *args, **kwargs):
        self._record("error", *args, **kwargs)

    def exception(self, *args, **kwargs):
        self._record("exception", *args, **kwargs)

    def critical(self, *args, **kwargs):
        self._record("critical", *args, **kwargs)

    def get_all_logged_content(self) -> str:
        """Concatenate all args and kwargs from all calls into one string."""
        parts = []
        for _level, args, kwargs in self.calls:
            parts.append(str(args))
            parts.append(str(kwargs))
        return " ".join(parts)

    def levels(self) -> list[str]:
        return [level for level, _, _ in self.calls]

    def extra_fields(self, level: str) -> list[dict]:
        return [kw.get("extra", {}).get("extra_fields", {}) for lv, _, kw in self.calls if lv == level]
