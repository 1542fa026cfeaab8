"""AI reply generation for inbound WhatsApp messages.

Dispatches on modality:
- text: system prompt + history + user text -> chat completion
- image: vision description, then a second chat call that turns the
  description into a reply in the business's tone
- audio: transcription, then the text path on "Transcribed audio: ..."
- anything else: UnsupportedModalityError

Stateless per call. Every failure is a ResponseGenerationError subclass so
the caller can swap in a fixed apology without inspecting details.
"""

from __future__ import annotations

import base64
import mimetypes
import os
from pathlib import Path
from typing import Any, Sequence

from openai import OpenAI, OpenAIError

from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import safe_log_context
from wabridge.whatsapp.models import Modality

logger = get_logger(__name__)

DEFAULT_CHAT_MODEL = "gpt-4o"
DEFAULT_VISION_MODEL = "gpt-4o"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_TIMEOUT = 60.0

# Generation policy
TEXT_MAX_TOKENS = 500
VISION_MAX_TOKENS = 1000
CONVERSATION_TEMPERATURE = 0.7
TRANSCRIPTION_TEMPERATURE = 0.0

BASE_SYSTEM_PROMPT = (
    "You are a helpful AI assistant integrated with WhatsApp. "
    "Be conversational, friendly, and helpful. Keep responses concise but informative. "
    "If you're analyzing images, describe what you see clearly and provide relevant insights."
)

DEFAULT_IMAGE_PROMPT = (
    "Please analyze this image and describe what you see. "
    "If there is any text in the image, please read it out."
)


class ResponseGenerationError(Exception):
    """Base class for reply generation failures."""

    pass


class GenerationError(ResponseGenerationError):
    """The language model call failed or returned nothing."""

    pass


class MissingMediaError(ResponseGenerationError):
    """Image/audio reply requested without a usable local file."""

    pass


class TranscriptionError(ResponseGenerationError):
    """Audio transcription failed or produced no text."""

    pass


class UnsupportedModalityError(ResponseGenerationError):
    """No reply strategy exists for this modality."""

    pass


def build_system_prompt(tone_instructions: str | None) -> str:
    """Base instructions, with the business tone appended when present."""
    if tone_instructions and tone_instructions.strip():
        return f"{BASE_SYSTEM_PROMPT}\n\nTone instructions:\n{tone_instructions.strip()}"
    return BASE_SYSTEM_PROMPT


def _read_media(media_path: str | None) -> bytes:
    """Read a local media file; missing, empty or unreadable means MissingMediaError."""
    if not media_path:
        raise MissingMediaError("no local media file")
    try:
        data = Path(media_path).read_bytes()
    except OSError as e:
        raise MissingMediaError(f"media file unreadable: {type(e).__name__}") from e
    if not data:
        raise MissingMediaError("media file is empty")
    return data


class ResponseGenerator:
    """Produces one reply string per inbound event."""

    def __init__(
        self,
        client: OpenAI | None = None,
        *,
        chat_model: str | None = None,
        vision_model: str | None = None,
        transcription_model: str | None = None,
    ) -> None:
        self._client = client
        self.chat_model = chat_model or os.environ.get("OPENAI_CHAT_MODEL", DEFAULT_CHAT_MODEL)
        self.vision_model = vision_model or os.environ.get("OPENAI_VISION_MODEL", DEFAULT_VISION_MODEL)
        self.transcription_model = transcription_model or os.environ.get(
            "OPENAI_TRANSCRIPTION_MODEL", DEFAULT_TRANSCRIPTION_MODEL
        )

    @property
    def client(self) -> OpenAI:
        """OpenAI client, created lazily so OPENAI_API_KEY is not needed at import time."""
        if self._client is None:
            self._client = OpenAI(
                api_key=os.environ.get("OPENAI_API_KEY"),
                timeout=float(os.environ.get("OPENAI_TIMEOUT", DEFAULT_TIMEOUT)),
                max_retries=1,
            )
        return self._client

    def generate(
        self,
        modality: Modality,
        text: str,
        *,
        media_path: str | None = None,
        history: Sequence[dict[str, str]] = (),
        tone_instructions: str | None = None,
    ) -> str:
        """Produce a reply for one message.

        Args:
            modality: Message modality.
            text: Message text, or caption for media.
            media_path: Local copy of the media, for image/audio.
            history: Prior turns, oldest first, as {"role", "content"}.
            tone_instructions: Business tone, if any.

        Returns:
            The reply text.

        Raises:
            ResponseGenerationError: One of its subclasses on any failure.
        """
        system_prompt = build_system_prompt(tone_instructions)

        if modality is Modality.TEXT:
            return self._chat(system_prompt, history, text)
        if modality is Modality.IMAGE:
            return self._reply_to_image(system_prompt, history, text, media_path, tone_instructions)
        if modality is Modality.AUDIO:
            return self._reply_to_audio(system_prompt, history, media_path)
        raise UnsupportedModalityError(f"no reply strategy for {modality.value}")

    def _chat(self, system_prompt: str, history: Sequence[dict[str, str]], user_text: str) -> str:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
        messages.append({"role": "user", "content": user_text})

        try:
            response = self.client.chat.completions.create(
                model=self.chat_model,
                messages=messages,
                max_tokens=TEXT_MAX_TOKENS,
                temperature=CONVERSATION_TEMPERATURE,
            )
        except OpenAIError as e:
            logger.warning(
                "chat completion failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__, model=self.chat_model)},
            )
            raise GenerationError("chat completion failed") from e

        return self._first_content(response, GenerationError)

    def _reply_to_image(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        caption: str,
        media_path: str | None,
        tone_instructions: str | None,
    ) -> str:
        image_bytes = _read_media(media_path)
        mime_type = mimetypes.guess_type(media_path or "")[0] or "image/jpeg"
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"

        prompt = caption.strip() or DEFAULT_IMAGE_PROMPT
        if tone_instructions and tone_instructions.strip():
            prompt = f"{prompt}\n\n{tone_instructions.strip()}"

        try:
            response = self.client.chat.completions.create(
                model=self.vision_model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    }
                ],
                max_tokens=VISION_MAX_TOKENS,
                temperature=CONVERSATION_TEMPERATURE,
            )
        except OpenAIError as e:
            logger.warning(
                "image analysis failed",
                extra={"extra_fields": safe_log_context(error_type=type(e).__name__, model=self.vision_model)},
            )
            raise GenerationError("image analysis failed") from e

        description = self._first_content(response, GenerationError)

        if caption.strip():
            user_text = (
                f'The user sent an image with the caption "{caption.strip()}". '
                f"Image analysis: {description}\n\nReply to the user."
            )
        else:
            user_text = f"The user sent an image. Image analysis: {description}\n\nReply to the user."
        return self._chat(system_prompt, history, user_text)

    def _reply_to_audio(
        self,
        system_prompt: str,
        history: Sequence[dict[str, str]],
        media_path: str | None,
    ) -> str:
        transcript = self.transcribe(media_path)
        return self._chat(
            system_prompt,
            history,
            f'Transcribed audio: "{transcript}". Please respond to this message.',
        )

    def transcribe(self, media_path: str | None) -> str:
        """Transcribe a local audio file with near-deterministic decoding."""
        _read_media(media_path)

        language = os.environ.get("OPENAI_TRANSCRIPTION_LANGUAGE") or None
        kwargs: dict[str, Any] = {"language": language} if language else {}
        try:
            with Path(media_path).open("rb") as audio_file:
                result = self.client.audio.transcriptions.create(
                    model=self.transcription_model,
                    file=audio_file,
                    response_format="text",
                    temperature=TRANSCRIPTION_TEMPERATURE,
                    **kwargs,
                )
        except (OpenAIError, OSError) as e:
            logger.warning(
                "audio transcription failed",
                extra={
                    "extra_fields": safe_log_context(
                        error_type=type(e).__name__, model=self.transcription_model
                    )
                },
            )
            raise TranscriptionError("audio transcription failed") from e

        transcript = result if isinstance(result, str) else getattr(result, "text", "")
        transcript = (transcript or "").strip()
        if not transcript:
            raise TranscriptionError("transcription was empty")
        return transcript

    @staticmethod
    def _first_content(response: Any, error_cls: type[ResponseGenerationError]) -> str:
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise error_cls("model returned no choices") from e
        if not content or not content.strip():
            raise error_cls("model returned empty content")
        return content.strip()
