"""Inbound WhatsApp message pipeline.

Steps, strictly sequential per event:

1. parse the envelope (no message -> IGNORED)
2. resolve the tenant by phone_number_id (none -> UNKNOWN_CHANNEL)
3. upsert conversation, persist inbound message (before any AI work)
4. image/audio: download + store media (failure is recoverable)
5. load recent history
6. generate reply (any failure -> fixed apology)
7. persist outbound message
8. send reply (failure logged, never changes the webhook result)

Steps 1-7 run in process_event(); step 8 runs in deliver_reply() so the
webhook can acknowledge before the outbound call. Store failures in steps
2, 3, 5 and 7 propagate: the webhook answers 500 and the provider retries.
A retried event whose reply is already stored is acknowledged as DUPLICATE;
one without a reply resumes, reusing media an earlier attempt stored.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from wabridge.domain.conversations import HISTORY_WINDOW, Direction, reply_message_id
from wabridge.infra.business_directory import BusinessDirectory, ChannelConfig
from wabridge.infra.conversation_store import ConversationStore
from wabridge.observability.alerts import alert_credential_expired
from wabridge.observability.correlation import get_correlation_id
from wabridge.observability.logging import get_logger
from wabridge.observability.redaction import hash_identifier, safe_log_context
from wabridge.services.response_generator import ResponseGenerationError, ResponseGenerator
from wabridge.whatsapp import graph_client
from wabridge.whatsapp.graph_client import CredentialExpiredError, MediaDownloadError, SendError
from wabridge.whatsapp.media_storage import StoredMedia, discard_media, store_media
from wabridge.whatsapp.meta_adapter import MalformedPayloadError, parse_inbound_payload
from wabridge.whatsapp.models import (
    DOWNLOADABLE_MODALITIES,
    ChannelCredentials,
    Modality,
    NormalizedInboundEvent,
    ProviderReceipt,
)

logger = get_logger(__name__)

# The only text an end user ever sees when something went wrong
APOLOGY_REPLY = "Sorry, I encountered an error processing your message. Please try again."


class PipelineStatus(str, Enum):
    IGNORED = "ignored"
    MALFORMED = "malformed"
    UNKNOWN_CHANNEL = "unknown_channel"
    DUPLICATE = "duplicate"
    PROCESSED = "processed"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    CREDENTIAL_EXPIRED = "credential_expired"


@dataclass(frozen=True)
class ReplyDispatch:
    """Everything needed to send one reply, credentials included."""

    business_id: int
    to: str = field(repr=False)
    body: str = field(repr=False)
    credentials: ChannelCredentials
    correlation_id: str = ""


@dataclass(frozen=True)
class PipelineResult:
    status: PipelineStatus
    business_id: int | None = None
    conversation_id: int | None = None
    inbound_message_id: int | None = None
    outbound_message_id: int | None = None
    media_missing: bool = False
    used_fallback: bool = False
    reply: ReplyDispatch | None = None
    delivery: DeliveryStatus | None = None


MediaFetcher = Callable[[NormalizedInboundEvent, int, ChannelCredentials], StoredMedia]
TextSender = Callable[..., ProviderReceipt]


class InboundPipeline:
    """Runs one inbound webhook event through persistence, AI and reply."""

    def __init__(
        self,
        directory: BusinessDirectory,
        store: ConversationStore,
        generator: ResponseGenerator,
        *,
        fetch_media: MediaFetcher = store_media,
        send_text: TextSender = graph_client.send_text,
        history_window: int = HISTORY_WINDOW,
    ) -> None:
        self.directory = directory
        self.store = store
        self.generator = generator
        self.fetch_media = fetch_media
        self.send_text = send_text
        self.history_window = history_window

    def handle_event(self, payload: Any) -> PipelineResult:
        """Run all steps, including the outbound send."""
        result = self.process_event(payload)
        if result.reply is None:
            return result
        return replace(result, delivery=self.deliver_reply(result.reply))

    def process_event(self, payload: Any) -> PipelineResult:
        """Steps 1-7. Returns the reply to deliver, if any.

        Raises:
            StoreUnavailableError: Datastore failure (hard failure).
        """
        correlation_id = get_correlation_id()

        # 1. Received
        try:
            event = parse_inbound_payload(payload)
        except MalformedPayloadError as e:
            logger.warning(
                "malformed whatsapp payload",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
            )
            return PipelineResult(status=PipelineStatus.MALFORMED)

        if event is None:
            logger.debug(
                "non-message callback acknowledged",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return PipelineResult(status=PipelineStatus.IGNORED)

        log_ctx = safe_log_context(
            correlationId=correlation_id,
            message_id=event.message_id,
            modality=event.modality,
            from_hash=hash_identifier(event.counterparty),
            text_len=len(event.text),
        )

        # 2. TenantResolved
        config = self.directory.resolve_channel_config(event.phone_number_id)
        if config is None:
            logger.info(
                "no active channel configuration, event dropped",
                extra={"extra_fields": {**log_ctx, "phone_number_id": event.phone_number_id}},
            )
            return PipelineResult(status=PipelineStatus.UNKNOWN_CHANNEL)

        log_ctx = {**log_ctx, "business_id": str(config.business_id)}
        logger.info("inbound whatsapp message received", extra={"extra_fields": log_ctx})

        tone = self.directory.get_tone(config.business_id)
        tone_instructions = tone.instructions if tone else None

        # 3. ConversationReady
        conversation = self.store.create_or_get_conversation(config.business_id, event.counterparty)
        inbound, created = self.store.save_message(
            business_id=config.business_id,
            conversation_id=conversation.id,
            provider_message_id=event.message_id,
            direction=Direction.INBOUND,
            modality=event.modality,
            content=event.text,
            media_id=event.media_id,
            media_url=event.media_url,
            provider_timestamp=event.sent_at,
        )
        if not created:
            existing_reply = self.store.get_message(config.business_id, reply_message_id(event.message_id))
            if existing_reply is not None:
                logger.info("duplicate inbound message ignored", extra={"extra_fields": log_ctx})
                return PipelineResult(
                    status=PipelineStatus.DUPLICATE,
                    business_id=config.business_id,
                    conversation_id=conversation.id,
                    inbound_message_id=inbound.id,
                    outbound_message_id=existing_reply.id,
                )
            logger.info("resuming previously failed inbound message", extra={"extra_fields": log_ctx})

        # 4. MediaResolved
        media_path: str | None = None
        media_missing = False
        if event.modality in DOWNLOADABLE_MODALITIES:
            existing_media = None if created else self.store.get_media_file(inbound.id)
            if existing_media is not None:
                media_path = existing_media.local_file_path
                logger.info("reusing media stored by an earlier delivery", extra={"extra_fields": log_ctx})
            else:
                media_path = self._retrieve_media(event, config, inbound.id, log_ctx)
                media_missing = media_path is None

        # 5. ContextAssembled
        history = self.store.get_recent_history(
            config.business_id,
            event.counterparty,
            self.history_window,
            exclude_message_id=inbound.id,
        )

        # 6. ResponseGenerated
        reply_text, used_fallback = self._generate_reply(event, tone_instructions, media_path, history, log_ctx)

        # 7. ResponsePersisted
        outbound, outbound_created = self.store.save_message(
            business_id=config.business_id,
            conversation_id=conversation.id,
            provider_message_id=reply_message_id(event.message_id),
            direction=Direction.OUTBOUND,
            modality=Modality.TEXT,
            content=reply_text,
            ai_response=reply_text,
        )
        if not outbound_created:
            # A concurrent delivery of the same event already stored and owns the reply
            logger.info("reply already persisted by another delivery", extra={"extra_fields": log_ctx})
            return PipelineResult(
                status=PipelineStatus.DUPLICATE,
                business_id=config.business_id,
                conversation_id=conversation.id,
                inbound_message_id=inbound.id,
                outbound_message_id=outbound.id,
            )

        return PipelineResult(
            status=PipelineStatus.PROCESSED,
            business_id=config.business_id,
            conversation_id=conversation.id,
            inbound_message_id=inbound.id,
            outbound_message_id=outbound.id,
            media_missing=media_missing,
            used_fallback=used_fallback,
            reply=ReplyDispatch(
                business_id=config.business_id,
                to=event.counterparty,
                body=reply_text,
                credentials=config.credentials,
                correlation_id=correlation_id,
            ),
        )

    def deliver_reply(self, dispatch: ReplyDispatch) -> DeliveryStatus:
        """Step 8. Never raises for provider failures."""
        log_ctx = safe_log_context(
            correlationId=dispatch.correlation_id,
            business_id=dispatch.business_id,
            to_hash=hash_identifier(dispatch.to),
        )
        try:
            self.send_text(
                dispatch.to,
                dispatch.body,
                dispatch.credentials,
                correlation_id=dispatch.correlation_id,
            )
        except CredentialExpiredError:
            alert_credential_expired(
                business_id=dispatch.business_id,
                phone_number_id=dispatch.credentials.phone_number_id,
                operation="send_text",
                correlation_id=dispatch.correlation_id,
            )
            return DeliveryStatus.CREDENTIAL_EXPIRED
        except SendError as e:
            logger.error(
                "reply delivery failed",
                extra={"extra_fields": {**log_ctx, "error": str(e)}},
            )
            return DeliveryStatus.FAILED
        except Exception:
            logger.exception("reply delivery failed unexpectedly", extra={"extra_fields": log_ctx})
            return DeliveryStatus.FAILED

        logger.info("reply delivered", extra={"extra_fields": log_ctx})
        return DeliveryStatus.SENT

    def _retrieve_media(
        self,
        event: NormalizedInboundEvent,
        config: ChannelConfig,
        inbound_id: int,
        log_ctx: dict[str, str],
    ) -> str | None:
        """Download and record media. Returns the local path, or None when unavailable."""
        try:
            stored = self.fetch_media(event, config.business_id, config.credentials)
        except CredentialExpiredError:
            alert_credential_expired(
                business_id=config.business_id,
                phone_number_id=config.phone_number_id,
                operation="download_media",
                correlation_id=get_correlation_id(),
            )
            return None
        except MediaDownloadError as e:
            logger.warning(
                "media download failed, continuing without media",
                extra={"extra_fields": {**log_ctx, "error": str(e)}},
            )
            return None

        media_file, media_created = self.store.save_media_file(
            business_id=config.business_id,
            message_id=inbound_id,
            modality=event.modality,
            local_file_path=stored.path,
            file_size=stored.size,
            mime_type=stored.mime_type,
            original_filename=stored.original_filename,
        )
        if not media_created:
            # A concurrent delivery of the same event recorded its copy first
            if media_file.local_file_path != stored.path:
                discard_media(stored.path)
            return media_file.local_file_path
        logger.info(
            "media stored",
            extra={"extra_fields": {**log_ctx, "file_size": str(stored.size)}},
        )
        return stored.path

    def _generate_reply(
        self,
        event: NormalizedInboundEvent,
        tone_instructions: str | None,
        media_path: str | None,
        history: list[dict[str, str]],
        log_ctx: dict[str, str],
    ) -> tuple[str, bool]:
        """Reply text and whether the apology fallback was used."""
        try:
            reply = self.generator.generate(
                event.modality,
                event.text,
                media_path=media_path,
                history=history,
                tone_instructions=tone_instructions,
            )
        except ResponseGenerationError as e:
            logger.warning(
                "reply generation failed, sending apology",
                extra={"extra_fields": {**log_ctx, "error_type": type(e).__name__}},
            )
            return APOLOGY_REPLY, True
        except Exception:
            logger.exception(
                "reply generation raised unexpectedly, sending apology",
                extra={"extra_fields": log_ctx},
            )
            return APOLOGY_REPLY, True
        return reply, False
