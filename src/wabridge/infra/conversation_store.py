"""Conversation store backed by PostgreSQL.

Each operation is its own short transaction: the pipeline persists the
inbound message before any AI work, so it must be committed on its own.
"""

from datetime import datetime

from wabridge.domain.conversations import (
    HISTORY_WINDOW,
    Conversation,
    Direction,
    MediaFile,
    Message,
    fetch_recent_history,
    upsert_conversation,
)
from wabridge.whatsapp.models import Modality

from .db import txn
from .repositories import messages_repository


class ConversationStore:
    """Persists conversations, messages and media metadata per business."""

    def create_or_get_conversation(self, business_id: int, counterparty: str) -> Conversation:
        with txn() as cur:
            conversation, _created = upsert_conversation(cur, business_id, counterparty)
        return conversation

    def save_message(
        self,
        *,
        business_id: int,
        conversation_id: int,
        provider_message_id: str,
        direction: Direction,
        modality: Modality,
        content: str | None,
        media_id: str | None = None,
        media_url: str | None = None,
        ai_response: str | None = None,
        provider_timestamp: datetime | None = None,
    ) -> tuple[Message, bool]:
        with txn() as cur:
            return messages_repository.insert_message(
                cur,
                business_id=business_id,
                conversation_id=conversation_id,
                provider_message_id=provider_message_id,
                direction=direction,
                modality=modality,
                content=content,
                media_id=media_id,
                media_url=media_url,
                ai_response=ai_response,
                provider_timestamp=provider_timestamp,
            )

    def get_message(self, business_id: int, provider_message_id: str) -> Message | None:
        with txn() as cur:
            return messages_repository.get_message_by_provider_id(cur, business_id, provider_message_id)

    def save_media_file(
        self,
        *,
        business_id: int,
        message_id: int,
        modality: Modality,
        local_file_path: str,
        file_size: int,
        mime_type: str | None = None,
        original_filename: str | None = None,
    ) -> tuple[MediaFile, bool]:
        with txn() as cur:
            return messages_repository.insert_media_file(
                cur,
                business_id=business_id,
                message_id=message_id,
                modality=modality,
                local_file_path=local_file_path,
                file_size=file_size,
                mime_type=mime_type,
                original_filename=original_filename,
            )

    def get_media_file(self, message_id: int) -> MediaFile | None:
        with txn() as cur:
            return messages_repository.get_media_file_by_message_id(cur, message_id)

    def get_recent_history(
        self,
        business_id: int,
        counterparty: str,
        limit: int = HISTORY_WINDOW,
        *,
        exclude_message_id: int | None = None,
    ) -> list[dict[str, str]]:
        with txn() as cur:
            return fetch_recent_history(
                cur,
                business_id,
                counterparty,
                limit,
                exclude_message_id=exclude_message_id,
            )
