"""Messages and media files repository.

Uses raw SQL with psycopg2 (no ORM). Message inserts are idempotent on
(business_id, provider_message_id): a replayed webhook is a no-op.
"""

from datetime import datetime

from psycopg2.extensions import cursor as PgCursor

from wabridge.domain.conversations import Direction, MediaFile, Message
from wabridge.infra.time import utc_now
from wabridge.whatsapp.models import Modality

_MESSAGE_COLUMNS = """
    id, business_id, conversation_id, provider_message_id, direction,
    modality, content, media_id, media_url, ai_response, provider_timestamp,
    created_at
"""


def _row_to_message(row: tuple) -> Message:
    return Message(
        id=row[0],
        business_id=row[1],
        conversation_id=row[2],
        provider_message_id=row[3],
        direction=Direction(row[4]),
        modality=Modality(row[5]),
        content=row[6],
        media_id=row[7],
        media_url=row[8],
        ai_response=row[9],
        provider_timestamp=row[10],
        created_at=row[11],
    )


def insert_message(
    cur: PgCursor,
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
    """Insert a message unless one with the same provider id exists.

    Args:
        cur: Database cursor (within transaction).
        business_id: Owning business.
        conversation_id: Owning conversation.
        provider_message_id: WhatsApp message id (or reply id for outbound).
        direction: inbound or outbound.
        modality: Content type.
        content: Text body or caption.
        media_id: Provider media reference, if any.
        media_url: Provider direct URL, if any.
        ai_response: Generated reply (outbound only).
        provider_timestamp: When the provider says the message was sent (inbound only).

    Returns:
        Tuple of (message, created). On duplicate, the existing row and False.
    """
    cur.execute(
        f"""
        INSERT INTO messages (
            business_id, conversation_id, provider_message_id, direction,
            modality, content, media_id, media_url, ai_response,
            provider_timestamp, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (business_id, provider_message_id) DO NOTHING
        RETURNING {_MESSAGE_COLUMNS}
        """,
        (
            business_id,
            conversation_id,
            provider_message_id,
            direction.value,
            modality.value,
            content,
            media_id,
            media_url,
            ai_response,
            provider_timestamp,
            utc_now(),
        ),
    )
    row = cur.fetchone()
    if row is not None:
        return _row_to_message(row), True

    existing = get_message_by_provider_id(cur, business_id, provider_message_id)
    if existing is None:
        # Conflicting row vanished between statements
        raise RuntimeError("message conflict without existing row")
    return existing, False


def get_message_by_provider_id(
    cur: PgCursor,
    business_id: int,
    provider_message_id: str,
) -> Message | None:
    """Load a message by its provider id within a business."""
    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}
        FROM messages
        WHERE business_id = %s AND provider_message_id = %s
        """,
        (business_id, provider_message_id),
    )
    row = cur.fetchone()
    return _row_to_message(row) if row else None


_MEDIA_FILE_COLUMNS = """
    id, business_id, message_id, modality, local_file_path,
    file_size, mime_type, original_filename, created_at
"""


def _row_to_media_file(row: tuple) -> MediaFile:
    return MediaFile(
        id=row[0],
        business_id=row[1],
        message_id=row[2],
        modality=Modality(row[3]),
        local_file_path=row[4],
        file_size=row[5],
        mime_type=row[6],
        original_filename=row[7],
        created_at=row[8],
    )


def insert_media_file(
    cur: PgCursor,
    *,
    business_id: int,
    message_id: int,
    modality: Modality,
    local_file_path: str,
    file_size: int,
    mime_type: str | None,
    original_filename: str | None,
) -> tuple[MediaFile, bool]:
    """Record a locally stored media copy. `message_id` is the internal messages.id.

    A message has at most one media file (UNIQUE message_id).

    Returns:
        Tuple of (media_file, created). On conflict, the existing row and False.
    """
    cur.execute(
        f"""
        INSERT INTO media_files (
            business_id, message_id, modality, local_file_path,
            file_size, mime_type, original_filename, created_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (message_id) DO NOTHING
        RETURNING {_MEDIA_FILE_COLUMNS}
        """,
        (
            business_id,
            message_id,
            modality.value,
            local_file_path,
            file_size,
            mime_type,
            original_filename,
            utc_now(),
        ),
    )
    row = cur.fetchone()
    if row is not None:
        return _row_to_media_file(row), True

    existing = get_media_file_by_message_id(cur, message_id)
    if existing is None:
        raise RuntimeError("media file conflict without existing row")
    return existing, False


def get_media_file_by_message_id(cur: PgCursor, message_id: int) -> MediaFile | None:
    """Load the media file recorded for an internal message id."""
    cur.execute(
        f"""
        SELECT {_MEDIA_FILE_COLUMNS}
        FROM media_files
        WHERE message_id = %s
        """,
        (message_id,),
    )
    row = cur.fetchone()
    return _row_to_media_file(row) if row else None


def list_expired_media_files(cur: PgCursor, older_than_days: int) -> list[tuple[int, str]]:
    """(id, local_file_path) of media files older than the retention horizon."""
    cur.execute(
        """
        SELECT id, local_file_path
        FROM media_files
        WHERE created_at < now() - make_interval(days => %s)
        ORDER BY id
        """,
        (older_than_days,),
    )
    return [(row[0], row[1]) for row in cur.fetchall()]


def delete_media_files(cur: PgCursor, media_file_ids: list[int]) -> int:
    """Delete media_files rows by id. Returns rows deleted."""
    if not media_file_ids:
        return 0
    cur.execute("DELETE FROM media_files WHERE id = ANY(%s)", (media_file_ids,))
    return cur.rowcount
