"""Conversation domain logic - entities, upsert and model-facing history.

A conversation is the running thread between one business and one
counterparty phone number. Exactly one row exists per pair; creation is a
single upsert so concurrent first messages converge on the same row.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from psycopg2.extensions import cursor as PgCursor

from wabridge.infra.time import utc_now
from wabridge.whatsapp.models import Modality

# Number of prior turns handed to the model
HISTORY_WINDOW = 10


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass(frozen=True)
class Conversation:
    id: int
    business_id: int
    phone_number: str
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class Message:
    """A persisted message. Immutable once written."""

    id: int
    business_id: int
    conversation_id: int
    provider_message_id: str
    direction: Direction
    modality: Modality
    content: str | None
    media_id: str | None
    media_url: str | None
    ai_response: str | None
    provider_timestamp: datetime | None
    created_at: datetime


@dataclass(frozen=True)
class MediaFile:
    id: int
    business_id: int
    message_id: int
    modality: Modality
    local_file_path: str
    file_size: int
    mime_type: str | None
    original_filename: str | None
    created_at: datetime


def reply_message_id(inbound_message_id: str) -> str:
    """Deterministic provider id of the outbound reply to an inbound message.

    Makes the reply insert idempotent across provider retries.
    """
    return f"reply:{inbound_message_id}"


def upsert_conversation(
    cur: PgCursor,
    business_id: int,
    phone_number: str,
) -> tuple[Conversation, bool]:
    """Create or touch the conversation for (business_id, phone_number).

    Relies on UNIQUE (business_id, phone_number): a concurrent insert for
    the same pair turns into an update of the existing row.

    Args:
        cur: Database cursor (within transaction).
        business_id: Business identifier.
        phone_number: Counterparty phone number.

    Returns:
        Tuple of (conversation, created).
    """
    now = utc_now()
    cur.execute(
        """
        INSERT INTO conversations (business_id, phone_number, status, created_at, updated_at)
        VALUES (%s, %s, 'active', %s, %s)
        ON CONFLICT (business_id, phone_number)
        DO UPDATE SET updated_at = EXCLUDED.updated_at
        RETURNING id, business_id, phone_number, status, created_at, updated_at,
                  (xmax = 0) AS created
        """,
        (business_id, phone_number, now, now),
    )
    row = cur.fetchone()
    conversation = Conversation(
        id=row[0],
        business_id=row[1],
        phone_number=row[2],
        status=row[3],
        created_at=row[4],
        updated_at=row[5],
    )
    return conversation, bool(row[6])


def history_content(modality: Modality, content: str | None) -> str:
    """Render a stored message as model context.

    Media rows carry only their caption, so they are labelled to let the
    model know something other than plain text was exchanged.
    """
    if modality is Modality.AUDIO:
        return f"Audio message: {content or 'Transcribed audio'}"
    if modality is Modality.IMAGE:
        return f"Image: {content or ''} - Image analyzed"
    return content or ""


def fetch_recent_history(
    cur: PgCursor,
    business_id: int,
    phone_number: str,
    limit: int = HISTORY_WINDOW,
    *,
    exclude_message_id: int | None = None,
) -> list[dict[str, str]]:
    """Most recent `limit` messages for the pair, oldest first, as chat turns.

    Args:
        cur: Database cursor.
        business_id: Business identifier.
        phone_number: Counterparty phone number.
        limit: Window size.
        exclude_message_id: Internal id to leave out (the message being answered).

    Returns:
        List of {"role": "user"|"assistant", "content": str}.
    """
    query = """
        SELECT m.direction, m.modality, m.content
        FROM messages m
        JOIN conversations c ON m.conversation_id = c.id
        WHERE c.business_id = %s AND c.phone_number = %s
    """
    params: list = [business_id, phone_number]
    if exclude_message_id is not None:
        query += " AND m.id <> %s"
        params.append(exclude_message_id)
    query += " ORDER BY m.created_at DESC, m.id DESC LIMIT %s"
    params.append(limit)

    cur.execute(query, params)
    rows = cur.fetchall()

    turns = []
    for direction, modality, content in reversed(rows):
        role = "user" if direction == Direction.INBOUND.value else "assistant"
        turns.append({"role": role, "content": history_content(_as_modality(modality), content)})
    return turns


def _as_modality(value: str) -> Modality:
    try:
        return Modality(value)
    except ValueError:
        return Modality.UNKNOWN
