"""Business directory - per-business WhatsApp channel configuration and tone.

Resolves the tenant for an inbound event by the channel's phone_number_id.
Resolved configurations are cached briefly; cached values are immutable, so
concurrent events never observe each other's credentials.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field

from psycopg2.extensions import cursor as PgCursor

from wabridge.whatsapp.models import ChannelCredentials

from .db import fetchone, txn

DEFAULT_CACHE_TTL = 60  # seconds


@dataclass(frozen=True)
class ChannelConfig:
    """Active WhatsApp channel configuration of a business."""

    id: int
    business_id: int
    business_name: str
    phone_number_id: str
    access_token: str = field(repr=False)
    verify_token: str | None = field(default=None, repr=False)
    status: str = "active"

    @property
    def credentials(self) -> ChannelCredentials:
        return ChannelCredentials(
            phone_number_id=self.phone_number_id,
            access_token=self.access_token,
        )


@dataclass(frozen=True)
class Tone:
    """Business tone-of-voice instructions appended to the system prompt."""

    id: int
    business_id: int
    name: str
    instructions: str
    is_default: bool


def _cache_ttl() -> float:
    return float(os.environ.get("CHANNEL_CONFIG_CACHE_TTL", DEFAULT_CACHE_TTL))


def select_active_config(cur: PgCursor, phone_number_id: str) -> ChannelConfig | None:
    """Load the active configuration for a channel, joined with its business."""
    row = fetchone(
        cur,
        """
        SELECT wc.id, wc.business_id, b.name, wc.phone_number_id,
               wc.access_token, wc.verify_token, wc.status
        FROM whatsapp_configs wc
        JOIN businesses b ON wc.business_id = b.id
        WHERE wc.phone_number_id = %s
          AND wc.status = 'active'
          AND b.status = 'active'
        ORDER BY wc.updated_at DESC
        LIMIT 1
        """,
        (phone_number_id,),
    )
    if row is None:
        return None
    return ChannelConfig(
        id=row[0],
        business_id=row[1],
        business_name=row[2],
        phone_number_id=row[3],
        access_token=row[4],
        verify_token=row[5],
        status=row[6],
    )


def select_default_tone(cur: PgCursor, business_id: int) -> Tone | None:
    """Load the business's default tone. No default means no tone."""
    row = fetchone(
        cur,
        """
        SELECT id, business_id, name, tone_instructions, is_default
        FROM business_tones
        WHERE business_id = %s AND is_default = true
        """,
        (business_id,),
    )
    if row is None:
        return None
    return Tone(id=row[0], business_id=row[1], name=row[2], instructions=row[3], is_default=row[4])


class BusinessDirectory:
    """Read-only view of businesses used by the inbound pipeline."""

    def __init__(self, cache_ttl: float | None = None) -> None:
        self._cache_ttl = cache_ttl
        self._cache: dict[str, tuple[ChannelConfig, float]] = {}
        self._cache_lock = threading.Lock()

    def resolve_channel_config(self, phone_number_id: str) -> ChannelConfig | None:
        """Active ChannelConfig for the channel, or None if unknown/deprovisioned.

        Only hits are cached so a newly provisioned channel is picked up at once.
        """
        ttl = self._cache_ttl if self._cache_ttl is not None else _cache_ttl()
        now = time.monotonic()

        with self._cache_lock:
            cached = self._cache.get(phone_number_id)
            if cached is not None and (now - cached[1]) < ttl:
                return cached[0]

        with txn() as cur:
            config = select_active_config(cur, phone_number_id)

        with self._cache_lock:
            if config is None:
                self._cache.pop(phone_number_id, None)
            else:
                self._cache[phone_number_id] = (config, now)
        return config

    def invalidate(self, phone_number_id: str | None = None) -> None:
        """Drop one cached channel, or all of them (e.g. after token rotation)."""
        with self._cache_lock:
            if phone_number_id is None:
                self._cache.clear()
            else:
                self._cache.pop(phone_number_id, None)

    def get_tone(self, business_id: int) -> Tone | None:
        with txn() as cur:
            return select_default_tone(cur, business_id)

    def has_verify_token(self, token: str) -> bool:
        """True if any active channel uses `token` as its webhook verification secret."""
        if not token:
            return False
        with txn() as cur:
            row = fetchone(
                cur,
                """
                SELECT 1 FROM whatsapp_configs
                WHERE verify_token = %s AND status = 'active'
                LIMIT 1
                """,
                (token,),
            )
        return row is not None
