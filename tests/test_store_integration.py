"""Conversation store against a real Postgres (requires migrated DATABASE_URL)."""

import os
import threading
import uuid

import pytest

from wabridge.domain.conversations import Direction
from wabridge.infra.business_directory import BusinessDirectory
from wabridge.infra.conversation_store import ConversationStore
from wabridge.infra.db import txn
from wabridge.whatsapp.models import Modality

pytestmark = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


@pytest.fixture
def business():
    """Create a business with an active channel; delete it (cascading) afterwards."""
    phone_number_id = f"test-{uuid.uuid4().hex[:12]}"
    with txn() as cur:
        cur.execute("INSERT INTO businesses (name) VALUES (%s) RETURNING id", ("Integration Test",))
        business_id = cur.fetchone()[0]
        cur.execute(
            """
            INSERT INTO whatsapp_configs (business_id, phone_number_id, access_token, verify_token)
            VALUES (%s, %s, %s, %s)
            """,
            (business_id, phone_number_id, "tok", f"vt-{phone_number_id}"),
        )
        cur.execute(
            """
            INSERT INTO business_tones (business_id, name, tone_instructions, is_default)
            VALUES (%s, 'friendly', 'Be warm.', true)
            """,
            (business_id,),
        )
    yield business_id, phone_number_id
    with txn() as cur:
        cur.execute("DELETE FROM businesses WHERE id = %s", (business_id,))


class TestDirectory:
    def test_resolves_active_config_and_tone(self, business):
        business_id, phone_number_id = business
        directory = BusinessDirectory(cache_ttl=0)

        config = directory.resolve_channel_config(phone_number_id)

        assert config.business_id == business_id
        assert directory.get_tone(business_id).instructions == "Be warm."
        assert directory.has_verify_token(f"vt-{phone_number_id}")

    def test_inactive_business_not_resolved(self, business):
        business_id, phone_number_id = business
        with txn() as cur:
            cur.execute("UPDATE businesses SET status = 'inactive' WHERE id = %s", (business_id,))
        assert BusinessDirectory(cache_ttl=0).resolve_channel_config(phone_number_id) is None


class TestConversationStore:
    def test_concurrent_upserts_create_one_conversation(self, business):
        business_id, _ = business
        store = ConversationStore()
        results = []

        def _create():
            results.append(store.create_or_get_conversation(business_id, "15551234567").id)

        threads = [threading.Thread(target=_create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        with txn() as cur:
            cur.execute("SELECT count(*) FROM conversations WHERE business_id = %s", (business_id,))
            assert cur.fetchone()[0] == 1

    def test_duplicate_message_is_noop(self, business):
        business_id, _ = business
        store = ConversationStore()
        conversation = store.create_or_get_conversation(business_id, "15551234567")
        kwargs = dict(
            business_id=business_id,
            conversation_id=conversation.id,
            provider_message_id="wamid.DUP",
            direction=Direction.INBOUND,
            modality=Modality.TEXT,
            content="Hello",
        )

        first, first_created = store.save_message(**kwargs)
        second, second_created = store.save_message(**kwargs)

        assert first_created and not second_created
        assert first.id == second.id

    def test_history_and_media(self, business):
        business_id, _ = business
        store = ConversationStore()
        conversation = store.create_or_get_conversation(business_id, "15551234567")
        inbound, _ = store.save_message(
            business_id=business_id,
            conversation_id=conversation.id,
            provider_message_id="wamid.H1",
            direction=Direction.INBOUND,
            modality=Modality.IMAGE,
            content="menu",
            media_id="m1",
        )
        store.save_message(
            business_id=business_id,
            conversation_id=conversation.id,
            provider_message_id="reply:wamid.H1",
            direction=Direction.OUTBOUND,
            modality=Modality.TEXT,
            content="Nice menu!",
            ai_response="Nice menu!",
        )
        media_file, media_created = store.save_media_file(
            business_id=business_id,
            message_id=inbound.id,
            modality=Modality.IMAGE,
            local_file_path="/srv/uploads/images/x.jpg",
            file_size=3,
            mime_type="image/jpeg",
        )
        again, again_created = store.save_media_file(
            business_id=business_id,
            message_id=inbound.id,
            modality=Modality.IMAGE,
            local_file_path="/srv/uploads/images/y.jpg",
            file_size=3,
        )

        history = store.get_recent_history(business_id, "15551234567")

        assert media_file.message_id == inbound.id
        assert media_created and not again_created
        assert again.id == media_file.id
        assert store.get_media_file(inbound.id).local_file_path == "/srv/uploads/images/x.jpg"
        assert history == [
            {"role": "user", "content": "Image: menu - Image analyzed"},
            {"role": "assistant", "content": "Nice menu!"},
        ]
        assert store.get_message(business_id, "reply:wamid.H1").direction is Direction.OUTBOUND
