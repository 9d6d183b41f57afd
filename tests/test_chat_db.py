"""
Tests for the Messages database adapter.
"""
import sqlite3
from datetime import datetime, timezone

import pytest

from api.services.chat_db import (
    ChatDatabase,
    RawMessageRow,
    apple_timestamp_to_datetime,
    datetime_to_apple_timestamp,
    extract_text_from_attributed_body,
)
from api.services.identity_store import SOURCE_MESSAGE_DB, IdentityStore
from api.services.resilience import MessageSourceUnavailable
from tests.fixtures.chat_data import ChatDbBuilder, at


class TestAppleTimestampConversion:
    """Tests for Apple timestamp conversion functions."""

    def test_nanoseconds(self):
        """Current databases store nanoseconds since 2001-01-01."""
        dt = apple_timestamp_to_datetime(726_840_000_000_000_000)

        assert dt == datetime(2024, 1, 13, 12, 0, tzinfo=timezone.utc)

    def test_seconds(self):
        """Databases before macOS 10.13 store seconds."""
        dt = apple_timestamp_to_datetime(726_840_000)

        assert dt == datetime(2024, 1, 13, 12, 0, tzinfo=timezone.utc)

    def test_zero_returns_none(self):
        assert apple_timestamp_to_datetime(0) is None
        assert apple_timestamp_to_datetime(None) is None

    def test_roundtrip(self):
        original = datetime(2024, 6, 15, 10, 30, 0, tzinfo=timezone.utc)

        for nanoseconds in (True, False):
            apple_ts = datetime_to_apple_timestamp(original, nanoseconds=nanoseconds)
            assert apple_timestamp_to_datetime(apple_ts) == original

    def test_naive_is_utc(self):
        naive = datetime(2024, 6, 15, 10, 30)
        aware = naive.replace(tzinfo=timezone.utc)
        assert datetime_to_apple_timestamp(naive) == datetime_to_apple_timestamp(aware)

    def test_row_sent_at(self):
        row = RawMessageRow(
            message_id=1,
            text="hi",
            timestamp=datetime_to_apple_timestamp(at(1)),
            is_from_me=False,
            handle="+15551234567",
            thread_id=1,
        )
        assert row.sent_at == at(1)


class TestExtractTextFromAttributedBody:
    """Tests for attributedBody text extraction."""

    def test_extract_simple_text(self):
        blob = b"streamtyped\x00\x00\x00NSString\x00Hello world!\x00NSDictionary"
        assert extract_text_from_attributed_body(blob) == "Hello world!"

    def test_extract_longer_text_wins(self):
        blob = b"\x00NSString\x00Hi\x00This is a longer message\x00NSObject"
        assert extract_text_from_attributed_body(blob) == "This is a longer message"

    def test_extract_none_for_empty(self):
        assert extract_text_from_attributed_body(None) is None
        assert extract_text_from_attributed_body(b"") is None

    def test_extract_filters_metadata(self):
        blob = b"NSMutableAttributedString\x00__kIMMessagePartAttributeName\x00Ok\x00$classname"
        assert extract_text_from_attributed_body(blob) == "Ok"

    def test_extract_only_metadata(self):
        blob = b"streamtyped\x00NSString\x00NSDictionary"
        assert extract_text_from_attributed_body(blob) is None

    def test_extract_unicode_text(self):
        blob = "streamtyped\x00\x00Hello café world!\x00NSString".encode("utf-8")
        assert extract_text_from_attributed_body(blob) == "Hello café world!"


class TestHandles:
    """Handle listing and lookup."""

    def test_list_handles_collapses_services(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.list_handles() == [
            "+15551234567",
            "John.Smith@example.com",
            "+12125551234",
            "+15559876543",
        ]

    def test_load_into(self, sample_chat_db):
        store = IdentityStore()
        loaded = ChatDatabase(sample_chat_db.path).load_into(store)

        assert loaded == 4
        assert len(store) == 4
        identity = store.find("john.smith@example.com")
        assert identity.display_name == "Unknown"
        assert identity.sources == [SOURCE_MESSAGE_DB]

    def test_lookup_handles(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.lookup_handles(["+15551234567"]) == [1, 2]
        assert db.lookup_handles(["john.smith@EXAMPLE.com", "+12125551234"]) == [3, 4]
        assert db.lookup_handles(["+19999999999"]) == []
        assert db.lookup_handles([]) == []


class TestThreads:
    """Thread selection, participants and messages."""

    def test_recent_thread_ids_newest_first(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        # Jane: group chat (Mar 2) and direct chat (Mar 3)
        assert db.recent_thread_ids([4], limit=5) == [3, 2]
        assert db.recent_thread_ids([4], limit=1) == [3]

    def test_recent_thread_ids_uses_membership_and_senders(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.recent_thread_ids([1, 2], limit=5) == [1, 2]
        assert db.recent_thread_ids([], limit=5) == []
        assert db.recent_thread_ids([1], limit=0) == []

    def test_thread_participants(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.thread_participants(2) == ["+15551234567", "+12125551234", "+15559876543"]
        assert db.thread_participants(99) == []

    def test_thread_messages_newest_first(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)
        rows = db.thread_messages(1, limit=10)

        assert [r.message_id for r in rows] == [8, 2, 1]
        assert rows[0].handle == "+15551234567"
        assert rows[1].is_from_me is True
        assert rows[1].handle is None
        assert rows[2].text == "Hey, are we still on for Friday?"
        assert rows[2].sent_at == at(1, 9)

    def test_thread_messages_limit(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert [r.message_id for r in db.thread_messages(1, limit=2)] == [8, 2]
        assert db.thread_messages(1, limit=0) == []

    def test_null_text_kept_as_none(self, sample_chat_db):
        rows = ChatDatabase(sample_chat_db.path).thread_messages(2, limit=10)

        assert [r.text for r in rows] == [None, "I'm in", "Dinner plans?"]

    def test_attributed_body_fallback(self, chat_db_builder):
        handle = chat_db_builder.add_handle("+15551234567")
        chat = chat_db_builder.add_chat([handle])
        chat_db_builder.add_message(
            chat, None, at(1), handle_id=handle,
            attributed_body=b"streamtyped\x00NSString\x00Recovered text\x00NSDictionary",
        )

        with_body = ChatDatabase(chat_db_builder.path).thread_messages(chat, 5)
        without = ChatDatabase(chat_db_builder.path, extract_attributed_body=False).thread_messages(chat, 5)

        assert with_body[0].text == "Recovered text"
        assert without[0].text is None


class TestCounts:
    """Message and thread counts."""

    def test_count_all_messages(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        # The attachment-only row has no text
        assert db.count_messages() == 7

    def test_count_messages_for_handles(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.count_messages([1, 2]) == 5
        assert db.count_messages([4]) == 3
        assert db.count_messages([]) == 0

    def test_count_messages_in_range(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.count_messages(None, start=at(3, 0)) == 3
        assert db.count_messages([1, 2], start=at(2, 0), end=at(4, 23)) == 2

    def test_count_threads(self, sample_chat_db):
        db = ChatDatabase(sample_chat_db.path)

        assert db.count_threads([1, 2]) == 2
        assert db.count_threads([4], start=at(3, 0)) == 1
        assert db.count_threads([]) == 0

    def test_seconds_database_range(self, tmp_path):
        """Date filters follow the database's timestamp unit."""
        builder = ChatDbBuilder(tmp_path / "old.db", nanoseconds=False)
        handle = builder.add_handle("+15551234567")
        chat = builder.add_chat([handle])
        builder.add_message(chat, "old", at(1), handle_id=handle)
        builder.add_message(chat, "new", at(10), handle_id=handle)

        db = ChatDatabase(builder.path)

        assert db.count_messages(None, start=at(5)) == 1
        assert db.thread_messages(chat, 5)[0].sent_at == at(10)


class TestUnavailable:
    """Failures surface as MessageSourceUnavailable."""

    def test_missing_file(self, tmp_path):
        db = ChatDatabase(tmp_path / "missing.db")

        assert not db.is_available()
        with pytest.raises(MessageSourceUnavailable) as exc_info:
            db.list_handles()
        assert "not found" in exc_info.value.message

    def test_wrong_layout(self, tmp_path):
        path = tmp_path / "empty.db"
        with sqlite3.connect(path) as conn:
            conn.execute("CREATE TABLE unrelated (id INTEGER)")

        with pytest.raises(MessageSourceUnavailable):
            ChatDatabase(path).list_handles()

    def test_not_a_database(self, tmp_path):
        path = tmp_path / "chat.db"
        path.write_bytes(b"this is not sqlite" * 100)

        with pytest.raises(MessageSourceUnavailable):
            ChatDatabase(path).count_messages()
