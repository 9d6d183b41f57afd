"""
Tests for conversation assembly.
"""
from datetime import timedelta

import pytest

from api.services.chat_db import ChatDatabase, RawMessageRow, datetime_to_apple_timestamp
from api.services.conversation_assembler import (
    UNKNOWN_CONTACT,
    ConversationAssembler,
    DateRange,
)
from api.services.identity_store import SOURCE_CONTACT_FILE, SOURCE_MESSAGE_DB, IdentityStore
from api.services.resilience import MessageSourceUnavailable
from tests.fixtures.chat_data import at


class FakeMessageSource:
    """In-memory message source with the ChatDatabase query surface."""

    def __init__(self):
        self.handles: dict[str, int] = {}
        self.threads: dict[int, list[int]] = {}  # thread id -> handle ids
        self.participants: dict[int, list[str]] = {}
        self.messages: dict[int, list[RawMessageRow]] = {}
        self.recency: list[int] = []  # thread ids, most recent first
        self.fail = False

    def _check(self):
        if self.fail:
            raise MessageSourceUnavailable("database is locked")

    def add_thread(self, thread_id: int, handles: list[str], rows: list[tuple]):
        """Rows are (message_id, text, handle, is_from_me, day)."""
        for handle in handles:
            self.handles.setdefault(handle.lower(), len(self.handles) + 1)
        self.threads[thread_id] = [self.handles[h.lower()] for h in handles]
        self.participants[thread_id] = list(handles)
        self.messages[thread_id] = [
            RawMessageRow(
                message_id=message_id,
                text=text,
                timestamp=datetime_to_apple_timestamp(at(day)),
                is_from_me=is_from_me,
                handle=handle,
                thread_id=thread_id,
            )
            for message_id, text, handle, is_from_me, day in rows
        ]
        self.recency.insert(0, thread_id)

    def lookup_handles(self, values):
        self._check()
        return sorted({self.handles[v.lower()] for v in values if v and v.lower() in self.handles})

    def recent_thread_ids(self, handle_ids, limit):
        self._check()
        wanted = set(handle_ids)
        return [t for t in self.recency if wanted & set(self.threads[t])][:limit]

    def thread_participants(self, thread_id):
        self._check()
        return self.participants[thread_id]

    def thread_messages(self, thread_id, limit):
        self._check()
        rows = sorted(self.messages[thread_id], key=lambda r: r.timestamp, reverse=True)
        return rows[:limit]


@pytest.fixture
def store():
    store = IdentityStore()
    store.upsert("(212) 555-1234", "Jane Doe", SOURCE_CONTACT_FILE)
    store.upsert("+12125551234", "Unknown", SOURCE_MESSAGE_DB)
    store.upsert("sam@example.com", "Sam Lee", SOURCE_CONTACT_FILE)
    return store


@pytest.fixture
def source():
    return FakeMessageSource()


class TestAssemble:
    """Tests for ConversationAssembler.assemble."""

    def test_null_text_dropped_and_sorted_by_id(self, store, source):
        """Thread with ids [5, 3, 9] where 9 has no text yields [3, 5]."""
        source.add_thread(1, ["+12125551234"], [
            (5, "second", "+12125551234", False, 2),
            (3, "first", "+12125551234", False, 1),
            (9, None, "+12125551234", False, 3),
        ])
        assembler = ConversationAssembler(store, source)

        result = assembler.assemble(store.find("+12125551234"))

        assert [m.message_id for m in result.conversations[0].messages] == [3, 5]
        assert result.message_count == 2

    def test_all_text_kept(self, store, source):
        source.add_thread(1, ["+12125551234"], [
            (5, "b", "+12125551234", False, 2),
            (3, "a", "+12125551234", False, 1),
            (9, "c", None, True, 3),
        ])

        result = ConversationAssembler(store, source).assemble("phone:+12125551234")

        assert [m.message_id for m in result.conversations[0].messages] == [3, 5, 9]

    def test_sorted_by_id_not_timestamp(self, store, source):
        """Message ids are the ordering key even when clocks disagree."""
        source.add_thread(1, ["+12125551234"], [
            (10, "later id, earlier day", "+12125551234", False, 1),
            (11, "even later id", "+12125551234", False, 3),
            (4, "early id, middle day", "+12125551234", False, 2),
        ])

        result = ConversationAssembler(store, source).assemble("+12125551234")

        assert [m.message_id for m in result.conversations[0].messages] == [4, 10, 11]

    def test_conversations_ordered_by_highest_message_id(self, store, source):
        """Threads are picked newest first but returned oldest first."""
        source.add_thread(1, ["+12125551234"], [(30, "old thread, high id", "+12125551234", False, 1)])
        source.add_thread(2, ["+12125551234"], [(20, "middle", "+12125551234", False, 2)])
        source.add_thread(3, ["+12125551234"], [(10, "newest thread, low id", "+12125551234", False, 3)])

        result = ConversationAssembler(store, source).assemble("+12125551234")

        assert [c.thread_id for c in result.conversations] == [3, 2, 1]
        ids = [c.last_message_id for c in result.conversations]
        assert ids == sorted(ids)

    def test_conversation_limit_selects_most_recent_threads(self, store, source):
        for thread_id in (1, 2, 3, 4):
            source.add_thread(thread_id, ["+12125551234"], [
                (thread_id * 10, f"thread {thread_id}", "+12125551234", False, thread_id),
            ])

        result = ConversationAssembler(store, source).assemble("+12125551234", conversation_limit=2)

        assert [c.thread_id for c in result.conversations] == [3, 4]

    def test_message_limit_keeps_latest(self, store, source):
        source.add_thread(1, ["+12125551234"], [
            (i, f"message {i}", "+12125551234", False, i) for i in range(1, 8)
        ])

        result = ConversationAssembler(store, source).assemble("+12125551234", message_limit=3)

        assert [m.message_id for m in result.conversations[0].messages] == [5, 6, 7]

    def test_thread_with_only_null_text_skipped(self, store, source):
        source.add_thread(1, ["+12125551234"], [(1, None, "+12125551234", False, 1)])

        result = ConversationAssembler(store, source).assemble("+12125551234")

        assert result.conversations == []
        assert result.detail == "Retrieved 0 messages in 0 conversations for Jane Doe."


class TestResolution:
    """Sender and participant names."""

    def test_senders_resolved(self, store, source):
        source.add_thread(1, ["+12125551234", "sam@example.com", "+13105550000"], [
            (1, "hi all", "+12125551234", False, 1),
            (2, "hey", "SAM@example.com", False, 1),
            (3, "who's this?", "+13105550000", False, 2),
            (4, "me again", None, True, 3),
        ])
        assembler = ConversationAssembler(store, source, self_display_name="Alex")

        conversation = assembler.assemble("(212) 555-1234").conversations[0]

        assert [m.sender for m in conversation.messages] == ["Jane Doe", "Sam Lee", UNKNOWN_CONTACT, "Alex"]
        assert conversation.messages[3].is_from_me

    def test_participants(self, store, source):
        source.add_thread(1, ["+12125551234", "sam@example.com", "+13105550000", "Sam@Example.com"], [
            (1, "hi all", "+12125551234", False, 1),
        ])

        conversation = ConversationAssembler(store, source).assemble("+12125551234").conversations[0]

        assert [(p.key, p.name) for p in conversation.participants] == [
            ("phone:+12125551234", "Jane Doe"),
            ("self", "Me"),
            ("email:sam@example.com", "Sam Lee"),
            ("phone:+13105550000", UNKNOWN_CONTACT),
        ]
        assert conversation.conversation_id == "chat_1"

    def test_handle_only_identity_uses_unknown_contact(self, store, source):
        """Placeholder-named identities and unresolved handles share one label."""
        store.upsert("+14155550000", "Unknown", SOURCE_MESSAGE_DB)
        source.add_thread(1, ["+12125551234", "+14155550000", "+13105559999"], [
            (1, "hi", "+14155550000", False, 1),
            (2, "hello", "+13105559999", False, 2),
        ])

        conversation = ConversationAssembler(store, source).assemble("+12125551234").conversations[0]

        assert [m.sender for m in conversation.messages] == [UNKNOWN_CONTACT, UNKNOWN_CONTACT]
        assert [p.name for p in conversation.participants][2:] == [UNKNOWN_CONTACT, UNKNOWN_CONTACT]

    def test_unknown_identifier_target(self, store, source):
        source.add_thread(1, ["+13105550000"], [(1, "hello", "+13105550000", False, 1)])

        result = ConversationAssembler(store, source).assemble("310-555-0000")

        conversation = result.conversations[0]
        assert conversation.participants[0].name == UNKNOWN_CONTACT
        assert conversation.participants[0].key == "phone:+13105550000"
        assert result.detail.endswith(f"for {UNKNOWN_CONTACT}.")

    def test_no_handle(self, store, source):
        result = ConversationAssembler(store, source).assemble("sam@example.com")

        assert result.conversations == []
        assert not result.degraded
        assert result.detail == "No message handle found for Sam Lee (email:sam@example.com)."


class TestDateRange:
    """Inclusive date filtering of messages."""

    def test_filter_messages(self, store, source):
        source.add_thread(1, ["+12125551234"], [
            (1, "day 1", "+12125551234", False, 1),
            (2, "day 2", "+12125551234", False, 2),
            (3, "day 3", "+12125551234", False, 3),
        ])

        result = ConversationAssembler(store, source).assemble(
            "+12125551234",
            date_range=DateRange(start=at(2), end=at(3)),
        )

        assert [m.message_id for m in result.conversations[0].messages] == [2, 3]
        assert "from 2024-03-02T12:00:00+00:00 to 2024-03-03T12:00:00+00:00" in result.detail

    def test_naive_bounds_are_utc(self):
        naive = at(2).replace(tzinfo=None)
        date_range = DateRange(start=naive)

        assert date_range.start == at(2)
        assert date_range.contains(at(2))
        assert not date_range.contains(at(2) - timedelta(seconds=1))

    def test_open_range(self):
        assert DateRange().is_open
        assert DateRange().contains(None)
        assert not DateRange(end=at(1)).contains(None)


class TestDegraded:
    def test_source_failure(self, store, source):
        source.add_thread(1, ["+12125551234"], [(1, "hi", "+12125551234", False, 1)])
        source.fail = True

        result = ConversationAssembler(store, source).assemble("+12125551234")

        assert result.degraded
        assert result.conversations == []
        assert result.detail == "The message database is currently unavailable. database is locked"

    def test_missing_database(self, store, tmp_path):
        assembler = ConversationAssembler(store, ChatDatabase(tmp_path / "missing.db"))

        result = assembler.assemble("+12125551234")

        assert result.degraded
        assert "not found" in result.detail


class TestAgainstChatDb:
    """End to end over a temporary Messages database."""

    def test_assemble(self, sample_chat_db, sample_vcf):
        from api.services.contacts_file import VCardContactSource

        store = IdentityStore()
        VCardContactSource(sample_vcf).load_into(store)
        db = ChatDatabase(sample_chat_db.path)
        db.load_into(store)

        result = ConversationAssembler(store, db).assemble(store.find("+15551234567"))

        assert [c.thread_id for c in result.conversations] == [2, 1]
        group, direct = result.conversations
        assert [m.text for m in group.messages] == ["Dinner plans?", "I'm in"]
        assert [m.sender for m in group.messages] == ["Jane Doe", UNKNOWN_CONTACT]
        assert [p.name for p in group.participants] == ["John Smith", "Me", "Jane Doe", UNKNOWN_CONTACT]
        assert [m.message_id for m in direct.messages] == [1, 2, 8]
        assert [m.sender for m in direct.messages] == ["John Smith", "Me", "John Smith"]
        assert result.detail == "Retrieved 5 messages in 2 conversations for John Smith."
