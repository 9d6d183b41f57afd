"""
Conversation assembly for Threadline.

Groups raw message rows into threaded conversations for one person:
1. Select the person's most recently active threads (newest first)
2. Fetch each thread's participants and latest messages
3. Resolve every sender and participant through the identity store
4. Order messages oldest-first by message id, and conversations by their
   highest message id, ascending

Messages without text (attachment-only, reactions, system rows) are dropped.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from api.services.chat_db import RawMessageRow
from api.services.identifiers import create_identifier, is_key, key_value
from api.services.identity_store import UNKNOWN_NAME, Identity, IdentityStore
from api.services.resilience import MessageSourceUnavailable, user_friendly_error
from api.utils.datetime_utils import make_aware

logger = logging.getLogger(__name__)

SELF_KEY = "self"
UNKNOWN_CONTACT = "Unknown Contact"

DEFAULT_CONVERSATION_LIMIT = 3
DEFAULT_MESSAGE_LIMIT = 20


@dataclass
class Participant:
    """A resolved thread member."""
    key: str
    name: str

    def to_dict(self) -> dict:
        return {"id": self.key, "name": self.name}


@dataclass
class ResolvedMessage:
    """A message with its sender resolved to a display name."""
    message_id: int
    sender: str
    sent_at: Optional[datetime]
    text: str
    is_from_me: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.message_id,
            "sender": self.sender,
            "at": self.sent_at.isoformat() if self.sent_at else None,
            "text": self.text,
            "is_from_me": self.is_from_me,
        }


@dataclass
class Conversation:
    """One thread with its participants and retained messages."""
    thread_id: int
    participants: list[Participant] = field(default_factory=list)
    messages: list[ResolvedMessage] = field(default_factory=list)

    @property
    def conversation_id(self) -> str:
        return f"chat_{self.thread_id}"

    @property
    def last_message_id(self) -> int:
        return max((m.message_id for m in self.messages), default=0)

    def to_dict(self) -> dict:
        return {
            "conversation_id": self.conversation_id,
            "thread_id": self.thread_id,
            "participants": [p.to_dict() for p in self.participants],
            "messages": [m.to_dict() for m in self.messages],
        }


@dataclass
class DateRange:
    """Inclusive time window; either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def __post_init__(self):
        self.start = make_aware(self.start)
        self.end = make_aware(self.end)

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def contains(self, moment: Optional[datetime]) -> bool:
        """Undated messages never fall inside a bounded range."""
        if self.is_open:
            return True
        if moment is None:
            return False
        if self.start and moment < self.start:
            return False
        if self.end and moment > self.end:
            return False
        return True

    def describe(self) -> str:
        parts = []
        if self.start:
            parts.append(f" from {self.start.isoformat()}")
        if self.end:
            parts.append(f" to {self.end.isoformat()}")
        return "".join(parts)


@dataclass
class AssemblyResult:
    """
    Conversations for one person.

    ``degraded`` is True when the message source could not be read; the
    conversation list is then empty and ``detail`` says why.
    """
    conversations: list[Conversation] = field(default_factory=list)
    detail: str = ""
    degraded: bool = False

    @property
    def message_count(self) -> int:
        return sum(len(c.messages) for c in self.conversations)

    def to_dict(self) -> dict:
        return {
            "conversations": [c.to_dict() for c in self.conversations],
            "detail": self.detail,
            "degraded": self.degraded,
        }


@dataclass
class ResolvedTarget:
    participant: Participant
    handle_values: list[str]
    identifier_keys: set[str]


class ConversationAssembler:
    """
    Builds Conversations from a message source and an identity store.

    The message source is any object exposing ``lookup_handles``,
    ``recent_thread_ids``, ``thread_participants`` and ``thread_messages``
    with the signatures of ChatDatabase.
    """

    def __init__(self, store: IdentityStore, source, self_display_name: str = "Me"):
        """
        Args:
            store: Identity store used for name resolution
            source: Message source (e.g. ChatDatabase)
            self_display_name: Name shown for the local user's messages
        """
        self.store = store
        self.source = source
        self.self_participant = Participant(key=SELF_KEY, name=self_display_name)

    def resolve_target(self, target: Union[Identity, str]) -> ResolvedTarget:
        """
        Collect the handle values to look up for a person.

        A string target is resolved through the store first; if nothing owns
        it, the bare identifier is used on its own.
        """
        if isinstance(target, str):
            found = self.store.find(target)
            if found is not None:
                target = found
            else:
                raw = key_value(target) if is_key(target) else target
                identifier = create_identifier(raw, self.store.default_country_code)
                return ResolvedTarget(
                    participant=Participant(key=identifier.key, name=UNKNOWN_CONTACT),
                    handle_values=[v for v in {raw.strip(), identifier.normalized} if v],
                    identifier_keys={identifier.key},
                )

        values = []
        for identifier in target.identifiers:
            for value in (identifier.normalized, identifier.raw.strip()):
                if value and value not in values:
                    values.append(value)
        return ResolvedTarget(
            participant=Participant(key=target.key, name=self._name(target)),
            handle_values=values,
            identifier_keys={i.key for i in target.identifiers},
        )

    @staticmethod
    def _name(identity: Identity) -> str:
        # Handle-only identities carry the store placeholder
        if identity.display_name == UNKNOWN_NAME:
            return UNKNOWN_CONTACT
        return identity.display_name

    def _resolve(self, handle: Optional[str], cache: dict[str, Participant]) -> Participant:
        """Resolve a handle to a participant, falling back to Unknown Contact."""
        if not handle:
            return Participant(key="", name=UNKNOWN_CONTACT)
        if handle not in cache:
            identity = self.store.find(handle)
            if identity is not None:
                cache[handle] = Participant(key=identity.key, name=self._name(identity))
            else:
                key = create_identifier(handle, self.store.default_country_code).key
                cache[handle] = Participant(key=key, name=UNKNOWN_CONTACT)
        return cache[handle]

    def _participants(
        self,
        target: ResolvedTarget,
        handles: list[str],
        cache: dict[str, Participant],
    ) -> list[Participant]:
        participants = [target.participant, self.self_participant]
        seen = {target.participant.key, self.self_participant.key}

        for handle in handles:
            participant = self._resolve(handle, cache)
            if participant.key in seen or participant.key in target.identifier_keys:
                continue
            seen.add(participant.key)
            participants.append(participant)

        return participants

    def _messages(
        self,
        rows: list[RawMessageRow],
        date_range: DateRange,
        cache: dict[str, Participant],
    ) -> list[ResolvedMessage]:
        messages = []
        for row in rows:
            if row.text is None:
                continue

            sent_at = row.sent_at
            if not date_range.contains(sent_at):
                continue

            if row.is_from_me:
                sender = self.self_participant.name
            else:
                sender = self._resolve(row.handle, cache).name

            messages.append(ResolvedMessage(
                message_id=row.message_id,
                sender=sender,
                sent_at=sent_at,
                text=row.text,
                is_from_me=row.is_from_me,
            ))

        messages.sort(key=lambda m: m.message_id)
        return messages

    def assemble(
        self,
        target: Union[Identity, str],
        conversation_limit: int = DEFAULT_CONVERSATION_LIMIT,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        date_range: Optional[DateRange] = None,
    ) -> AssemblyResult:
        """
        Assemble the person's most recent conversations.

        Args:
            target: Resolved Identity, or a raw identifier / canonical key
            conversation_limit: Maximum threads to select
            message_limit: Maximum messages fetched per thread
            date_range: Optional inclusive window applied to messages

        Returns:
            AssemblyResult, ordered by each conversation's highest message id
        """
        date_range = date_range or DateRange()
        resolved = self.resolve_target(target)
        name = resolved.participant.name

        try:
            handle_ids = self.source.lookup_handles(resolved.handle_values)
            if not handle_ids:
                logger.warning(f"No message handle found for {resolved.participant.key}")
                return AssemblyResult(
                    detail=f"No message handle found for {name} ({resolved.participant.key}).",
                )

            thread_ids = self.source.recent_thread_ids(handle_ids, conversation_limit)

            cache: dict[str, Participant] = {}
            conversations = []
            for thread_id in thread_ids:
                handles = self.source.thread_participants(thread_id)
                rows = self.source.thread_messages(thread_id, message_limit)

                messages = self._messages(rows, date_range, cache)
                if not messages:
                    continue

                conversations.append(Conversation(
                    thread_id=thread_id,
                    participants=self._participants(resolved, handles, cache),
                    messages=messages,
                ))
        except MessageSourceUnavailable as e:
            logger.error(f"Message source unavailable while assembling for {name}: {e}")
            return AssemblyResult(
                detail=user_friendly_error(e),
                degraded=True,
            )

        conversations.sort(key=lambda c: c.last_message_id)

        result = AssemblyResult(conversations=conversations)
        result.detail = (
            f"Retrieved {result.message_count} messages in {len(conversations)} "
            f"conversations{date_range.describe()} for {name}."
        )
        return result
