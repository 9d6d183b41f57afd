"""
Message Engine for Threadline.

Owns one identity graph, the two source adapters and a conversation
assembler. The graph is built lazily on the first query and then reused
until ``reload()``. Callers construct one engine and pass it around; the
API keeps it on ``app.state``.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from api.services.conversation_assembler import (
    DEFAULT_CONVERSATION_LIMIT,
    DEFAULT_MESSAGE_LIMIT,
    AssemblyResult,
    ConversationAssembler,
    DateRange,
)
from api.services.identifiers import DEFAULT_COUNTRY_CODE, is_key, is_likely_email, is_likely_phone
from api.services.identity_store import (
    SOURCE_CONTACT_FILE,
    SOURCE_MESSAGE_DB,
    Identity,
    IdentityStore,
)
from api.services.resilience import (
    ContactSourceUnavailable,
    MessageSourceUnavailable,
    SourceUnavailableError,
    user_friendly_error,
)

logger = logging.getLogger(__name__)

# Resolution statuses
NO_MATCH = "none"
SINGLE_MATCH = "single"
MULTIPLE_MATCHES = "multiple"

NAME_MATCH_CONFIDENCE = 0.9
AMBIGUOUS_MATCH_CONFIDENCE = 0.8


class CountEntity(str, Enum):
    """Things the engine can count."""
    MESSAGES_FOR_CONTACT = "messages_for_contact"
    MESSAGES_TOTAL = "messages_total"
    CONVERSATIONS_WITH_CONTACT = "conversations_with_contact"
    CONTACT_FILE_CONTACTS = "contact_file_contacts"
    MESSAGE_DB_HANDLES = "message_db_handles"


@dataclass
class LoadReport:
    """Outcome of building the identity graph from both sources."""
    loaded: bool = False
    contact_identifiers: int = 0
    handles: int = 0
    errors: dict[str, str] = field(default_factory=dict)  # source tag -> message
    loaded_at: Optional[datetime] = None

    @property
    def degraded(self) -> bool:
        return bool(self.errors)

    def to_dict(self) -> dict:
        return {
            "loaded": self.loaded,
            "contact_identifiers": self.contact_identifiers,
            "handles": self.handles,
            "errors": dict(self.errors),
            "degraded": self.degraded,
            "loaded_at": self.loaded_at.isoformat() if self.loaded_at else None,
        }


@dataclass
class ContactMatch:
    """An identity offered for a query, with match confidence."""
    identity: Identity
    confidence: float

    def to_dict(self) -> dict:
        data = self.identity.to_dict()
        data["confidence"] = self.confidence
        return data


@dataclass
class ContactResolution:
    """
    Result of resolving a free-text query to people.

    ``status`` is "none", "single" or "multiple". Multiple matches are not
    an error: the caller is expected to ask which one was meant.
    """
    query: str
    status: str
    matches: list[ContactMatch] = field(default_factory=list)
    clarification: Optional[str] = None

    @property
    def identity(self) -> Optional[Identity]:
        """The resolved identity when exactly one matched."""
        if self.status == SINGLE_MATCH:
            return self.matches[0].identity
        return None

    def to_dict(self) -> dict:
        return {
            "query": self.query,
            "status": self.status,
            "contacts": [m.to_dict() for m in self.matches],
            "clarification": self.clarification,
        }


@dataclass
class CountResult:
    """A count with the filters that produced it."""
    entity: CountEntity
    count: int = 0
    filters: dict = field(default_factory=dict)
    details: str = ""
    degraded: bool = False

    def to_dict(self) -> dict:
        return {
            "entity": self.entity.value,
            "count": self.count,
            "filters": self.filters,
            "details": self.details,
            "degraded": self.degraded,
        }


class MessageEngine:
    """
    Identity resolution and conversation assembly over two sources.

    Loading, reloading and clearing hold the engine lock, as do queries,
    so a shared engine never answers from a half-built graph.
    """

    def __init__(
        self,
        contact_source=None,
        message_source=None,
        store: Optional[IdentityStore] = None,
        self_display_name: str = "Me",
        default_country_code: str = DEFAULT_COUNTRY_CODE,
        conversation_limit: int = DEFAULT_CONVERSATION_LIMIT,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
    ):
        """
        Args:
            contact_source: Contact adapter with ``load_into(store)``
                (e.g. VCardContactSource); None to skip
            message_source: Message adapter (e.g. ChatDatabase); None to skip
            store: Identity store to populate (a new one by default)
            self_display_name: Name shown for the local user
            default_country_code: Country code for phone numbers without one
            conversation_limit: Default maximum conversations per query
            message_limit: Default maximum messages per conversation
        """
        self.contact_source = contact_source
        self.message_source = message_source
        self.store = store if store is not None else IdentityStore(default_country_code)
        self.assembler = ConversationAssembler(self.store, message_source, self_display_name)
        self.conversation_limit = conversation_limit
        self.message_limit = message_limit
        self._report = LoadReport()
        self._lock = threading.RLock()

    @property
    def load_report(self) -> LoadReport:
        return self._report

    # ------------------------------------------------------------------
    # Graph lifecycle
    # ------------------------------------------------------------------

    def _load(self) -> LoadReport:
        report = LoadReport()

        # Contacts first so handles merge into named identities
        if self.contact_source is not None:
            try:
                report.contact_identifiers = self.contact_source.load_into(self.store)
            except ContactSourceUnavailable as e:
                logger.error(f"Contact source unavailable: {e}")
                report.errors[SOURCE_CONTACT_FILE] = e.message

        if self.message_source is not None:
            try:
                report.handles = self.message_source.load_into(self.store)
            except MessageSourceUnavailable as e:
                logger.error(f"Message source unavailable: {e}")
                report.errors[SOURCE_MESSAGE_DB] = e.message

        report.loaded = True
        report.loaded_at = datetime.now(timezone.utc)
        self._report = report

        logger.info(
            f"Identity graph built: {len(self.store)} identities from "
            f"{report.contact_identifiers} contact identifiers and {report.handles} handles"
        )
        return report

    def ensure_loaded(self) -> LoadReport:
        """Build the identity graph if it has not been built yet."""
        with self._lock:
            if not self._report.loaded:
                self._load()
            return self._report

    def reload(self) -> LoadReport:
        """Discard the graph and rebuild it from both sources."""
        with self._lock:
            self.store.clear()
            return self._load()

    def clear(self) -> None:
        """Discard the graph; the next query rebuilds it."""
        with self._lock:
            self.store.clear()
            self._report = LoadReport()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find(self, identifier: str) -> Optional[Identity]:
        """Identity owning a raw identifier or canonical key."""
        self.ensure_loaded()
        with self._lock:
            return self.store.find(identifier)

    def search(self, query: str, limit: Optional[int] = None) -> list[Identity]:
        """Identities whose name or identifiers contain the query."""
        self.ensure_loaded()
        with self._lock:
            results = self.store.search(query)
        return results[:limit] if limit else results

    def stats(self) -> dict:
        """Graph statistics plus the load report."""
        self.ensure_loaded()
        with self._lock:
            return {
                "identities": self.store.stats(),
                "load": self._report.to_dict(),
            }

    def resolve_contact(self, query: str) -> ContactResolution:
        """
        Resolve a name, phone number, email or canonical key to people.

        Phone/email-looking queries are matched directly (exact, then fuzzy);
        everything else, and identifiers without a match, fall back to a
        substring search.
        """
        query = (query or "").strip()
        if not query:
            return ContactResolution(
                query=query,
                status=NO_MATCH,
                clarification="Please provide a name, phone number, or email.",
            )

        self.ensure_loaded()
        with self._lock:
            if is_key(query) or is_likely_phone(query) or is_likely_email(query):
                match = self.store.match(query)
                if match is not None:
                    return ContactResolution(
                        query=query,
                        status=SINGLE_MATCH,
                        matches=[ContactMatch(match.identity, match.score)],
                    )

            results = self.store.search(query)

        if len(results) == 1:
            return ContactResolution(
                query=query,
                status=SINGLE_MATCH,
                matches=[ContactMatch(results[0], NAME_MATCH_CONFIDENCE)],
            )

        if len(results) > 1:
            return ContactResolution(
                query=query,
                status=MULTIPLE_MATCHES,
                matches=[ContactMatch(i, AMBIGUOUS_MATCH_CONFIDENCE) for i in results],
                clarification=(
                    f'Found {len(results)} contacts matching "{query}". '
                    "Please specify more precisely which one you mean."
                ),
            )

        return ContactResolution(
            query=query,
            status=NO_MATCH,
            clarification=(
                f'Could not find a contact matching "{query}". '
                "Please try a full name, phone number, or email."
            ),
        )

    def get_conversations(
        self,
        contact_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        conversation_limit: Optional[int] = None,
        message_limit: Optional[int] = None,
    ) -> AssemblyResult:
        """
        Recent conversations with a person.

        Args:
            contact_id: Canonical key (e.g. "phone:+12125551234") or raw identifier
            start: Only messages at or after this time
            end: Only messages at or before this time
            conversation_limit: Maximum conversations (engine default if None)
            message_limit: Maximum messages per conversation (engine default if None)
        """
        if not contact_id or not contact_id.strip():
            return AssemblyResult(detail="A contact id is required.")

        if self.message_source is None:
            return AssemblyResult(detail="No message source is configured.", degraded=True)

        self.ensure_loaded()
        with self._lock:
            identity = self.store.find(contact_id)
            return self.assembler.assemble(
                identity if identity is not None else contact_id,
                conversation_limit=conversation_limit or self.conversation_limit,
                message_limit=message_limit or self.message_limit,
                date_range=DateRange(start=start, end=end),
            )

    def _contact_handle_ids(self, contact_id: str) -> list[int]:
        target = self.assembler.resolve_target(contact_id)
        return self.message_source.lookup_handles(target.handle_values)

    def count(
        self,
        entity: CountEntity,
        contact_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> CountResult:
        """
        Count messages, conversations, contacts or handles.

        Contact-scoped counts need a contact_id. Counts that read the
        message database report ``degraded`` when it is unavailable.
        """
        entity = CountEntity(entity)
        self.ensure_loaded()

        date_range = DateRange(start=start, end=end)
        contact_name = None
        with self._lock:
            if contact_id:
                identity = self.store.find(contact_id)
                contact_name = identity.display_name if identity else None

            result = CountResult(
                entity=entity,
                filters={
                    "contact_id": contact_id,
                    "contact_name": contact_name,
                    "start": date_range.start.isoformat() if date_range.start else None,
                    "end": date_range.end.isoformat() if date_range.end else None,
                },
            )
            label = f" for {contact_name}" if contact_name else ""
            window = date_range.describe()

            if entity == CountEntity.CONTACT_FILE_CONTACTS:
                result.count = self.store.stats()["by_source"].get(SOURCE_CONTACT_FILE, 0)
                result.details = f"Found {result.count} contacts from the contact file."
                result.degraded = SOURCE_CONTACT_FILE in self._report.errors
                return result

            if entity == CountEntity.MESSAGE_DB_HANDLES:
                result.count = self.store.stats()["by_source"].get(SOURCE_MESSAGE_DB, 0)
                result.details = f"Found {result.count} handles in the message database."
                result.degraded = SOURCE_MESSAGE_DB in self._report.errors
                return result

            contact_scoped = entity in (
                CountEntity.MESSAGES_FOR_CONTACT,
                CountEntity.CONVERSATIONS_WITH_CONTACT,
            )
            if contact_scoped and not contact_id:
                result.details = f"contact_id is required for {entity.value} count."
                return result

            if self.message_source is None:
                result.details = "No message source is configured."
                result.degraded = True
                return result

            try:
                if entity == CountEntity.MESSAGES_TOTAL:
                    result.count = self.message_source.count_messages(None, date_range.start, date_range.end)
                    result.details = f"Found {result.count} total messages{window}."
                elif entity == CountEntity.MESSAGES_FOR_CONTACT:
                    handle_ids = self._contact_handle_ids(contact_id)
                    result.count = self.message_source.count_messages(handle_ids, date_range.start, date_range.end)
                    result.details = f"Found {result.count} messages{label}{window}."
                else:
                    handle_ids = self._contact_handle_ids(contact_id)
                    result.count = self.message_source.count_threads(handle_ids, date_range.start, date_range.end)
                    result.details = f"Found {result.count} conversations{label}{window}."
            except SourceUnavailableError as e:
                logger.error(f"Cannot count {entity.value}: {e}")
                result.count = 0
                result.details = user_friendly_error(e)
                result.degraded = True

            return result

    def provenance(self, contact_id: str) -> Optional[str]:
        """Which sources contributed to a person ("merged" for both)."""
        identity = self.find(contact_id)
        return identity.provenance if identity else None


def create_engine(settings) -> MessageEngine:
    """Build an engine over the sources named in settings."""
    from api.services.chat_db import ChatDatabase
    from api.services.contacts_file import VCardContactSource

    return MessageEngine(
        contact_source=VCardContactSource(Path(settings.contacts_vcf_path).expanduser()),
        message_source=ChatDatabase(
            Path(settings.chat_db_path).expanduser(),
            extract_attributed_body=settings.extract_attributed_body,
        ),
        self_display_name=settings.self_display_name,
        default_country_code=settings.default_country_code,
        conversation_limit=settings.conversation_limit,
        message_limit=settings.message_limit,
    )
