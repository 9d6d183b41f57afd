"""
Identity Store for Threadline.

In-memory identity graph built from two sources:
- the vCard contact export (names, phones, emails)
- the Messages handle table (phones/emails seen in conversations, no names)

Every identifier key maps to exactly one Identity. Identifiers that do not
match exactly are reconciled with a fuzzy phone-number comparison (last 10
or last 7 digits) before a new Identity is created.

The store is rebuilt per process; nothing is persisted.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from api.services.identifiers import (
    DEFAULT_COUNTRY_CODE,
    EMAIL,
    FUZZY_MATCH_THRESHOLD,
    PHONE,
    Identifier,
    create_identifier,
    is_key,
    key_value,
    score_identifier_match,
)

logger = logging.getLogger(__name__)

# Source tags
SOURCE_CONTACT_FILE = "contact-file"
SOURCE_MESSAGE_DB = "message-db"

UNKNOWN_NAME = "Unknown"


class IdentityIndexError(RuntimeError):
    """The reverse index points at an identity that does not exist."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    """
    Merged record for one real-world person.

    ``key`` is the canonical key of the identifier that created the record
    and never changes afterwards.
    """

    key: str
    display_name: str = UNKNOWN_NAME
    identifiers: list[Identifier] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_utcnow)

    def has_identifier(self, key: str) -> bool:
        """Check whether an identifier key is already attached."""
        return any(i.key == key for i in self.identifiers)

    def has_type(self, kind: str) -> bool:
        """Check whether at least one identifier has the given type."""
        return any(i.type == kind for i in self.identifiers)

    @property
    def raw_identifiers(self) -> list[str]:
        return [i.raw for i in self.identifiers]

    @property
    def provenance(self) -> str:
        """"merged" when both sources contributed, otherwise the single source."""
        if SOURCE_CONTACT_FILE in self.sources and SOURCE_MESSAGE_DB in self.sources:
            return "merged"
        return self.sources[0] if self.sources else "unknown"

    def to_dict(self) -> dict:
        """Convert to dict for API response."""
        return {
            "id": self.key,
            "name": self.display_name,
            "identifiers": [
                {"raw": i.raw, "type": i.type, "normalized": i.normalized, "key": i.key}
                for i in self.identifiers
            ],
            "sources": list(self.sources),
            "source": self.provenance,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class IdentityMatch:
    """An identity found for a raw identifier, with the score that found it."""

    identity: Identity
    score: float  # 1.0 for an exact key match

    @property
    def is_exact(self) -> bool:
        return self.score >= 1.0


class IdentityStore:
    """
    Identity graph keyed by canonical identifier keys.

    Provides:
    - upsert with in-place merging and fuzzy reconciliation
    - exact-then-fuzzy lookup
    - substring search over names and identifiers
    - aggregate statistics

    Not thread-safe on its own; the owning engine serializes writers.
    """

    def __init__(self, default_country_code: str = DEFAULT_COUNTRY_CODE):
        """
        Initialize an empty store.

        Args:
            default_country_code: Country code applied to phone numbers
                that carry none
        """
        self.default_country_code = default_country_code
        self._identities: dict[str, Identity] = {}  # primary key -> Identity
        self._identifier_index: dict[str, str] = {}  # identifier key -> primary key

    def __len__(self) -> int:
        return len(self._identities)

    def _to_identifier(self, raw: str) -> Identifier:
        """Build an Identifier, accepting canonical keys as well as raw values."""
        if is_key(raw):
            raw = key_value(raw)
        return create_identifier(raw, self.default_country_code)

    def _owner(self, identifier_key: str) -> Optional[Identity]:
        primary_key = self._identifier_index.get(identifier_key)
        if primary_key is None:
            return None
        identity = self._identities.get(primary_key)
        if identity is None:
            raise IdentityIndexError(
                f"Identifier {identifier_key} is indexed to missing identity {primary_key}"
            )
        return identity

    def _best_fuzzy_match(self, identifier: Identifier) -> Optional[IdentityMatch]:
        """
        Score the identifier against every known identifier.

        The highest score wins if it clears FUZZY_MATCH_THRESHOLD. On equal
        scores the identity iterated first (insertion order) is kept.
        """
        best: Optional[IdentityMatch] = None
        best_score = 0.0

        for identity in self._identities.values():
            for existing in identity.identifiers:
                score = score_identifier_match(identifier, existing)
                if score > FUZZY_MATCH_THRESHOLD and score > best_score:
                    best_score = score
                    best = IdentityMatch(identity=identity, score=score)

        return best

    def _merge(
        self,
        identity: Identity,
        identifier: Identifier,
        display_name: str,
        source: str,
    ) -> Identity:
        if not identity.has_identifier(identifier.key):
            identity.identifiers.append(identifier)
            self._identifier_index[identifier.key] = identity.key

        # Name rule is evaluated before the incoming source is recorded
        upgrade_from_contact_file = (
            source == SOURCE_CONTACT_FILE and SOURCE_CONTACT_FILE not in identity.sources
        )
        replaces_placeholder = (
            identity.display_name == UNKNOWN_NAME and display_name != UNKNOWN_NAME
        )
        if upgrade_from_contact_file or replaces_placeholder:
            identity.display_name = display_name

        if source not in identity.sources:
            identity.sources.append(source)

        identity.updated_at = _utcnow()
        return identity

    def _create(self, identifier: Identifier, display_name: str, source: str) -> Identity:
        identity = Identity(
            key=identifier.key,
            display_name=display_name,
            identifiers=[identifier],
            sources=[source],
        )
        self._identities[identity.key] = identity
        self._identifier_index[identifier.key] = identity.key
        return identity

    def upsert(
        self,
        raw_identifier: str,
        display_name: str = UNKNOWN_NAME,
        source: str = "unknown",
    ) -> Optional[Identity]:
        """
        Add an identifier, merging into an existing identity when possible.

        Args:
            raw_identifier: Phone number or email as found in the source
            display_name: Name from the source ("Unknown" when it has none)
            source: Source tag, e.g. SOURCE_CONTACT_FILE

        Returns:
            The created or updated Identity, or None for an empty identifier
        """
        if not raw_identifier or not raw_identifier.strip():
            return None

        identifier = self._to_identifier(raw_identifier)
        display_name = (display_name or "").strip() or UNKNOWN_NAME

        existing = self._owner(identifier.key)
        if existing is not None:
            return self._merge(existing, identifier, display_name, source)

        match = self._best_fuzzy_match(identifier)
        if match is not None:
            logger.debug(
                f"Fuzzy-merged {identifier.key} into {match.identity.key} (score {match.score})"
            )
            return self._merge(match.identity, identifier, display_name, source)

        return self._create(identifier, display_name, source)

    def match(self, raw_identifier: str) -> Optional[IdentityMatch]:
        """
        Look up an identity without modifying the graph.

        Exact key lookup first, then fuzzy reconciliation.
        """
        if not raw_identifier or not raw_identifier.strip():
            return None

        identifier = self._to_identifier(raw_identifier)
        existing = self._owner(identifier.key)
        if existing is not None:
            return IdentityMatch(identity=existing, score=1.0)

        return self._best_fuzzy_match(identifier)

    def find(self, raw_identifier: str) -> Optional[Identity]:
        """Get the identity owning a raw identifier or canonical key, or None."""
        match = self.match(raw_identifier)
        return match.identity if match else None

    def get(self, key: str) -> Optional[Identity]:
        """Get an identity by its primary key."""
        return self._identities.get(key)

    def all(self) -> list[Identity]:
        """All identities in insertion order."""
        return list(self._identities.values())

    def search(self, query: str) -> list[Identity]:
        """
        Case-insensitive substring search.

        Matches display names and every raw or normalized identifier value.
        Results keep identity insertion order.
        """
        query_lower = (query or "").lower()
        results = []

        for identity in self._identities.values():
            if query_lower in identity.display_name.lower():
                results.append(identity)
                continue

            if any(
                query_lower in i.raw.lower() or query_lower in i.normalized.lower()
                for i in identity.identifiers
            ):
                results.append(identity)

        return results

    def stats(self) -> dict:
        """Aggregate counts about the graph."""
        by_source: dict[str, int] = {}
        phone_identities = 0
        email_identities = 0

        for identity in self._identities.values():
            if identity.has_type(PHONE):
                phone_identities += 1
            if identity.has_type(EMAIL):
                email_identities += 1
            for source in identity.sources:
                by_source[source] = by_source.get(source, 0) + 1

        return {
            "total_identities": len(self._identities),
            "phone_identities": phone_identities,
            "email_identities": email_identities,
            "by_source": by_source,
            "total_identifiers_indexed": len(self._identifier_index),
        }

    def clear(self) -> None:
        """Drop every identity and index entry."""
        self._identities.clear()
        self._identifier_index.clear()
