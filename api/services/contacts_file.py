"""
vCard contact export adapter for Threadline.

Reads a .vcf export (e.g. from Contacts.app "Export vCard") and feeds every
phone number and email address, with the card's name, into the identity
store as contact-file identifiers.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

import vobject

from api.services.identity_store import SOURCE_CONTACT_FILE, UNKNOWN_NAME, IdentityStore
from api.services.resilience import ContactSourceUnavailable

logger = logging.getLogger(__name__)


@dataclass
class ContactCard:
    """Names and identifiers of one vCard."""

    display_name: str = UNKNOWN_NAME
    phones: list[str] = field(default_factory=list)
    emails: list[str] = field(default_factory=list)

    @property
    def identifiers(self) -> list[str]:
        return self.phones + self.emails


def _name_part(value) -> str:
    # vobject returns a list when an N component has comma-separated values
    if isinstance(value, (list, tuple)):
        return " ".join(str(v).strip() for v in value if v and str(v).strip())
    return str(value or "").strip()


def _card_name(card) -> str:
    """FN first, then a name assembled from N, then the placeholder."""
    fn = card.contents.get("fn")
    if fn and str(fn[0].value).strip():
        return str(fn[0].value).strip()

    n = card.contents.get("n")
    if n:
        name = n[0].value
        parts = [getattr(name, "given", ""), getattr(name, "family", "")]
        joined = " ".join(p for p in map(_name_part, parts) if p)
        if joined:
            return joined

    return UNKNOWN_NAME


def _values(card, prop: str) -> list[str]:
    values = []
    for line in card.contents.get(prop, []):
        value = str(line.value or "").strip()
        if value:
            values.append(value)
    return values


class VCardContactSource:
    """Contact source backed by a .vcf file."""

    def __init__(self, path: str):
        """
        Args:
            path: Path to the vCard export
        """
        self.path = Path(path)

    def is_available(self) -> bool:
        return self.path.exists()

    def _read_text(self) -> str:
        if not self.path.exists():
            raise ContactSourceUnavailable(f"Contacts file not found at {self.path}")
        try:
            return self.path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise ContactSourceUnavailable(f"Cannot read {self.path}: {e}") from e

    def read_cards(self) -> Iterator[ContactCard]:
        """
        Parse every vCard in the file.

        Raises:
            ContactSourceUnavailable: Missing file or content vobject cannot parse
        """
        content = self._read_text()
        try:
            for card in vobject.readComponents(content):
                if card.name != "VCARD":
                    continue
                yield ContactCard(
                    display_name=_card_name(card),
                    phones=_values(card, "tel"),
                    emails=_values(card, "email"),
                )
        except vobject.base.ParseError as e:
            raise ContactSourceUnavailable(f"Cannot parse {self.path}: {e}") from e

    def load_into(self, store: IdentityStore, limit: Optional[int] = None) -> int:
        """
        Upsert every phone and email of every card.

        Args:
            store: Identity store to populate
            limit: Maximum cards to read (for testing)

        Returns:
            Number of identifiers added
        """
        count = 0
        cards = 0
        for card in self.read_cards():
            if limit is not None and cards >= limit:
                break
            cards += 1
            for raw in card.identifiers:
                store.upsert(raw, card.display_name, SOURCE_CONTACT_FILE)
                count += 1

        logger.info(f"Loaded {count} identifiers from {cards} contacts in {self.path}")
        return count
