"""
Threadline Services Package.

Identity resolution and conversation assembly over a contact export and a
Messages database.

Example:
    from api.services import MessageEngine, create_engine

Key service modules:
- identifiers: phone/email classification, normalization and fuzzy scoring
- identity_store: the identity graph
- contacts_file: vCard contact source
- chat_db: Messages database source
- conversation_assembler: threads to conversations
- message_engine: lazy-loading facade used by the API
"""

from api.services.identifiers import (
    Identifier,
    create_identifier,
    compare_identifiers,
)

from api.services.identity_store import (
    Identity,
    IdentityStore,
    SOURCE_CONTACT_FILE,
    SOURCE_MESSAGE_DB,
)

from api.services.message_engine import (
    CountEntity,
    MessageEngine,
    create_engine,
)

from api.services.resilience import (
    SourceUnavailableError,
    ContactSourceUnavailable,
    MessageSourceUnavailable,
)


__all__ = [
    # Identifiers
    "Identifier",
    "create_identifier",
    "compare_identifiers",
    # Identity graph
    "Identity",
    "IdentityStore",
    "SOURCE_CONTACT_FILE",
    "SOURCE_MESSAGE_DB",
    # Engine
    "CountEntity",
    "MessageEngine",
    "create_engine",
    # Errors
    "SourceUnavailableError",
    "ContactSourceUnavailable",
    "MessageSourceUnavailable",
]
