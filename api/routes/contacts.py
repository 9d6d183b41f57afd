"""
Contact API endpoints for Threadline.

Resolves names, phone numbers and emails to identities in the graph built
from the contact export and the Messages handle table.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.routes.deps import get_engine
from api.services.identity_store import Identity
from api.services.message_engine import ContactMatch, MessageEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contacts", tags=["contacts"])


class IdentifierResponse(BaseModel):
    """One phone number or email of a contact."""
    raw: str
    type: str
    normalized: str
    key: str


class ContactResponse(BaseModel):
    """Response model for a resolved contact."""
    id: str
    name: str
    identifiers: list[IdentifierResponse]
    sources: list[str]
    source: str
    confidence: Optional[float] = None


class ResolveResponse(BaseModel):
    """Response for the resolve endpoint."""
    query: str
    status: str
    contacts: list[ContactResponse]
    clarification: Optional[str] = None


class SearchResponse(BaseModel):
    """Response for the search endpoint."""
    contacts: list[ContactResponse]
    count: int
    query: str


class LoadResponse(BaseModel):
    """Outcome of building the identity graph."""
    loaded: bool
    contact_identifiers: int
    handles: int
    errors: dict[str, str]
    degraded: bool
    loaded_at: Optional[str] = None


class StatsResponse(BaseModel):
    """Response for the stats endpoint."""
    total_identities: int
    phone_identities: int
    email_identities: int
    by_source: dict[str, int]
    total_identifiers_indexed: int
    load: LoadResponse


def _identity_to_response(identity: Identity, confidence: Optional[float] = None) -> ContactResponse:
    data = identity.to_dict()
    return ContactResponse(
        id=data["id"],
        name=data["name"],
        identifiers=[IdentifierResponse(**i) for i in data["identifiers"]],
        sources=data["sources"],
        source=data["source"],
        confidence=confidence,
    )


def _match_to_response(match: ContactMatch) -> ContactResponse:
    return _identity_to_response(match.identity, match.confidence)


@router.get("/resolve", response_model=ResolveResponse)
async def resolve_contact(
    q: str = Query(..., min_length=1, description="Name, phone number, email, or contact id"),
    engine: MessageEngine = Depends(get_engine),
):
    """
    **Resolve a person.**

    Phone numbers and emails are matched exactly first, then by the last 10
    or 7 digits. Anything else is a case-insensitive substring search over
    names and identifiers.

    `status` is `single`, `multiple` (ask which one was meant, see
    `clarification`) or `none`.
    """
    resolution = engine.resolve_contact(q)
    return ResolveResponse(
        query=resolution.query,
        status=resolution.status,
        contacts=[_match_to_response(m) for m in resolution.matches],
        clarification=resolution.clarification,
    )


@router.get("/search", response_model=SearchResponse)
async def search_contacts(
    q: str = Query(..., min_length=1, description="Substring of a name, phone number or email"),
    limit: int = Query(default=20, ge=1, le=200, description="Maximum results to return"),
    engine: MessageEngine = Depends(get_engine),
):
    """Search contacts by name or identifier, in load order."""
    results = engine.search(q, limit=limit)
    return SearchResponse(
        contacts=[_identity_to_response(i) for i in results],
        count=len(results),
        query=q,
    )


@router.get("/stats", response_model=StatsResponse)
async def contact_stats(engine: MessageEngine = Depends(get_engine)):
    """Identity graph statistics and the outcome of the last load."""
    stats = engine.stats()
    return StatsResponse(**stats["identities"], load=LoadResponse(**stats["load"]))


@router.post("/reload", response_model=LoadResponse)
async def reload_contacts(engine: MessageEngine = Depends(get_engine)):
    """Rebuild the identity graph from both sources."""
    report = engine.reload()
    if report.degraded:
        logger.warning(f"Reload finished with unavailable sources: {', '.join(report.errors)}")
    return LoadResponse(**report.to_dict())
