"""
Conversation and count endpoints for Threadline.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from api.routes.deps import get_engine, parse_date_param
from api.services.conversation_assembler import Conversation
from api.services.message_engine import CountEntity, MessageEngine

router = APIRouter(prefix="/api", tags=["messages"])


class ParticipantResponse(BaseModel):
    id: str
    name: str


class MessageResponse(BaseModel):
    """A message with its sender resolved to a name."""
    id: int
    sender: str
    at: Optional[str] = None
    text: str
    is_from_me: bool


class ConversationResponse(BaseModel):
    """One thread, messages oldest first."""
    conversation_id: str
    thread_id: int
    participants: list[ParticipantResponse]
    messages: list[MessageResponse]


class ConversationsResponse(BaseModel):
    """Response for the conversations endpoint."""
    contact_id: str
    conversations: list[ConversationResponse]
    message_count: int
    detail: str
    degraded: bool = False


class CountResponse(BaseModel):
    """Response for the counts endpoint."""
    entity: str
    count: int
    filters: dict
    details: str
    degraded: bool = False


def _conversation_to_response(conversation: Conversation) -> ConversationResponse:
    return ConversationResponse(
        conversation_id=conversation.conversation_id,
        thread_id=conversation.thread_id,
        participants=[ParticipantResponse(id=p.key, name=p.name) for p in conversation.participants],
        messages=[
            MessageResponse(
                id=m.message_id,
                sender=m.sender,
                at=m.sent_at.isoformat() if m.sent_at else None,
                text=m.text,
                is_from_me=m.is_from_me,
            )
            for m in conversation.messages
        ],
    )


@router.get("/conversations", response_model=ConversationsResponse)
async def get_conversations(
    contact_id: str = Query(..., min_length=1, description="Contact id (e.g. phone:+15551234567) or raw phone/email"),
    after: Optional[str] = Query(default=None, description="Messages on or after date (YYYY-MM-DD or ISO format)"),
    before: Optional[str] = Query(default=None, description="Messages on or before date (YYYY-MM-DD or ISO format)"),
    conversation_limit: Optional[int] = Query(default=None, ge=1, le=50, description="Maximum conversations (default THREADLINE_CONVERSATION_LIMIT)"),
    message_limit: Optional[int] = Query(default=None, ge=1, le=500, description="Maximum messages per conversation (default THREADLINE_MESSAGE_LIMIT)"),
    engine: MessageEngine = Depends(get_engine),
):
    """
    **Recent conversations with a person.**

    Selects the person's most recently active threads, then returns each
    thread's latest messages oldest first. Conversations are ordered by
    their newest message, so the most recent conversation comes last.

    Get a `contact_id` from `/api/contacts/resolve` first. If the Messages
    database cannot be read, the response is empty with `degraded: true`.
    """
    start = parse_date_param("after", after)
    end = parse_date_param("before", before, end_of_day=True)

    result = engine.get_conversations(
        contact_id,
        start=start,
        end=end,
        conversation_limit=conversation_limit,
        message_limit=message_limit,
    )
    return ConversationsResponse(
        contact_id=contact_id,
        conversations=[_conversation_to_response(c) for c in result.conversations],
        message_count=result.message_count,
        detail=result.detail,
        degraded=result.degraded,
    )


@router.get("/counts/{entity}", response_model=CountResponse)
async def get_count(
    entity: CountEntity,
    contact_id: Optional[str] = Query(default=None, description="Contact id for contact-scoped counts"),
    after: Optional[str] = Query(default=None, description="Count from date (YYYY-MM-DD or ISO format)"),
    before: Optional[str] = Query(default=None, description="Count until date (YYYY-MM-DD or ISO format)"),
    engine: MessageEngine = Depends(get_engine),
):
    """
    **Count messages, conversations, contacts or handles.**

    Entities: `messages_for_contact` and `conversations_with_contact` need a
    `contact_id`; `messages_total`, `contact_file_contacts` and
    `message_db_handles` do not.
    """
    start = parse_date_param("after", after)
    end = parse_date_param("before", before, end_of_day=True)

    result = engine.count(entity, contact_id=contact_id, start=start, end=end)
    return CountResponse(**result.to_dict())
