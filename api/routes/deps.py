"""
Shared route dependencies.
"""
from typing import Optional

from fastapi import HTTPException, Request

from api.services.message_engine import MessageEngine
from api.utils.datetime_utils import parse_datetime


def get_engine(request: Request) -> MessageEngine:
    """The engine built by the app lifespan."""
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Message engine is not initialized")
    return engine


def parse_date_param(name: str, value: Optional[str], end_of_day: bool = False):
    """Parse a date query parameter, raising 400 on bad input."""
    try:
        return parse_datetime(value, end_of_day=end_of_day)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid {name} date: {value!r}. Use YYYY-MM-DD or ISO 8601."
        )
