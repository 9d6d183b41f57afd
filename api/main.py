"""
Threadline - Contact resolution and conversation retrieval over iMessage
FastAPI Application Entry Point

Run with:

    python -m api.main

or point uvicorn at ``api.main:app``. Sources are configured through
THREADLINE_* environment variables or .env (see config/settings.py).
"""
# Load environment variables from .env file first, before any imports
from dotenv import load_dotenv
load_dotenv()

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from api.routes import contacts_router, messages_router
from api.services.message_engine import create_engine
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the message engine on startup; the graph itself loads on first use."""
    if getattr(app.state, "engine", None) is None:
        app.state.engine = create_engine(settings)
        logger.info(
            f"Message engine ready (chat.db: {settings.chat_db_path}, "
            f"contacts: {settings.contacts_vcf_path})"
        )

    if not settings.chat_db_available:
        logger.warning(f"Messages database not found at {settings.chat_db_path}")
    if not settings.contacts_available:
        logger.warning(f"Contacts export not found at {settings.contacts_vcf_path}")

    yield

    app.state.engine.clear()
    logger.info("Message engine cleared")


app = FastAPI(
    title="Threadline",
    description="Resolve contacts across a vCard export and the Messages database, and retrieve recent conversations",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(contacts_router)
app.include_router(messages_router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert validation errors to 400 with clear messages."""
    errors = exc.errors()

    # Sanitize errors for JSON serialization (convert bytes to string)
    sanitized_errors = []
    for error in errors:
        sanitized = dict(error)
        if "input" in sanitized and isinstance(sanitized["input"], bytes):
            sanitized["input"] = sanitized["input"].decode("utf-8", errors="replace")
        sanitized.pop("ctx", None)
        sanitized_errors.append(sanitized)

    for error in errors:
        loc = list(error.get("loc", []))
        if loc[-1:] == ["q"]:
            return JSONResponse(
                status_code=400,
                content={"error": "Query cannot be empty", "detail": sanitized_errors}
            )
        if loc[-1:] == ["entity"]:
            return JSONResponse(
                status_code=400,
                content={"error": "Unknown count entity", "detail": sanitized_errors}
            )
    return JSONResponse(
        status_code=400,
        content={"error": "Validation error", "detail": sanitized_errors}
    )


@app.get("/health")
async def health_check():
    """Health check endpoint that reports which sources are readable."""
    checks = {
        "chat_db_available": settings.chat_db_available,
        "contacts_available": settings.contacts_available,
    }

    all_healthy = all(checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "service": "threadline",
        "checks": checks,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.host, port=settings.port)
