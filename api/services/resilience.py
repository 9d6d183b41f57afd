"""
Resilience utilities for Threadline.

Provides:
- Typed errors for unavailable data sources (contact file, chat.db)
- Retry logic for transient SQLite lock contention
- User-facing descriptions of source failures
"""
import functools
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SourceUnavailableError(Exception):
    """Raised when a data source cannot be read."""

    def __init__(self, source: str, message: str):
        self.source = source
        self.message = message
        super().__init__(f"{source}: {message}")


class ContactSourceUnavailable(SourceUnavailableError):
    """The contact export is missing or unreadable."""

    def __init__(self, message: str):
        super().__init__("contact file", message)


class MessageSourceUnavailable(SourceUnavailableError):
    """The Messages database is missing, locked or unreadable."""

    def __init__(self, message: str):
        super().__init__("message database", message)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.2  # seconds
    max_delay: float = 2.0  # seconds
    exponential_base: float = 2.0
    retryable: Callable[[Exception], bool] = lambda e: True


def is_database_locked(error: Exception) -> bool:
    """Messages.app holds write locks on chat.db while syncing."""
    return isinstance(error, sqlite3.OperationalError) and "locked" in str(error).lower()


CHAT_DB_RETRY = RetryConfig(
    max_retries=3,
    base_delay=0.2,
    max_delay=2.0,
    retryable=is_database_locked,
)


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for sync functions with retry logic.

    Only exceptions accepted by ``config.retryable`` are retried; anything
    else propagates immediately.
    """
    cfg = config or CHAT_DB_RETRY

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not cfg.retryable(e) or attempt >= cfg.max_retries:
                        if attempt:
                            logger.error(
                                f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                            )
                        raise

                    delay = min(
                        cfg.base_delay * (cfg.exponential_base ** attempt),
                        cfg.max_delay
                    )
                    attempt += 1
                    logger.warning(
                        f"Retry {attempt}/{cfg.max_retries} for {func.__name__}: {e}. "
                        f"Waiting {delay:.1f}s..."
                    )

                    if on_retry:
                        on_retry(attempt, e)

                    time.sleep(delay)

        return wrapper
    return decorator


def user_friendly_error(error: Exception) -> str:
    """
    Convert a source exception to a message suitable for API callers.

    Args:
        error: The exception to convert

    Returns:
        User-friendly error message
    """
    if isinstance(error, SourceUnavailableError):
        return f"The {error.source} is currently unavailable. {error.message}"

    error_str = str(error).lower()

    if "locked" in error_str:
        return "The message database is busy. Please try again in a moment."

    if "unable to open" in error_str or "permission" in error_str:
        return (
            "The message database could not be opened. "
            "Grant Full Disk Access to the process reading chat.db."
        )

    if "no such table" in error_str:
        return "The message database does not have the expected Messages layout."

    return f"An error occurred: {type(error).__name__}."
