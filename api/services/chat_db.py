"""
Messages database (chat.db) adapter for Threadline.

Reads handles, threads and message rows from a macOS Messages database
(or a copy of it) in read-only mode. Rows are handed to the identity store
and the conversation assembler untouched apart from text recovery.

Privacy note: ~/Library/Messages/chat.db requires Full Disk Access.
"""
import logging
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Sequence

from api.services.identity_store import SOURCE_MESSAGE_DB, UNKNOWN_NAME, IdentityStore
from api.services.resilience import CHAT_DB_RETRY, MessageSourceUnavailable, retry_sync

logger = logging.getLogger(__name__)

# Apple's epoch starts at 2001-01-01 00:00:00 UTC
APPLE_EPOCH_OFFSET = 978307200  # Seconds from Unix epoch to Apple epoch
NANOS_PER_SECOND = 1_000_000_000

# Databases from macOS 10.13 on store nanoseconds; older ones store seconds.
# Any value above this is read as nanoseconds.
NANOSECOND_THRESHOLD = 100_000_000_000

_ATTRIBUTED_BODY_NOISE = {
    "NSMutableAttributedString",
    "NSAttributedString",
    "NSMutableString",
    "NSString",
    "NSDictionary",
    "NSNumber",
    "NSArray",
    "NSObject",
    "NSValue",
    "NSFont",
    "NSParagraphStyle",
    "NSMutableParagraphStyle",
    "NSColor",
    "streamtyped",
}


def apple_timestamp_to_datetime(apple_ts: Optional[int]) -> Optional[datetime]:
    """
    Convert a chat.db ``date`` value to an aware UTC datetime.

    Args:
        apple_ts: Seconds or nanoseconds since 2001-01-01

    Returns:
        UTC datetime, or None for empty or out-of-range values
    """
    if not apple_ts:
        return None
    try:
        seconds = apple_ts / NANOS_PER_SECOND if abs(apple_ts) > NANOSECOND_THRESHOLD else apple_ts
        return datetime.fromtimestamp(seconds + APPLE_EPOCH_OFFSET, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        logger.warning(f"Unreadable Apple timestamp: {apple_ts!r}")
        return None


def datetime_to_apple_timestamp(dt: datetime, nanoseconds: bool = True) -> int:
    """
    Convert a datetime to a chat.db ``date`` value.

    Naive datetimes are treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    apple_seconds = dt.timestamp() - APPLE_EPOCH_OFFSET
    if nanoseconds:
        return int(apple_seconds * NANOS_PER_SECOND)
    return int(apple_seconds)


def extract_text_from_attributed_body(blob: Optional[bytes]) -> Optional[str]:
    """
    Recover message text from an NSAttributedString typedstream blob.

    Recent macOS versions leave ``message.text`` empty and keep the text in
    ``attributedBody``. The longest printable run that is not archiver
    metadata is taken as the message.
    """
    if not blob:
        return None

    decoded = bytes(blob).decode("utf-8", errors="ignore")
    runs = re.findall(r"[\x20-\x7e\u00a0-\uffff]{2,}", decoded)

    candidates = [
        run for run in runs
        if run not in _ATTRIBUTED_BODY_NOISE
        and not run.startswith(("$", "__kIM", "NS"))
    ]
    if not candidates:
        return None
    return max(candidates, key=len)


@dataclass
class RawMessageRow:
    """One row of the message table, as the source stores it."""

    message_id: int  # message.ROWID, monotonic
    text: Optional[str]
    timestamp: Optional[int]  # Apple epoch, source units
    is_from_me: bool
    handle: Optional[str]  # Originating phone/email; None for most self-sent rows
    thread_id: int
    has_attachments: bool = False

    @property
    def sent_at(self) -> Optional[datetime]:
        return apple_timestamp_to_datetime(self.timestamp)


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class ChatDatabase:
    """
    Read-only access to a Messages database.

    Provides:
    - Handle listing for identity graph construction
    - Thread selection, participants and message rows for assembly
    - Message and thread counts
    """

    # Source database path (macOS Messages)
    DEFAULT_PATH = Path.home() / "Library" / "Messages" / "chat.db"

    def __init__(self, path: Optional[str] = None, extract_attributed_body: bool = True):
        """
        Args:
            path: Path to chat.db (or a copy of it)
            extract_attributed_body: Recover text from attributedBody when
                the text column is empty
        """
        self.path = Path(path) if path else self.DEFAULT_PATH
        self.extract_attributed_body = extract_attributed_body

    def is_available(self) -> bool:
        return self.path.exists()

    @retry_sync(CHAT_DB_RETRY)
    def _fetch_all(self, sql: str, params: Sequence = ()) -> list[sqlite3.Row]:
        with closing(sqlite3.connect(f"file:{self.path}?mode=ro", uri=True)) as conn:
            conn.row_factory = sqlite3.Row
            return conn.execute(sql, list(params)).fetchall()

    def _query(self, sql: str, params: Sequence = ()) -> list[sqlite3.Row]:
        """Run a read query, mapping every failure to MessageSourceUnavailable."""
        if not self.path.exists():
            raise MessageSourceUnavailable(f"Messages database not found at {self.path}")

        try:
            return self._fetch_all(sql, params)
        except sqlite3.OperationalError as e:
            if "unable to open database" in str(e).lower():
                raise MessageSourceUnavailable(
                    f"Cannot open {self.path}. "
                    "Grant Full Disk Access to the process reading chat.db."
                ) from e
            raise MessageSourceUnavailable(str(e)) from e
        except sqlite3.DatabaseError as e:
            raise MessageSourceUnavailable(str(e)) from e

    def _uses_nanoseconds(self) -> bool:
        rows = self._query("SELECT MAX(date) AS latest FROM message")
        latest = rows[0]["latest"] if rows else None
        return latest is None or abs(latest) > NANOSECOND_THRESHOLD

    def _date_bounds(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> tuple[str, list]:
        if not start and not end:
            return "", []
        nanos = self._uses_nanoseconds()
        clause = ""
        params = []
        if start:
            clause += " AND m.date >= ?"
            params.append(datetime_to_apple_timestamp(start, nanoseconds=nanos))
        if end:
            clause += " AND m.date <= ?"
            params.append(datetime_to_apple_timestamp(end, nanoseconds=nanos))
        return clause, params

    def _text_clause(self) -> str:
        if self.extract_attributed_body:
            return " AND (m.text IS NOT NULL OR m.attributedBody IS NOT NULL)"
        return " AND m.text IS NOT NULL"

    # ------------------------------------------------------------------
    # Handles
    # ------------------------------------------------------------------

    def list_handles(self) -> list[str]:
        """
        Distinct handle identifiers in ROWID order.

        The same phone/email appears once per service (iMessage, SMS), so
        duplicates are collapsed.
        """
        rows = self._query("SELECT ROWID, id FROM handle ORDER BY ROWID")
        seen = set()
        handles = []
        for row in rows:
            value = row["id"]
            if value and value not in seen:
                seen.add(value)
                handles.append(value)
        return handles

    def load_into(self, store: IdentityStore) -> int:
        """
        Add every handle to the identity store as an unnamed identity.

        Returns:
            Number of handles loaded
        """
        handles = self.list_handles()
        for handle in handles:
            store.upsert(handle, UNKNOWN_NAME, SOURCE_MESSAGE_DB)
        logger.info(f"Loaded {len(handles)} handles from {self.path}")
        return len(handles)

    def lookup_handles(self, values: Sequence[str]) -> list[int]:
        """
        Handle ROWIDs whose identifier equals any of the values.

        Comparison is case-insensitive so mixed-case email handles match.
        """
        wanted = sorted({v.lower() for v in values if v})
        if not wanted:
            return []
        rows = self._query(
            f"SELECT ROWID FROM handle WHERE LOWER(id) IN ({_placeholders(wanted)}) ORDER BY ROWID",
            wanted,
        )
        return [row["ROWID"] for row in rows]

    # ------------------------------------------------------------------
    # Threads and messages
    # ------------------------------------------------------------------

    def _threads_for_handles_sql(self, handle_ids: Sequence[int]) -> tuple[str, list]:
        marks = _placeholders(handle_ids)
        sql = f"""
            SELECT chj.chat_id FROM chat_handle_join chj
            WHERE chj.handle_id IN ({marks})
            UNION
            SELECT cmj2.chat_id FROM chat_message_join cmj2
            JOIN message m2 ON m2.ROWID = cmj2.message_id
            WHERE m2.handle_id IN ({marks})
        """
        return sql, list(handle_ids) + list(handle_ids)

    def recent_thread_ids(self, handle_ids: Sequence[int], limit: int) -> list[int]:
        """
        Threads involving any of the handles, most recently active first.

        Args:
            handle_ids: Handle ROWIDs of one person
            limit: Maximum threads to return
        """
        if not handle_ids or limit <= 0:
            return []
        threads_sql, params = self._threads_for_handles_sql(handle_ids)
        rows = self._query(
            f"""
            SELECT cmj.chat_id AS chat_id, MAX(m.date) AS last_date
            FROM chat_message_join cmj
            JOIN message m ON m.ROWID = cmj.message_id
            WHERE cmj.chat_id IN ({threads_sql})
            GROUP BY cmj.chat_id
            ORDER BY last_date DESC, cmj.chat_id DESC
            LIMIT ?
            """,
            params + [limit],
        )
        return [row["chat_id"] for row in rows]

    def thread_participants(self, thread_id: int) -> list[str]:
        """Every handle identifier ever associated with a thread."""
        rows = self._query(
            """
            SELECT DISTINCT h.id AS handle
            FROM chat_handle_join chj
            JOIN handle h ON chj.handle_id = h.ROWID
            WHERE chj.chat_id = ?
            ORDER BY h.ROWID
            """,
            (thread_id,),
        )
        return [row["handle"] for row in rows if row["handle"]]

    def thread_messages(self, thread_id: int, limit: int) -> list[RawMessageRow]:
        """
        Most recent messages of a thread, newest first.

        Args:
            thread_id: chat.ROWID
            limit: Maximum messages to return
        """
        if limit <= 0:
            return []
        rows = self._query(
            """
            SELECT
                m.ROWID AS message_id,
                m.text AS text,
                m.attributedBody AS attributed_body,
                m.date AS date,
                m.is_from_me AS is_from_me,
                m.cache_has_attachments AS has_attachments,
                h.id AS handle
            FROM message m
            JOIN chat_message_join cmj ON m.ROWID = cmj.message_id
            LEFT JOIN handle h ON m.handle_id = h.ROWID
            WHERE cmj.chat_id = ?
            ORDER BY m.date DESC, m.ROWID DESC
            LIMIT ?
            """,
            (thread_id, limit),
        )

        messages = []
        for row in rows:
            text = row["text"]
            if not text and self.extract_attributed_body:
                text = extract_text_from_attributed_body(row["attributed_body"])
            messages.append(RawMessageRow(
                message_id=row["message_id"],
                text=text if text else None,
                timestamp=row["date"],
                is_from_me=bool(row["is_from_me"]),
                handle=row["handle"],
                thread_id=thread_id,
                has_attachments=bool(row["has_attachments"]),
            ))
        return messages

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def count_messages(
        self,
        handle_ids: Optional[Sequence[int]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """
        Count text-bearing messages.

        With handle_ids, only messages in threads involving those handles
        are counted (both directions). Without, the whole database is.
        """
        sql = "SELECT COUNT(DISTINCT m.ROWID) AS n FROM message m"
        params: list = []
        where = " WHERE 1=1"

        if handle_ids is not None:
            if not handle_ids:
                return 0
            threads_sql, thread_params = self._threads_for_handles_sql(handle_ids)
            sql += " JOIN chat_message_join cmj ON cmj.message_id = m.ROWID"
            where += f" AND cmj.chat_id IN ({threads_sql})"
            params.extend(thread_params)

        where += self._text_clause()
        date_clause, date_params = self._date_bounds(start, end)
        where += date_clause
        params.extend(date_params)

        rows = self._query(sql + where, params)
        return rows[0]["n"] if rows else 0

    def count_threads(
        self,
        handle_ids: Sequence[int],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> int:
        """Count threads involving the handles with activity in the range."""
        if not handle_ids:
            return 0
        threads_sql, params = self._threads_for_handles_sql(handle_ids)
        date_clause, date_params = self._date_bounds(start, end)
        rows = self._query(
            f"""
            SELECT COUNT(DISTINCT cmj.chat_id) AS n
            FROM chat_message_join cmj
            JOIN message m ON m.ROWID = cmj.message_id
            WHERE cmj.chat_id IN ({threads_sql}){date_clause}
            """,
            params + date_params,
        )
        return rows[0]["n"] if rows else 0
