"""SQLite-backed issue mirror — connection management, schema init, and CRUD.

Holds four kinds of state:

- ``issues``: one denormalized record per Linear issue, keyed by issue id
- ``chat_issues``: which issue ids were created from which chat
- ``chat_history``: a bounded, time-expiring window of recent messages per chat
- ``pending_edits``: a per-chat "next reply is the new value" marker

All statements use parameterized queries. The schema is created with
CREATE TABLE IF NOT EXISTS, so initialization is idempotent.
"""

import json
import logging
import sqlite3
import time
from datetime import UTC, datetime
from pathlib import Path

from src.config import get_settings
from src.memory.models import HistoryEntry, IssueComment, IssueRecord, PendingEdit

logger = logging.getLogger(__name__)

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS issues (
    issue_id     TEXT PRIMARY KEY,
    chat_id      INTEGER NOT NULL,
    requester    TEXT DEFAULT '',
    team         TEXT DEFAULT '',
    ticket_ref   TEXT NOT NULL,
    title        TEXT DEFAULT '',
    description  TEXT DEFAULT '',
    status       TEXT DEFAULT '',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    comments     TEXT DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_issues_ref ON issues(ticket_ref);

CREATE TABLE IF NOT EXISTS chat_issues (
    chat_id   INTEGER NOT NULL,
    issue_id  TEXT NOT NULL,
    added_at  REAL NOT NULL,
    PRIMARY KEY (chat_id, issue_id)
);

CREATE TABLE IF NOT EXISTS chat_history (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id  INTEGER NOT NULL,
    sender   TEXT NOT NULL,
    text     TEXT NOT NULL,
    sent_at  REAL NOT NULL,
    expires_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_history_chat ON chat_history(chat_id, id);

CREATE TABLE IF NOT EXISTS pending_edits (
    chat_id     INTEGER PRIMARY KEY,
    field       TEXT NOT NULL,
    ticket_ref  TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def get_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode.

    Args:
        db_path: Explicit path to the database file. If None, reads from settings.
                 Pass ":memory:" for in-memory databases (tests).

    Raises:
        ValueError: If no database path is configured.
    """
    if db_path is None:
        db_path = get_settings().issue_db_path
    if not db_path:
        msg = "Issue store not configured (ISSUE_DB_PATH is empty)"
        raise ValueError(msg)

    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def init_schema(conn: sqlite3.Connection) -> None:
    """Create tables and indexes if they don't exist (idempotent)."""
    conn.executescript(_SCHEMA_SQL)


def get_initialized_connection(db_path: str | None = None) -> sqlite3.Connection:
    """Get a connection with schema already initialized. Convenience wrapper."""
    conn = get_connection(db_path)
    init_schema(conn)
    return conn


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


def save_issue(conn: sqlite3.Connection, record: IssueRecord) -> None:
    """Insert or fully replace the record for ``record['issue_id']``."""
    conn.execute(
        """INSERT OR REPLACE INTO issues
           (issue_id, chat_id, requester, team, ticket_ref, title, description,
            status, created_at, updated_at, comments)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            record["issue_id"],
            record["chat_id"],
            record["requester"],
            record["team"],
            record["ticket_ref"],
            record["title"],
            record["description"],
            record["status"],
            record["created_at"],
            record["updated_at"],
            json.dumps(record["comments"]),
        ),
    )
    conn.commit()


def get_issue(conn: sqlite3.Connection, issue_id: str) -> IssueRecord | None:
    row = conn.execute("SELECT * FROM issues WHERE issue_id = ?", (issue_id,)).fetchone()
    if row is None:
        return None
    return _row_to_issue(row)


def update_issue_fields(
    conn: sqlite3.Connection,
    issue_id: str,
    *,
    title: str | None = None,
    description: str | None = None,
    status: str | None = None,
) -> bool:
    """Update only the given fields and bump ``updated_at``. Returns False if no such record."""
    updates: list[str] = []
    params: list[object] = []
    if title is not None:
        updates.append("title = ?")
        params.append(title)
    if description is not None:
        updates.append("description = ?")
        params.append(description)
    if status is not None:
        updates.append("status = ?")
        params.append(status)
    updates.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(issue_id)
    cursor = conn.execute(f"UPDATE issues SET {', '.join(updates)} WHERE issue_id = ?", params)
    conn.commit()
    return cursor.rowcount > 0


def delete_issue(conn: sqlite3.Connection, issue_id: str) -> None:
    conn.execute("DELETE FROM issues WHERE issue_id = ?", (issue_id,))
    conn.commit()


def _parse_comments(raw: str | None) -> list[IssueComment]:
    """Decode the stored comment list, dropping anything malformed."""
    if not raw:
        return []
    try:
        parsed: object = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(parsed, list):
        return []

    comments: list[IssueComment] = []
    for c in parsed:
        if (
            isinstance(c, dict)
            and isinstance(c.get("text"), str)
            and isinstance(c.get("author"), str)
            and isinstance(c.get("created_at"), str)
        ):
            comments.append(IssueComment(text=c["text"], author=c["author"], created_at=c["created_at"]))
    return comments


def _row_to_issue(row: sqlite3.Row) -> IssueRecord:
    return IssueRecord(
        issue_id=row["issue_id"],
        chat_id=row["chat_id"],
        requester=row["requester"] or "",
        team=row["team"] or "",
        ticket_ref=row["ticket_ref"],
        title=row["title"] or "",
        description=row["description"] or "",
        status=row["status"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        comments=_parse_comments(row["comments"]),
    )


# ---------------------------------------------------------------------------
# Chat → issue index
# ---------------------------------------------------------------------------


def add_chat_issue(conn: sqlite3.Connection, chat_id: int, issue_id: str) -> None:
    conn.execute(
        "INSERT OR IGNORE INTO chat_issues (chat_id, issue_id, added_at) VALUES (?, ?, ?)",
        (chat_id, issue_id, time.time()),
    )
    conn.commit()


def remove_chat_issue(conn: sqlite3.Connection, chat_id: int, issue_id: str) -> None:
    conn.execute("DELETE FROM chat_issues WHERE chat_id = ? AND issue_id = ?", (chat_id, issue_id))
    conn.commit()


def get_chat_issue_ids(conn: sqlite3.Connection, chat_id: int, limit: int | None = None) -> list[str]:
    """Issue ids created from this chat, most recent first."""
    sql = "SELECT issue_id FROM chat_issues WHERE chat_id = ? ORDER BY added_at DESC, rowid DESC"
    params: list[object] = [chat_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return [r["issue_id"] for r in conn.execute(sql, params).fetchall()]


def get_recent_tickets(conn: sqlite3.Connection, chat_id: int, limit: int = 5) -> list[str]:
    """``REF: title`` lines for the chat's most recent tickets that are still cached."""
    lines: list[str] = []
    for issue_id in get_chat_issue_ids(conn, chat_id, limit=limit):
        record = get_issue(conn, issue_id)
        if record and record["ticket_ref"]:
            lines.append(f"{record['ticket_ref']}: {record['title'] or 'No title'}")
    return lines


# ---------------------------------------------------------------------------
# Chat history window
# ---------------------------------------------------------------------------


def push_history(
    conn: sqlite3.Connection,
    chat_id: int,
    *,
    sender: str,
    text: str,
    sent_at: float,
    max_messages: int = 20,
    ttl_seconds: float = 3600,
    now: float | None = None,
) -> None:
    """Append a message and trim the chat's window to ``max_messages``."""
    now = time.time() if now is None else now
    conn.execute(
        "INSERT INTO chat_history (chat_id, sender, text, sent_at, expires_at) VALUES (?, ?, ?, ?, ?)",
        (chat_id, sender, text, sent_at, now + ttl_seconds),
    )
    conn.execute(
        """DELETE FROM chat_history WHERE chat_id = ? AND id NOT IN (
               SELECT id FROM chat_history WHERE chat_id = ? ORDER BY id DESC LIMIT ?
           )""",
        (chat_id, chat_id, max_messages),
    )
    conn.commit()


def get_history(conn: sqlite3.Connection, chat_id: int, now: float | None = None) -> list[HistoryEntry]:
    """Unexpired messages for a chat, oldest first."""
    now = time.time() if now is None else now
    rows = conn.execute(
        "SELECT sender, text, sent_at FROM chat_history WHERE chat_id = ? AND expires_at > ? ORDER BY id ASC",
        (chat_id, now),
    ).fetchall()
    return [HistoryEntry(sender=r["sender"], text=r["text"], sent_at=r["sent_at"]) for r in rows]


# ---------------------------------------------------------------------------
# Pending edits
# ---------------------------------------------------------------------------


def set_pending_edit(
    conn: sqlite3.Connection,
    chat_id: int,
    *,
    field: str,
    ticket_ref: str,
    ttl_seconds: float = 300,
    now: float | None = None,
) -> None:
    now = time.time() if now is None else now
    conn.execute(
        "INSERT OR REPLACE INTO pending_edits (chat_id, field, ticket_ref, expires_at) VALUES (?, ?, ?, ?)",
        (chat_id, field, ticket_ref, now + ttl_seconds),
    )
    conn.commit()


def pop_pending_edit(conn: sqlite3.Connection, chat_id: int, now: float | None = None) -> PendingEdit | None:
    """Remove and return the chat's pending edit, unless it has expired."""
    now = time.time() if now is None else now
    row = conn.execute("SELECT * FROM pending_edits WHERE chat_id = ?", (chat_id,)).fetchone()
    if row is None:
        return None
    conn.execute("DELETE FROM pending_edits WHERE chat_id = ?", (chat_id,))
    conn.commit()
    if row["expires_at"] <= now:
        return None
    return PendingEdit(
        chat_id=row["chat_id"],
        field=row["field"],
        ticket_ref=row["ticket_ref"],
        expires_at=row["expires_at"],
    )


# ---------------------------------------------------------------------------
# Housekeeping
# ---------------------------------------------------------------------------


def purge_expired(conn: sqlite3.Connection, now: float | None = None) -> int:
    """Delete expired history rows and pending edits. Returns rows removed."""
    now = time.time() if now is None else now
    removed = conn.execute("DELETE FROM chat_history WHERE expires_at <= ?", (now,)).rowcount
    removed += conn.execute("DELETE FROM pending_edits WHERE expires_at <= ?", (now,)).rowcount
    conn.commit()
    if removed:
        logger.debug("Purged %d expired history/pending-edit rows", removed)
    return removed
