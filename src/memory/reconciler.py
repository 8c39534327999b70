"""Webhook reconciliation for locally mirrored issues.

Linear pushes status changes and new comments to the webhook endpoint. The
reconciler merges them into the cached :class:`IssueRecord` and posts one
notification to the chat that created the ticket. Repeated deliveries of the
same status are absorbed using the last status notified per issue, and a
comment already stored on the record is not appended or announced twice.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from src.bot.formatting import format_issue_update
from src.memory.models import IssueComment, IssueRecord
from src.memory.store import add_chat_issue, get_issue, save_issue, update_issue_fields, utc_now_iso
from src.observability.metrics import WEBHOOK_EVENTS_TOTAL

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_message(self, chat_id: int, text: str) -> None: ...


@dataclass(frozen=True)
class WebhookEvent:
    kind: Literal["status", "comment"]
    issue_id: str
    status: str | None = None
    comment: IssueComment | None = None


def _non_empty_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def parse_webhook_event(payload: dict[str, Any]) -> WebhookEvent | None:
    """Extract a status or comment event from a Linear webhook body.

    Returns None for unsupported actions and for payloads missing a required
    field (update: ``data.id`` and ``data.state.name``; comment: ``data.body``,
    ``data.issue.id`` and ``data.user.name``).
    """
    action = payload.get("action")
    data = payload.get("data")
    if not isinstance(data, dict):
        return None

    if action == "update":
        state = data.get("state")
        issue_id = _non_empty_str(data.get("id"))
        status = _non_empty_str(state.get("name")) if isinstance(state, dict) else None
        if issue_id is None or status is None:
            return None
        return WebhookEvent(kind="status", issue_id=issue_id, status=status)

    if action == "create" and payload.get("type") == "Comment":
        issue = data.get("issue")
        user = data.get("user")
        body = _non_empty_str(data.get("body"))
        issue_id = _non_empty_str(issue.get("id")) if isinstance(issue, dict) else None
        author = _non_empty_str(user.get("name")) if isinstance(user, dict) else None
        if body is None or issue_id is None or author is None:
            return None
        created_at = _non_empty_str(data.get("createdAt")) or utc_now_iso()
        return WebhookEvent(
            kind="comment",
            issue_id=issue_id,
            comment=IssueComment(text=body, author=author, created_at=created_at),
        )

    return None


class IssueReconciler:
    """Owns the issue mirror's write path and the last-notified status map."""

    def __init__(self, conn: sqlite3.Connection, notifier: Notifier | None = None) -> None:
        self._conn = conn
        self.notifier = notifier
        self._last_notified: dict[str, str] = {}

    def last_notified(self, issue_id: str) -> str | None:
        return self._last_notified.get(issue_id)

    def upsert_on_create(self, record: IssueRecord) -> None:
        """Store a freshly created issue and seed its notified status."""
        save_issue(self._conn, record)
        add_chat_issue(self._conn, record["chat_id"], record["issue_id"])
        self._last_notified[record["issue_id"]] = record["status"]
        logger.info("Stored issue %s (%s) for chat %d", record["ticket_ref"], record["issue_id"], record["chat_id"])

    def record_status(self, issue_id: str, status: str) -> None:
        """Mark a status change made from chat so its webhook echo is not re-announced."""
        self._last_notified[issue_id] = status
        _ = update_issue_fields(self._conn, issue_id, status=status)

    def forget(self, issue_id: str) -> None:
        self._last_notified.pop(issue_id, None)

    async def apply_webhook_update(
        self,
        issue_id: str,
        new_status: str | None = None,
        comment: IssueComment | None = None,
    ) -> bool:
        """Merge a status change and/or comment into the cached record.

        Returns True when the record changed and a notification was attempted.
        """
        kind = "comment" if comment else "status"
        if not new_status and comment is None:
            WEBHOOK_EVENTS_TOTAL.labels(kind=kind, outcome="dropped").inc()
            return False

        record = get_issue(self._conn, issue_id)
        if record is None:
            logger.info("Webhook for unknown issue %s ignored", issue_id)
            WEBHOOK_EVENTS_TOTAL.labels(kind=kind, outcome="unknown_issue").inc()
            return False

        if comment is not None and comment in record["comments"]:
            logger.debug("Duplicate comment by %s on issue %s absorbed", comment["author"], issue_id)
            comment = None

        last = self._last_notified.get(issue_id, record["status"])
        if comment is None and (not new_status or new_status == last):
            logger.debug("Duplicate %s for issue %s absorbed (status %r)", kind, issue_id, new_status)
            WEBHOOK_EVENTS_TOTAL.labels(kind=kind, outcome="duplicate").inc()
            return False

        comments = list(record["comments"])
        if comment is not None:
            comments.append(comment)
        merged = IssueRecord(
            **{
                **record,
                "status": new_status or record["status"],
                "updated_at": utc_now_iso(),
                "comments": comments,
            }
        )
        save_issue(self._conn, merged)
        if new_status:
            self._last_notified[issue_id] = new_status

        await self._notify(merged, comment)
        WEBHOOK_EVENTS_TOTAL.labels(kind=kind, outcome="notified").inc()
        return True

    async def handle_event(self, payload: dict[str, Any]) -> bool:
        """Parse a raw webhook body and apply it. Malformed payloads are dropped."""
        event = parse_webhook_event(payload)
        if event is None:
            logger.info(
                "Dropping webhook action=%r type=%r (unsupported or missing fields)",
                payload.get("action"),
                payload.get("type"),
            )
            WEBHOOK_EVENTS_TOTAL.labels(kind="other", outcome="dropped").inc()
            return False
        return await self.apply_webhook_update(event.issue_id, event.status, event.comment)

    async def _notify(self, record: IssueRecord, comment: IssueComment | None) -> None:
        if self.notifier is None:
            logger.warning("No chat notifier configured; update for %s not sent", record["ticket_ref"])
            return
        try:
            await self.notifier.send_message(record["chat_id"], format_issue_update(record, comment))
        except Exception:
            logger.exception("Failed to send update for %s to chat %d", record["ticket_ref"], record["chat_id"])
