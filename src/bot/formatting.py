"""HTML message builders for Telegram replies and ticket notifications."""

import html
from datetime import UTC, datetime

from src.memory.models import IssueComment, IssueRecord

STATUS_ORDER = ["Todo", "In Progress", "Pipeline Running", "In Review", "To Deploy", "To QA", "Done"]
PROGRESS_BLOCKS = 5

EXAMPLE_REQUESTS = (
    '<i>"Create a ticket for Sandy to fix the login bug"</i>\n'
    '<i>"Cancel this ticket"</i>\n'
    '<i>"Assign MOB-1234 to Cyril"</i>'
)


def esc(text: str | None) -> str:
    """Escape user-supplied text for Telegram's HTML parse mode."""
    return html.escape(text or "", quote=False)


def issue_url(template: str, identifier: str) -> str:
    return template.replace("{identifier}", identifier)


def progress_bar(status: str) -> str:
    """Render workflow progress as ``███░░ 57%``; unknown statuses show 0%."""
    try:
        index = STATUS_ORDER.index(status)
    except ValueError:
        progress = 0
    else:
        progress = round((index + 1) / len(STATUS_ORDER) * 100)
    filled = round(progress / 100 * PROGRESS_BLOCKS)
    return "█" * filled + "░" * (PROGRESS_BLOCKS - filled) + f" {progress}%"


def format_relative_date(iso_timestamp: str, now: datetime | None = None) -> str:
    """Human-friendly age of an ISO 8601 timestamp (``5m ago``, ``Mar 4``)."""
    if not iso_timestamp:
        return "Unknown"
    try:
        then = datetime.fromisoformat(iso_timestamp)
    except ValueError:
        return "Invalid date"
    if then.tzinfo is None:
        then = then.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)

    seconds = (now - then).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)
    if days <= 0:
        if hours <= 0:
            return "Just now" if minutes <= 0 else f"{minutes}m ago"
        return f"{hours}h ago"
    if days < 7:
        return f"{days}d ago"
    if then.year != now.year:
        return f"{then:%b} {then.day}, {then.year}"
    return f"{then:%b} {then.day}"


def format_issue_update(
    record: IssueRecord,
    comment: IssueComment | None = None,
    now: datetime | None = None,
) -> str:
    """Chat notification for a webhook-driven status change or new comment."""
    lines = [
        "🎫 <b>Ticket Updated</b>",
        "",
        f"<b>{esc(record['ticket_ref'])}</b> — {esc(record['title'])}",
        f"<b>Status:</b> {esc(record['status'])}",
        progress_bar(record["status"]),
    ]
    if comment:
        lines.append(f"<b>Comment by {esc(comment['author'])}:</b>")
        lines.append(esc(comment["text"]))
    lines.append("")
    lines.append(f"<i>Updated: {format_relative_date(record['updated_at'], now)}</i>")
    return "\n".join(lines)


def welcome_message(brand_name: str) -> str:
    return (
        f"🚀 <b>Welcome to {esc(brand_name)} Super Bot!</b>\n\n"
        "<b>Available Commands:</b>\n"
        "/ticket &lt;title&gt; | &lt;description&gt; — Create a new ticket\n"
        "/help — Show this help message\n\n"
        "Mention me in a message to create, edit, assign or close tickets. 📝"
    )


def help_message(brand_name: str, bot_username: str) -> str:
    mention = f"@{esc(bot_username)}" if bot_username else "the bot"
    return (
        f"📖 <b>{esc(brand_name)} Super Bot Help</b>\n\n"
        "<b>Commands:</b>\n"
        "/ticket &lt;title&gt; | &lt;description&gt; — Create issue\n"
        "<i>Example: /ticket Fix login bug | Users can't login on mobile</i>\n\n"
        f"<b>Natural language</b> (mention {mention}):\n"
        f"{EXAMPLE_REQUESTS}\n\n"
        "💡 <b>Tips:</b>\n"
        "• Use | to separate title and description\n"
        "• Reply to a message to give me more context"
    )


def usage_message(bot_username: str) -> str:
    mention = f"@{esc(bot_username)}"
    return (
        "❌ <b>Tell me what to do</b>\n\n"
        f"<b>Create:</b> <i>\"{mention} create a ticket for Sandy to fix the login bug\"</i>\n"
        f"<b>Edit:</b> <i>\"{mention} edit MOB-1234\"</i>\n"
        f"<b>Assign:</b> <i>\"{mention} assign MOB-1234 to Cyril\"</i>\n"
        f"<b>Status:</b> <i>\"{mention} set MOB-1234 to In Progress\"</i>\n"
        f"<b>Cancel:</b> <i>\"{mention} cancel this ticket\"</i>"
    )


def not_understood_message() -> str:
    return f"❌ <b>Could not understand your request</b>\n\nTry something like:\n{EXAMPLE_REQUESTS}"
