"""Action dispatcher — turns a parsed command into Linear mutations.

Each action validates its inputs before touching the tracker and answers with
a user-facing HTML message. The only rule that changes the action itself is
the create/modify boundary: ``assign`` without a ticket reference becomes
``create``.
"""

import logging
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from src.agent.interpreter import ParsedCommand
from src.bot.formatting import esc, issue_url
from src.identity.resolver import IdentityResolver
from src.memory.models import IssueRecord
from src.memory.reconciler import IssueReconciler
from src.memory.store import delete_issue, get_issue, remove_chat_issue, update_issue_fields, utc_now_iso
from src.observability.metrics import COMMANDS_TOTAL
from src.tracker.client import TrackerClient, TrackerError

logger = logging.getLogger(__name__)

_DIVIDER = "━━━━━━━━━━━━━━━━━━━━━"


@dataclass(frozen=True)
class Button:
    text: str
    callback_data: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    text: str
    buttons: list[list[Button]] | None = None
    ok: bool = True


@dataclass(frozen=True)
class DispatchContext:
    """Where a command came from."""

    chat_id: int
    requester: str
    team: str
    chat_name: str
    message_id: int | None = None


def _fail(text: str) -> DispatchResult:
    return DispatchResult(text=text, ok=False)


def _no_ticket(example: str) -> DispatchResult:
    return _fail(f'❌ <b>Could not identify the ticket</b>\n\nPlease specify the ticket (e.g., "{example}")')


def _ticket_not_found(ref: str) -> DispatchResult:
    return _fail(f"❌ <b>Ticket {esc(ref)} not found</b>")


type _Handler = Callable[[ParsedCommand, DispatchContext], Awaitable[DispatchResult]]


class ActionDispatcher:
    """Executes parsed commands against Linear and the local issue mirror."""

    def __init__(
        self,
        tracker: TrackerClient,
        resolver: IdentityResolver,
        conn: sqlite3.Connection,
        reconciler: IssueReconciler,
        *,
        issue_url_template: str = "https://linear.app/issue/{identifier}",
        statuses: list[str] | None = None,
        brand_name: str = "Linear",
    ) -> None:
        self._tracker = tracker
        self._resolver = resolver
        self._conn = conn
        self._reconciler = reconciler
        self._url_template = issue_url_template
        self._statuses = statuses or ["Todo", "In Progress", "In Review", "Done", "Cancelled"]
        self._brand_name = brand_name
        self._handlers: dict[str, _Handler] = {
            "create": self._create,
            "edit": self._edit,
            "assign": self._assign,
            "status": self._status,
            "cancel": self._cancel,
            "delete": self._delete,
        }

    def url_for(self, ticket_ref: str) -> str:
        return issue_url(self._url_template, ticket_ref)

    async def dispatch(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        """Run one command. Tracker failures become a generic error reply."""
        if command.action == "assign" and not command.ticket_ref:
            logger.info("assign without a ticket reference; handling as create")
            command = command.model_copy(update={"action": "create"})

        handler = self._handlers[command.action]
        try:
            result = await handler(command, context)
        except TrackerError:
            logger.exception("Tracker call failed during %s (ticket=%s)", command.action, command.ticket_ref)
            COMMANDS_TOTAL.labels(action=command.action, outcome="error").inc()
            return _fail(f"❌ <b>Error during {command.action}</b>\nPlease try again later.")

        COMMANDS_TOTAL.labels(action=command.action, outcome="ok" if result.ok else "rejected").inc()
        return result

    # --- create ---

    def _build_description(self, description: str | None, context: DispatchContext) -> str:
        text = description or ""
        text += f"\n\n---\n**Context:** {context.chat_name}"
        if context.message_id:
            text += f" (Message #{context.message_id})"
        text += f"\n**Requested by:** @{context.requester}"
        return text

    async def _create(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        if not command.title:
            return _fail("❌ <b>Could not determine ticket title</b>\n\nPlease be more specific about what the ticket should be.")

        assignee_id = command.assignee_id
        if assignee_id is None and command.assignee:
            user = await self._resolver.resolve(command.assignee)
            assignee_id = user.get("id") if user else None
            if assignee_id is None:
                logger.info("Creating %r unassigned: %r did not resolve", command.title, command.assignee)

        issue = await self._tracker.create_issue(
            command.title,
            self._build_description(command.description, context),
            assignee_id,
        )
        if not issue or not issue.get("id") or not issue.get("identifier"):
            return _fail("❌ <b>Failed to create ticket</b>\nPlease try again later.")

        now = utc_now_iso()
        status = (issue.get("state") or {}).get("name") or "Todo"
        record = IssueRecord(
            issue_id=issue["id"],
            chat_id=context.chat_id,
            requester=context.requester,
            team=context.team,
            ticket_ref=issue["identifier"],
            title=issue.get("title") or command.title,
            description=command.description or "",
            status=status,
            created_at=now,
            updated_at=now,
            comments=[],
        )
        self._reconciler.upsert_on_create(record)

        assignee = (issue.get("assignee") or {}).get("name") or command.assignee or "Unassigned"
        url = self.url_for(record["ticket_ref"])
        created_at = datetime.now(UTC).strftime("%b %d, %Y %H:%M UTC")
        text = (
            "✅ <b>Ticket Created Successfully!</b>\n\n"
            f"{_DIVIDER}\n"
            f'🎫 <b>Ticket:</b> <a href="{url}">{esc(record["ticket_ref"])}</a>\n'
            f"📌 <b>Title:</b> {esc(record['title'])}\n"
            f"{_DIVIDER}\n\n"
            f"📝 <b>Description:</b>\n<i>{esc(command.description or 'No description')}</i>\n\n"
            f"👤 <b>Assigned to:</b> {esc(assignee)}\n"
            f"📊 <b>Status:</b> {esc(status)}\n"
            f"🙋 <b>Requested by:</b> @{esc(context.requester)}\n"
            f"🕐 <b>Created at:</b> {created_at}\n\n"
            f'🔗 <a href="{url}">View in {esc(self._brand_name)}</a>'
        )
        buttons = [
            [
                Button("✏️ Edit", callback_data=f"edit_{record['ticket_ref']}"),
                Button("❌ Cancel", callback_data=f"cancel_{record['issue_id']}"),
            ],
            [Button("✅ Done", callback_data=f"done_{record['ticket_ref']}")],
        ]
        return DispatchResult(text=text, buttons=buttons)

    # --- edit ---

    def edit_menu(self, ticket_ref: str) -> DispatchResult:
        """Field-choice buttons for a ticket. Makes no tracker calls."""
        return DispatchResult(
            text=f"✏️ <b>Edit Ticket {esc(ticket_ref)}</b>\n\nWhat would you like to edit?",
            buttons=[
                [
                    Button("📌 Title", callback_data=f"editfield_title_{ticket_ref}"),
                    Button("📝 Description", callback_data=f"editfield_desc_{ticket_ref}"),
                ],
                [
                    Button("👤 Assignee", callback_data=f"editfield_assignee_{ticket_ref}"),
                    Button("📊 Status", callback_data=f"editfield_status_{ticket_ref}"),
                ],
                [Button(f"🔗 Open in {self._brand_name}", url=self.url_for(ticket_ref))],
            ],
        )

    def status_menu(self, ticket_ref: str) -> DispatchResult:
        icons = {"Todo": "📋", "In Progress": "🔄", "In Review": "👀", "Done": "✅"}
        choices = [s for s in self._statuses if s.lower() != "cancelled"]
        buttons = [Button(f"{icons.get(s, '📊')} {s}", callback_data=f"setstatus_{s}_{ticket_ref}") for s in choices]
        rows = [buttons[i : i + 2] for i in range(0, len(buttons), 2)]
        return DispatchResult(text=f"📊 <b>Change Status for {esc(ticket_ref)}</b>\n\nSelect new status:", buttons=rows)

    async def _edit(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        ref = command.ticket_ref
        if not ref:
            return _no_ticket("edit MOB-1234")
        if command.edit_field in (None, "menu"):
            return self.edit_menu(ref)

        issue_id = await self._tracker.resolve_issue_id(ref)
        if issue_id is None:
            return _ticket_not_found(ref)

        match command.edit_field:
            case "title":
                value = command.new_value or command.title
                if not value:
                    return _fail("❌ <b>Please provide a new title</b>")
                result = await self._tracker.update_issue(issue_id, title=value)
                if result["success"]:
                    _ = update_issue_fields(self._conn, issue_id, title=value)
                label = "title"
            case "description":
                value = command.new_value or command.description
                if not value:
                    return _fail("❌ <b>Please provide a new description</b>")
                result = await self._tracker.update_issue(issue_id, description=value)
                if result["success"]:
                    _ = update_issue_fields(self._conn, issue_id, description=value)
                label = "description"
            case "assignee":
                wanted = command.new_value or command.assignee
                assignee_id = command.assignee_id
                if assignee_id is None and wanted:
                    user = await self._resolver.resolve(wanted)
                    assignee_id = user.get("id") if user else None
                if not assignee_id:
                    return _fail(f'❌ <b>User "{esc(wanted)}" not found</b>')
                result = await self._tracker.update_issue(issue_id, assignee_id=assignee_id)
                label = "assignee"
            case "status":
                wanted = command.new_value or command.new_status
                if not wanted:
                    return self._status_not_found("")
                state_id = await self._tracker.find_state_id(wanted)
                if state_id is None:
                    return self._status_not_found(wanted)
                result = await self._tracker.update_issue(issue_id, state_id=state_id)
                if result["success"]:
                    new_status = (result["issue"].get("state") or {}).get("name") or wanted
                    self._reconciler.record_status(issue_id, new_status)
                label = "status"
            case _:
                return _fail("❌ <b>Unknown field to edit</b>")

        if not result["success"]:
            return _fail(f"❌ <b>Failed to update {label}</b>")
        return DispatchResult(text=f"✅ <b>Ticket {esc(ref)} {label} updated!</b>")

    # --- assign ---

    async def _assign(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        ref = command.ticket_ref
        if not ref:
            return _no_ticket("assign MOB-1234 to Cyril")
        if not command.assignee:
            return _fail(
                "❌ <b>Could not identify the assignee</b>\n\n"
                'Please specify who to assign (e.g., "assign MOB-1234 to Cyril")'
            )

        issue_id = await self._tracker.resolve_issue_id(ref)
        if issue_id is None:
            return _ticket_not_found(ref)

        assignee_id = command.assignee_id
        assignee_name = command.assignee
        if assignee_id is None:
            user = await self._resolver.resolve(command.assignee)
            if user:
                assignee_id = user.get("id")
                assignee_name = user.get("name") or assignee_name
        if not assignee_id:
            return _fail(f'❌ <b>User "{esc(command.assignee)}" not found</b>')

        result = await self._tracker.update_issue(issue_id, assignee_id=assignee_id)
        if not result["success"]:
            return _fail(f"❌ <b>Failed to assign ticket {esc(ref)}</b>")
        new_assignee = (result["issue"].get("assignee") or {}).get("name") or assignee_name
        return DispatchResult(text=f"✅ <b>Ticket {esc(ref)} assigned to {esc(new_assignee)}</b>")

    # --- status ---

    def _status_not_found(self, wanted: str) -> DispatchResult:
        available = ", ".join(self._statuses)
        if not wanted:
            return _fail(f"❌ <b>Could not identify the status</b>\n\nAvailable: {esc(available)}")
        return _fail(f'❌ <b>Status "{esc(wanted)}" not found</b>\n\nAvailable: {esc(available)}')

    async def _status(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        ref = command.ticket_ref
        if not ref:
            return _no_ticket("set MOB-1234 to In Progress")
        if not command.new_status:
            return self._status_not_found("")
        return await self.set_status(ref, command.new_status)

    async def set_status(self, ticket_ref: str, status_name: str) -> DispatchResult:
        """Move a ticket to the named workflow state (also used by the status buttons)."""
        issue_id = await self._tracker.resolve_issue_id(ticket_ref)
        if issue_id is None:
            return _ticket_not_found(ticket_ref)

        state_id = await self._tracker.find_state_id(status_name)
        if state_id is None:
            return self._status_not_found(status_name)

        result = await self._tracker.update_issue(issue_id, state_id=state_id)
        if not result["success"]:
            return _fail(f"❌ <b>Failed to update ticket {esc(ticket_ref)}</b>")

        updated = (result["issue"].get("state") or {}).get("name") or status_name
        self._reconciler.record_status(issue_id, updated)
        return DispatchResult(text=f'✅ <b>Ticket {esc(ticket_ref)} updated to "{esc(updated)}"</b>')

    # --- cancel / delete ---

    async def _cancel(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        ref = command.ticket_ref
        if not ref:
            return _no_ticket("cancel MOB-1234")
        issue_id = await self._tracker.resolve_issue_id(ref)
        if issue_id is None:
            return _ticket_not_found(ref)
        return await self.cancel_by_id(issue_id, ref)

    async def cancel_by_id(self, issue_id: str, ticket_ref: str | None = None) -> DispatchResult:
        """Archive an issue and drop its cached record."""
        if ticket_ref is None:
            record = get_issue(self._conn, issue_id)
            ticket_ref = record["ticket_ref"] if record else ""

        if not await self._tracker.archive_issue(issue_id):
            return _fail(f"❌ <b>Failed to cancel ticket {esc(ticket_ref)}</b>")

        delete_issue(self._conn, issue_id)
        self._reconciler.forget(issue_id)
        heading = f"Ticket {esc(ticket_ref)} Cancelled" if ticket_ref else "Ticket Cancelled"
        return DispatchResult(text=f"🗑️ <b>{heading}</b>\n\nThis ticket has been archived.")

    async def _delete(self, command: ParsedCommand, context: DispatchContext) -> DispatchResult:
        ref = command.ticket_ref
        if not ref:
            return _no_ticket("delete MOB-1234")
        issue_id = await self._tracker.resolve_issue_id(ref)
        if issue_id is None:
            return _ticket_not_found(ref)

        if not await self._tracker.delete_issue(issue_id):
            return _fail(f"❌ <b>Failed to delete ticket {esc(ref)}</b>")

        record = get_issue(self._conn, issue_id)
        chat_id = record["chat_id"] if record else context.chat_id
        delete_issue(self._conn, issue_id)
        remove_chat_issue(self._conn, chat_id, issue_id)
        self._reconciler.forget(issue_id)
        return DispatchResult(text=f"🗑️ <b>Ticket {esc(ref)} Deleted</b>\n\nThis ticket has been permanently removed.")
