"""Telegram front end — routes chat messages and button presses to the dispatcher.

Every text message is recorded in the chat history window. Messages that
mention the bot are interpreted by the language model and dispatched; the
"Analyzing" placeholder reply is edited in place with the outcome. Inline
buttons on ticket cards drive the edit, status, done and cancel flows.
"""

import asyncio
import logging
import re
import sqlite3
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from telegram import Chat, InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions, Message, Update
from telegram.constants import ParseMode
from telegram.error import Conflict
from telegram.ext import Application, ApplicationBuilder, CallbackQueryHandler, CommandHandler, ContextTypes, MessageHandler, filters

from src.agent.dispatcher import ActionDispatcher, Button, DispatchContext, DispatchResult
from src.agent.interpreter import CommandContext, CommandInterpreter, LLMError, ParsedCommand
from src.bot.formatting import esc, help_message, not_understood_message, usage_message, welcome_message
from src.config import Settings
from src.memory.store import get_history, get_recent_tickets, pop_pending_edit, push_history, set_pending_edit
from src.observability.metrics import COMMAND_DURATION
from src.tracker.client import TrackerError

logger = logging.getLogger(__name__)

NOT_AUTHORIZED = "❌ You are not authorized to use this bot.\nPlease contact the admin to get access."
RECENT_TICKET_LIMIT = 5
PENDING_EDIT_TTL_SECONDS = 300

_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)
_STATUS_CALLBACK = re.compile(r"^setstatus_(.+)_([A-Za-z0-9]+-\d+)$")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def is_authorized(username: str | None, allowed: set[str]) -> bool:
    """Whitelist check on the Telegram username (case-insensitive, ``@`` optional)."""
    if not username:
        return False
    return username.lower().lstrip("@") in allowed


def is_mentioned(text: str, bot_username: str) -> bool:
    if not bot_username:
        return False
    return f"@{bot_username.lower()}" in text.lower()


def strip_mention(text: str, bot_username: str) -> str:
    if not bot_username:
        return text.strip()
    return re.sub(rf"@{re.escape(bot_username)}\b", "", text, flags=re.IGNORECASE).strip()


def parse_ticket_args(text: str) -> tuple[str, str] | None:
    """Split ``/ticket title | description`` arguments. Returns None without a title."""
    title, _, description = text.partition("|")
    title = title.strip()
    if not title:
        return None
    return title, description.strip()


@dataclass(frozen=True)
class CallbackAction:
    kind: str  # edit | editfield | setstatus | done | cancel
    target: str  # ticket ref, or issue id for cancel
    value: str | None = None  # field name or status name


def parse_callback(data: str) -> CallbackAction | None:
    """Decode inline-button callback data."""
    if data.startswith("editfield_"):
        field, _, ref = data.removeprefix("editfield_").partition("_")
        if field in ("title", "desc", "assignee", "status") and ref:
            return CallbackAction("editfield", ref, field)
        return None
    if match := _STATUS_CALLBACK.match(data):
        return CallbackAction("setstatus", match.group(2), match.group(1))
    for kind in ("edit", "done", "cancel"):
        prefix = f"{kind}_"
        if data.startswith(prefix) and len(data) > len(prefix):
            return CallbackAction(kind, data.removeprefix(prefix))
    return None


def to_markup(buttons: list[list[Button]] | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(b.text, callback_data=b.callback_data, url=b.url) for b in row] for row in buttons]
    )


def chat_labels(chat: Chat, sender: str) -> tuple[str, str]:
    """(chat name, team) used in ticket descriptions and stored records."""
    if chat.type == Chat.PRIVATE:
        return f"Private chat with {sender}", sender or "PrivateChat"
    name = chat.title or "Unknown Group"
    return name, name


async def retry_on_conflict(
    start: Callable[[], Awaitable[None]],
    is_conflict: Callable[[BaseException], bool],
    max_attempts: int = 5,
    base_delay: float = 3.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> None:
    """Run ``start``, retrying with exponential backoff while it hits a conflict.

    Raises the last error once ``max_attempts`` is reached, and any
    non-conflict error immediately.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            await start()
            return
        except Exception as exc:
            if not is_conflict(exc) or attempt == max_attempts:
                raise
            delay = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "Another bot instance is still polling (attempt %d/%d); retrying in %.1fs",
                attempt,
                max_attempts,
                delay,
            )
            await sleep(delay)


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------


class TicketBot:
    """Owns the python-telegram-bot Application and its handlers."""

    def __init__(
        self,
        settings: Settings,
        interpreter: CommandInterpreter,
        dispatcher: ActionDispatcher,
        conn: sqlite3.Connection,
        application: Application | None = None,
    ) -> None:
        self._settings = settings
        self._interpreter = interpreter
        self._dispatcher = dispatcher
        self._conn = conn
        self._allowed = settings.allowed_usernames
        self.bot_username = ""
        self.application = application or ApplicationBuilder().token(settings.telegram_bot_token).build()
        self._register_handlers()
        if not self._allowed:
            logger.warning("TELEGRAM_ALLOWED_USERNAMES is empty; nobody can issue commands")

    def _register_handlers(self) -> None:
        app = self.application
        app.add_handler(CommandHandler("start", self.start_handler))
        app.add_handler(CommandHandler("help", self.help_handler))
        app.add_handler(CommandHandler("ticket", self.ticket_handler))
        app.add_handler(CallbackQueryHandler(self.callback_handler))
        app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.message_handler))
        app.add_error_handler(self.error_handler)

    # --- lifecycle ---

    async def start(self) -> None:
        """Initialize and start polling, waiting out a previous instance if needed."""
        await self.application.initialize()
        self.bot_username = self.application.bot.username or ""
        await retry_on_conflict(
            self._start_polling,
            lambda exc: isinstance(exc, Conflict),
            max_attempts=self._settings.telegram_launch_max_attempts,
            base_delay=self._settings.telegram_launch_base_delay_seconds,
        )
        await self.application.start()
        logger.info("Telegram bot @%s started", self.bot_username)

    async def _start_polling(self) -> None:
        # getUpdates raises Conflict while another instance holds the long poll
        _ = await self.application.bot.get_updates(timeout=0, limit=1)
        updater = self.application.updater
        if updater is not None:
            _ = await updater.start_polling()

    async def stop(self) -> None:
        updater = self.application.updater
        if updater is not None and updater.running:
            await updater.stop()
        if self.application.running:
            await self.application.stop()
        await self.application.shutdown()

    async def send_message(self, chat_id: int, text: str) -> None:
        """Post an HTML message to a chat (webhook notifications)."""
        _ = await self.application.bot.send_message(
            chat_id, text, parse_mode=ParseMode.HTML, link_preview_options=_NO_PREVIEW
        )

    # --- commands ---

    async def start_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_message:
            _ = await update.effective_message.reply_text(
                welcome_message(self._settings.brand_name), parse_mode=ParseMode.HTML
            )

    async def help_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_message:
            _ = await update.effective_message.reply_text(
                help_message(self._settings.brand_name, self.bot_username), parse_mode=ParseMode.HTML
            )

    async def ticket_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """``/ticket title | description`` — create directly, no language model."""
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None:
            return
        username = update.effective_user.username if update.effective_user else None
        if not is_authorized(username, self._allowed):
            _ = await message.reply_text(NOT_AUTHORIZED)
            return

        args = parse_ticket_args(" ".join(context.args or []))
        if args is None:
            _ = await message.reply_text(
                "❌ <b>Usage:</b> /ticket &lt;title&gt; | &lt;description&gt;\n"
                "<i>Example: /ticket Fix login bug | Users can't login on mobile</i>",
                parse_mode=ParseMode.HTML,
            )
            return

        title, description = args
        placeholder = await message.reply_text("⏳ Creating ticket...")
        command = ParsedCommand(action="create", title=title, description=description or None, confidence=1.0)
        result = await self._dispatcher.dispatch(command, self._dispatch_context(update, message))
        await self._show(placeholder, result)

    # --- free text ---

    async def message_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        chat = update.effective_chat
        if message is None or chat is None or not message.text:
            return
        user = update.effective_user
        username = user.username if user else None
        sender = username or (user.first_name if user else "") or "Unknown"
        text = message.text

        history = get_history(self._conn, chat.id)
        push_history(
            self._conn,
            chat.id,
            sender=sender,
            text=text,
            sent_at=message.date.timestamp() if message.date else time.time(),
            max_messages=self._settings.history_max_messages,
            ttl_seconds=self._settings.history_ttl_seconds,
        )

        mentioned = is_mentioned(text, self.bot_username)
        authorized = is_authorized(username, self._allowed)
        if not mentioned:
            if authorized:
                await self._apply_pending_edit(update, message, chat.id, text)
            return
        if not authorized:
            _ = await message.reply_text(NOT_AUTHORIZED)
            return

        request = strip_mention(text, self.bot_username)
        if not request:
            _ = await message.reply_text(usage_message(self.bot_username), parse_mode=ParseMode.HTML)
            return

        started = time.monotonic()
        placeholder = await message.reply_text("⏳ Analyzing your request...")
        try:
            result = await self._interpret_and_dispatch(update, message, request, history)
        except LLMError:
            logger.exception("Language model call failed for chat %d", chat.id)
            result = DispatchResult(text="❌ <b>An error occurred</b>\nPlease try again.", ok=False)
        await self._show(placeholder, result)
        COMMAND_DURATION.observe(time.monotonic() - started)

    async def _interpret_and_dispatch(
        self,
        update: Update,
        message: Message,
        request: str,
        history: list[Any],
    ) -> DispatchResult:
        reply_to = None
        if message.reply_to_message and message.reply_to_message.text:
            original = message.reply_to_message
            author = (original.from_user.username or original.from_user.first_name) if original.from_user else "Unknown"
            reply_to = f'{author}: "{original.text}"'

        command_context = CommandContext(
            history=history,
            recent_tickets=get_recent_tickets(self._conn, message.chat_id, RECENT_TICKET_LIMIT),
            reply_to=reply_to,
        )
        command = await self._interpreter.interpret(request, command_context)
        if command is None or command.confidence < self._settings.confidence_threshold:
            return DispatchResult(text=not_understood_message(), ok=False)

        logger.info(
            "Chat %d: %s ticket=%s confidence=%.2f", message.chat_id, command.action, command.ticket_ref, command.confidence
        )
        return await self._dispatcher.dispatch(command, self._dispatch_context(update, message))

    async def _apply_pending_edit(self, update: Update, message: Message, chat_id: int, text: str) -> None:
        pending = pop_pending_edit(self._conn, chat_id)
        if pending is None:
            return
        command = ParsedCommand(
            action="edit",
            ticket_ref=pending["ticket_ref"],
            edit_field="title" if pending["field"] == "title" else "description",
            new_value=text.strip(),
            confidence=1.0,
        )
        result = await self._dispatcher.dispatch(command, self._dispatch_context(update, message))
        _ = await message.reply_text(result.text, parse_mode=ParseMode.HTML, reply_markup=to_markup(result.buttons))

    # --- buttons ---

    async def callback_handler(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None or query.data is None:
            return
        username = query.from_user.username if query.from_user else None
        if not is_authorized(username, self._allowed):
            _ = await query.answer("❌ You are not authorized", show_alert=True)
            return

        action = parse_callback(query.data)
        if action is None:
            _ = await query.answer("Unknown action")
            return

        chat_id = query.message.chat.id if query.message else None
        ref = action.target
        try:
            match action.kind:
                case "edit":
                    _ = await query.answer()
                    await self._reply(query.message, self._dispatcher.edit_menu(ref))
                case "editfield" if action.value in ("title", "desc"):
                    field = "title" if action.value == "title" else "description"
                    _ = await query.answer()
                    _ = await query.edit_message_text(
                        f"{'📌' if field == 'title' else '📝'} <b>Edit {field.capitalize()} for {esc(ref)}</b>\n\n"
                        f"Reply in this chat with the new {field}, or use:\n"
                        f"<code>@{esc(self.bot_username)} edit {field} {esc(ref)} : New {field}</code>",
                        parse_mode=ParseMode.HTML,
                    )
                    if chat_id is not None:
                        set_pending_edit(
                            self._conn, chat_id, field=field, ticket_ref=ref, ttl_seconds=PENDING_EDIT_TTL_SECONDS
                        )
                case "editfield" if action.value == "assignee":
                    _ = await query.answer()
                    mention = f"@{esc(self.bot_username)}"
                    _ = await query.edit_message_text(
                        f"👤 <b>Change Assignee for {esc(ref)}</b>\n\n"
                        f"Use:\n<code>{mention} assign {esc(ref)} to [name]</code>",
                        parse_mode=ParseMode.HTML,
                    )
                case "editfield":
                    _ = await query.answer()
                    await self._reply(query.message, self._dispatcher.status_menu(ref))
                case "setstatus":
                    _ = await query.answer()
                    result = await self._dispatcher.set_status(ref, action.value or "")
                    _ = await query.edit_message_text(result.text, parse_mode=ParseMode.HTML)
                case "done":
                    _ = await query.answer("Done!")
                    if query.message is not None:
                        _ = await context.bot.delete_message(query.message.chat.id, query.message.message_id)
                        _ = await context.bot.send_message(
                            query.message.chat.id,
                            f'✅ <b>Done</b> — <a href="{self._dispatcher.url_for(ref)}">{esc(ref)}</a>',
                            parse_mode=ParseMode.HTML,
                            link_preview_options=_NO_PREVIEW,
                        )
                case "cancel":
                    result = await self._dispatcher.cancel_by_id(ref)
                    _ = await query.answer("Ticket cancelled!" if result.ok else "Failed to cancel ticket")
                    if result.ok:
                        _ = await query.edit_message_text(result.text, parse_mode=ParseMode.HTML)
        except TrackerError:
            logger.exception("Tracker call failed for button %r", query.data)
            _ = await query.answer("Error talking to the tracker")

    async def error_handler(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled error while processing update %r", update, exc_info=context.error)

    # --- helpers ---

    def _dispatch_context(self, update: Update, message: Message) -> DispatchContext:
        user = update.effective_user
        sender = (user.username or user.first_name) if user else ""
        chat_name, team = chat_labels(message.chat, sender or "")
        return DispatchContext(
            chat_id=message.chat_id,
            requester=sender or "Unknown",
            team=team,
            chat_name=chat_name,
            message_id=message.message_id,
        )

    async def _show(self, placeholder: Message, result: DispatchResult) -> None:
        _ = await placeholder.edit_text(
            result.text,
            parse_mode=ParseMode.HTML,
            reply_markup=to_markup(result.buttons),
            link_preview_options=_NO_PREVIEW,
        )

    async def _reply(self, message: Any, result: DispatchResult) -> None:
        if message is None:
            return
        _ = await message.reply_text(result.text, parse_mode=ParseMode.HTML, reply_markup=to_markup(result.buttons))
