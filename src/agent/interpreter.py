"""Natural-language command interpreter.

Sends a chat message plus conversational context to the language model and
turns its free-text reply into a validated :class:`ParsedCommand`. The model's
output is untrusted: it is sanitized, decoded, validated with pydantic, and any
assignee it names is re-resolved against the tracker before the command is
handed to the dispatcher.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.identity.resolver import IdentityResolver
from src.memory.models import HistoryEntry
from src.observability.callbacks import MetricsCallbackHandler

logger = logging.getLogger(__name__)

_PROMPT_PATH = Path(__file__).parent / "command_prompt.md"
COMMAND_PROMPT_TEMPLATE = _PROMPT_PATH.read_text()

type CommandAction = Literal["create", "edit", "cancel", "delete", "assign", "status"]
type EditField = Literal["title", "description", "assignee", "status", "menu"]

# Values the model uses in place of "no value"
_SENTINELS = frozenset({"", "null", "undefined", "none"})

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*\n?", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\n?```\s*$")

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}


class LLMError(Exception):
    """The language model could not be called."""


class ParsedCommand(BaseModel):
    """A typed action extracted from a chat message.

    Field aliases are the JSON keys the model is asked to produce.
    ``assignee_id`` has no alias: it is only ever set from a resolved tracker user.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    action: CommandAction
    ticket_ref: str | None = Field(default=None, alias="ticketIdentifier")
    assignee: str | None = Field(default=None, alias="assigneeName")
    assignee_id: str | None = None
    new_status: str | None = Field(default=None, alias="newStatus")
    title: str | None = None
    description: str | None = None
    edit_field: EditField | None = Field(default=None, alias="editField")
    new_value: str | None = Field(default=None, alias="newValue")
    confidence: float = 0.0

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("ticket_ref", "assignee", "new_status", "title", "description", "new_value", mode="before")
    @classmethod
    def _drop_sentinels(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = value.strip() if isinstance(value, str) else str(value).strip()
        if text.lower() in _SENTINELS:
            return None
        return text

    @field_validator("edit_field", mode="before")
    @classmethod
    def _normalize_edit_field(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        text = value.strip().lower()
        if text in _SENTINELS:
            return None
        return text

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if math.isnan(number):
            return 0.0
        return min(1.0, max(0.0, number))


@dataclass
class CommandContext:
    """Conversational context sent alongside the message."""

    history: list[HistoryEntry] = field(default_factory=list)
    recent_tickets: list[str] = field(default_factory=list)
    reply_to: str | None = None


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```), if any."""
    stripped = _FENCE_OPEN.sub("", text.strip())
    return _FENCE_CLOSE.sub("", stripped).strip()


def escape_control_chars(text: str) -> str:
    """Escape raw control characters that appear inside JSON string literals.

    Characters outside strings are left alone, so structural whitespace
    between tokens survives.
    """
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue
        if escaped:
            escaped = False
            out.append(ch)
        elif ch == "\\":
            escaped = True
            out.append(ch)
        elif ch == '"':
            in_string = False
            out.append(ch)
        elif ch in _CONTROL_ESCAPES:
            out.append(_CONTROL_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\u{ord(ch):04x}")
        else:
            out.append(ch)
    return "".join(out)


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block, ignoring braces inside strings."""
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def decode_llm_output(raw: str) -> dict[str, Any] | None:
    """Decode the model's reply into a JSON object, repairing common damage."""
    text = escape_control_chars(strip_code_fences(raw))
    try:
        parsed: object = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    block = extract_json_object(text)
    if block is None:
        return None
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_command(raw: str) -> ParsedCommand | None:
    """Decode and validate raw model output. Returns None on any failure."""
    payload = decode_llm_output(raw)
    if payload is None:
        logger.warning("Could not decode model output as JSON: %.200r", raw)
        return None
    # Only the resolver may set the tracker user id
    payload.pop("assignee_id", None)
    try:
        return ParsedCommand.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Model output failed validation: %s", exc.errors(include_url=False))
        return None


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class CommandInterpreter:
    """Turns a chat message into a :class:`ParsedCommand` via the language model."""

    def __init__(
        self,
        llm: BaseChatModel,
        resolver: IdentityResolver,
        statuses: list[str],
        brand_name: str = "Linear",
    ) -> None:
        self._llm = llm
        self._resolver = resolver
        self._statuses = statuses
        self._brand_name = brand_name

    def build_system_prompt(self, recent_tickets: list[str]) -> str:
        if recent_tickets:
            ticket_context = "Recent tickets mentioned in this chat:\n" + "\n".join(recent_tickets)
        else:
            ticket_context = "No recent tickets in context."
        return (
            COMMAND_PROMPT_TEMPLATE.replace("{brand_name}", self._brand_name)
            .replace("{team_members}", self._resolver.directory.describe_for_prompt())
            .replace("{statuses}", ", ".join(self._statuses))
            .replace("{recent_tickets}", ticket_context)
        )

    @staticmethod
    def build_user_message(message: str, context: CommandContext) -> str:
        parts = [message]
        if context.reply_to:
            parts.append(f"[Replying to message]: {context.reply_to}")
        if context.history:
            lines = [f"{entry['sender']}: {entry['text']}" for entry in context.history]
            parts.append("[Recent conversation]:\n" + "\n".join(lines))
        return "\n\n".join(parts)

    async def interpret(self, message: str, context: CommandContext | None = None) -> ParsedCommand | None:
        """Parse ``message`` into a command.

        Returns None when the model's reply cannot be decoded or validated.
        Confidence is reported, not enforced; callers apply their own threshold.

        Raises:
            LLMError: If the language model call itself fails.
        """
        context = context or CommandContext()
        messages = [
            SystemMessage(content=self.build_system_prompt(context.recent_tickets)),
            HumanMessage(content=self.build_user_message(message, context)),
        ]
        config: RunnableConfig = {"callbacks": [MetricsCallbackHandler()]}
        try:
            response = await self._llm.ainvoke(messages, config=config)
        except Exception as exc:
            raise LLMError(f"Language model call failed: {exc}") from exc

        command = parse_command(str(response.content))
        if command is None:
            return None
        return await self._resolve_assignee(command)

    async def _resolve_assignee(self, command: ParsedCommand) -> ParsedCommand:
        if not command.assignee:
            return command.model_copy(update={"assignee_id": None})

        user = await self._resolver.resolve(command.assignee)
        if user is None:
            logger.info("Assignee %r did not match any tracker user; clearing it", command.assignee)
            return command.model_copy(update={"assignee": None, "assignee_id": None})

        name = user.get("name") or user.get("displayName") or command.assignee
        return command.model_copy(update={"assignee": name, "assignee_id": user.get("id")})
