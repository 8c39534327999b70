"""Tests for the command interpreter: output sanitization, validation, assignee re-resolution."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from src.agent.interpreter import (
    CommandContext,
    CommandInterpreter,
    LLMError,
    ParsedCommand,
    decode_llm_output,
    escape_control_chars,
    extract_json_object,
    parse_command,
    strip_code_fences,
)
from src.identity.directory import IdentityDirectory
from src.identity.resolver import IdentityResolver
from src.memory.models import HistoryEntry
from src.tracker.client import TrackerUser

STATUSES = ["Todo", "In Progress", "In Review", "Done", "Cancelled"]


def _reply(**fields: object) -> str:
    payload = {"action": "create", "confidence": 0.9, **fields}
    return json.dumps(payload)


def _make_interpreter(
    directory: IdentityDirectory,
    users: list[TrackerUser],
    content: str | Exception,
) -> tuple[CommandInterpreter, MagicMock]:
    cache = MagicMock()
    cache.get_users = AsyncMock(return_value=users)
    resolver = IdentityResolver(directory, cache)

    llm = MagicMock()
    if isinstance(content, Exception):
        llm.ainvoke = AsyncMock(side_effect=content)
    else:
        llm.ainvoke = AsyncMock(return_value=AIMessage(content=content))
    return CommandInterpreter(llm, resolver, STATUSES, brand_name="Linear"), llm


# ---------------------------------------------------------------------------
# Sanitization helpers
# ---------------------------------------------------------------------------


class TestStripCodeFences:
    def test_json_fence(self) -> None:
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence(self) -> None:
        assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'

    def test_no_fence(self) -> None:
        assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


class TestEscapeControlChars:
    def test_newline_inside_string_escaped(self) -> None:
        raw = '{"description": "line one\nline two"}'
        assert json.loads(escape_control_chars(raw)) == {"description": "line one\nline two"}

    def test_whitespace_between_tokens_kept(self) -> None:
        raw = '{\n  "a": "x"\n}'
        assert escape_control_chars(raw) == raw

    def test_escaped_quote_does_not_end_string(self) -> None:
        raw = '{"t": "say \\"hi\\"\tnow"}'
        assert json.loads(escape_control_chars(raw)) == {"t": 'say "hi"\tnow'}


class TestExtractJsonObject:
    def test_prose_around_object(self) -> None:
        text = 'Sure! Here is the result: {"action": "create", "title": "a {b}"} Hope this helps.'
        assert extract_json_object(text) == '{"action": "create", "title": "a {b}"}'

    def test_nested(self) -> None:
        assert extract_json_object('x {"a": {"b": 1}} y') == '{"a": {"b": 1}}'

    def test_no_object(self) -> None:
        assert extract_json_object("no json here") is None

    def test_unbalanced(self) -> None:
        assert extract_json_object('{"a": 1') is None


class TestDecodeLlmOutput:
    def test_fenced_with_raw_newline(self) -> None:
        raw = '```json\n{"action": "create", "description": "first\nsecond"}\n```'
        assert decode_llm_output(raw) == {"action": "create", "description": "first\nsecond"}

    def test_non_object_json(self) -> None:
        assert decode_llm_output("[1, 2, 3]") is None

    def test_garbage(self) -> None:
        assert decode_llm_output("I could not understand that.") is None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestParseCommand:
    def test_aliases_map_to_fields(self) -> None:
        raw = _reply(
            action="status",
            ticketIdentifier="MOB-12",
            newStatus="In Progress",
            assigneeName="florent",
            editField="Title",
            newValue="New",
        )
        command = parse_command(raw)
        assert command is not None
        assert command.action == "status"
        assert command.ticket_ref == "MOB-12"
        assert command.new_status == "In Progress"
        assert command.assignee == "florent"
        assert command.edit_field == "title"
        assert command.new_value == "New"

    @pytest.mark.parametrize("sentinel", ["null", "undefined", "None", "", "  "])
    def test_sentinels_become_none(self, sentinel: str) -> None:
        command = parse_command(_reply(ticketIdentifier=sentinel, assigneeName=sentinel, editField=sentinel))
        assert command is not None
        assert command.ticket_ref is None
        assert command.assignee is None
        assert command.edit_field is None

    def test_action_case_insensitive(self) -> None:
        command = parse_command(_reply(action=" Delete "))
        assert command is not None
        assert command.action == "delete"

    def test_unknown_action_rejected(self) -> None:
        assert parse_command(_reply(action="reopen")) is None

    def test_missing_action_rejected(self) -> None:
        assert parse_command(json.dumps({"title": "x", "confidence": 1})) is None

    def test_unknown_edit_field_rejected(self) -> None:
        assert parse_command(_reply(action="edit", editField="priority")) is None

    @pytest.mark.parametrize(
        ("raw_confidence", "expected"),
        [(1.7, 1.0), (-0.3, 0.0), ("0.8", 0.8), ("high", 0.0), (None, 0.0), (float("nan"), 0.0)],
    )
    def test_confidence_clamped(self, raw_confidence: object, expected: float) -> None:
        payload = {"action": "create", "confidence": raw_confidence}
        command = parse_command(json.dumps(payload))
        assert command is not None
        assert command.confidence == pytest.approx(expected)

    def test_model_cannot_set_assignee_id(self) -> None:
        command = parse_command(_reply(assignee_id="u-evil"))
        assert command is not None
        assert command.assignee_id is None

    def test_numbers_coerced_to_text(self) -> None:
        command = parse_command(_reply(title=42))
        assert command is not None
        assert command.title == "42"

    def test_frozen(self) -> None:
        command = ParsedCommand(action="create", confidence=1.0)
        with pytest.raises(ValueError):
            command.title = "changed"  # pyright: ignore[reportAttributeAccessIssue]


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class TestBuildPrompt:
    def test_system_prompt_lists_team_and_statuses(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], "{}")
        prompt = interpreter.build_system_prompt(["MOB-12: Fix login"])

        assert "- florent (aliases: flo, floflo, flouf, telegram: @Flouflof)" in prompt
        assert "Todo, In Progress, In Review, Done, Cancelled" in prompt
        assert "MOB-12: Fix login" in prompt
        assert "{team_members}" not in prompt
        assert "{brand_name}" not in prompt

    def test_system_prompt_without_tickets(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], "{}")
        assert "No recent tickets in context." in interpreter.build_system_prompt([])

    def test_user_message_with_context(self) -> None:
        context = CommandContext(
            history=[
                HistoryEntry(sender="alice", text="the login page is broken", sent_at=1_760_778_000.0),
                HistoryEntry(sender="bob", text="on mobile only", sent_at=1_760_778_060.0),
            ],
            reply_to="MOB-12 is the one",
        )
        text = CommandInterpreter.build_user_message("create a ticket for this", context)

        assert text.startswith("create a ticket for this")
        assert "[Replying to message]: MOB-12 is the one" in text
        assert "[Recent conversation]:\nalice: the login page is broken\nbob: on mobile only" in text

    def test_user_message_alone(self) -> None:
        assert CommandInterpreter.build_user_message("hi", CommandContext()) == "hi"


class TestInterpret:
    async def test_assignee_resolved_to_tracker_user(
        self, directory: IdentityDirectory, tracker_users: list[TrackerUser]
    ) -> None:
        interpreter, llm = _make_interpreter(
            directory, tracker_users, _reply(title="Fix login", description="Details", assigneeName="floflo")
        )
        command = await interpreter.interpret("create a ticket for floflo to fix login")

        assert command is not None
        assert command.assignee == "Florent Martin"
        assert command.assignee_id == "u-flo"

        messages = llm.ainvoke.await_args.args[0]
        assert isinstance(messages[0], SystemMessage)
        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "create a ticket for floflo to fix login"
        assert "callbacks" in llm.ainvoke.await_args.kwargs["config"]

    async def test_unknown_assignee_cleared(
        self, directory: IdentityDirectory, tracker_users: list[TrackerUser]
    ) -> None:
        interpreter, _ = _make_interpreter(directory, tracker_users, _reply(title="X", assigneeName="Zoltan"))
        command = await interpreter.interpret("create a ticket for Zoltan")

        assert command is not None
        assert command.assignee is None
        assert command.assignee_id is None

    async def test_no_assignee_skips_resolution(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], _reply(action="delete", ticketIdentifier="MOB-3"))
        command = await interpreter.interpret("delete MOB-3")

        assert command is not None
        assert command.action == "delete"
        assert command.ticket_ref == "MOB-3"

    async def test_fenced_prose_reply_still_parsed(self, directory: IdentityDirectory) -> None:
        content = 'Here you go:\n```json\n{"action": "cancel", "ticketIdentifier": "MOB-9", "confidence": 0.95}\n```'
        interpreter, _ = _make_interpreter(directory, [], content)
        command = await interpreter.interpret("cancel MOB-9")

        assert command is not None
        assert command.action == "cancel"
        assert command.ticket_ref == "MOB-9"

    async def test_unparseable_reply_returns_none(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], "Sorry, I can't help with that.")
        assert await interpreter.interpret("what's the weather") is None

    async def test_llm_failure_raises_llm_error(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], RuntimeError("rate limited"))
        with pytest.raises(LLMError, match="rate limited"):
            _ = await interpreter.interpret("create a ticket")

    async def test_low_confidence_reported_not_enforced(self, directory: IdentityDirectory) -> None:
        interpreter, _ = _make_interpreter(directory, [], _reply(confidence=0.1))
        command = await interpreter.interpret("hmm")

        assert command is not None
        assert command.confidence == pytest.approx(0.1)
