"""Simple CLI REPL that shows how a chat message would be interpreted.

Nothing is dispatched: the parsed command is printed as JSON so the prompt,
identity directory and workflow statuses can be checked without touching
Linear issues.

Usage:
    uv run python -m src.cli
"""

import asyncio
import logging
import sys

from src.agent.interpreter import CommandContext, LLMError
from src.config import get_settings
from src.services import build_interpreter

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def _repl() -> None:
    settings = get_settings()
    try:
        _, _, _, interpreter = build_interpreter(settings)
    except Exception as e:
        print(f"Failed to build interpreter: {e}")
        print("Check your .env file has LINEAR_API_KEY, LINEAR_TEAM_ID and an LLM API key.")
        sys.exit(1)

    print("Ticket relay dry run (type 'quit' or Ctrl+C to exit)")
    print("=" * 50)
    recent: list[str] = []

    while True:
        try:
            message = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        if not message:
            continue
        if message.lower() in ("quit", "exit", "q"):
            print("Goodbye!")
            break

        try:
            command = await interpreter.interpret(message, CommandContext(recent_tickets=recent))
        except LLMError as e:
            print(f"\nError: {e}\n")
            continue

        if command is None:
            print("\nCould not parse the model output.\n")
            continue
        print(f"\n{command.model_dump_json(indent=2, by_alias=True)}\n")
        if command.confidence < settings.confidence_threshold:
            print(f"(confidence below {settings.confidence_threshold}: the bot would ask to rephrase)\n")
        if command.ticket_ref and command.ticket_ref not in recent:
            recent.insert(0, command.ticket_ref)
            del recent[5:]


def main() -> None:
    """Run the interactive CLI loop."""
    asyncio.run(_repl())


if __name__ == "__main__":
    main()
