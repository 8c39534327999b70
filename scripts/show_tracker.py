"""Print Linear users and workflow states for the configured team.

Useful when writing the identity directory YAML (tracker emails and names)
and WORKFLOW_STATUSES.

Usage:
    uv run python -m scripts.show_tracker
"""

import asyncio
import logging
import sys

from src.config import get_settings
from src.tracker.client import TrackerClient, TrackerError

logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s",
)


async def main() -> None:
    """Fetch and print users and workflow states."""
    settings = get_settings()
    client = TrackerClient(settings.linear_api_url, settings.linear_api_key, settings.linear_team_id)
    try:
        users = await client.list_users() or []
        states = await client.list_workflow_states()
    except TrackerError as e:
        print(f"Failed to query Linear: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Users ({len(users)}):")
    for user in users:
        print(f"  {user.get('name', ''):<30} {user.get('displayName', ''):<20} {user.get('email', '')}")

    print(f"\nWorkflow states ({len(states)}):")
    for state in states:
        print(f"  {state['name']:<20} {state['id']}")


if __name__ == "__main__":
    asyncio.run(main())
