"""Async GraphQL client for the Linear issue tracker.

Queries are built as GraphQL documents with every interpolated value passed
through :func:`escape_graphql_string`. Transport failures raise
:class:`TrackerError`; GraphQL-level failures (unknown entity, rejected
mutation) are logged and reported as ``None`` / ``False`` so callers can answer
the user with a specific message.
"""

import logging
import re
import time
from typing import Any, TypedDict

import httpx

from src.observability.metrics import TRACKER_CALL_DURATION, TRACKER_CALLS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15

_BARE_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


class TrackerError(Exception):
    """The tracker could not be reached or returned an HTTP error."""


# --- Linear response types ---


class TrackerUser(TypedDict, total=False):
    id: str
    name: str
    displayName: str
    email: str


class WorkflowState(TypedDict):
    id: str
    name: str


class IssueState(TypedDict, total=False):
    name: str


class IssueAssignee(TypedDict, total=False):
    id: str
    name: str


class TrackerIssue(TypedDict, total=False):
    id: str
    identifier: str
    title: str
    description: str
    state: IssueState
    assignee: IssueAssignee | None


class IssueUpdateResult(TypedDict):
    success: bool
    issue: TrackerIssue


def escape_graphql_string(value: str) -> str:
    """Escape text for a double-quoted GraphQL string literal.

    Control characters without a short escape are written as ``\\uXXXX``.
    """
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return _BARE_CONTROL_CHARS.sub(lambda m: f"\\u{ord(m.group()):04x}", escaped)


class TrackerClient:
    """Thin wrapper over the Linear GraphQL endpoint for one team."""

    def __init__(
        self,
        api_url: str,
        api_key: str,
        team_id: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_url = api_url
        self._api_key = api_key
        self._team_id = team_id
        self._timeout = timeout

    @property
    def api_url(self) -> str:
        return self._api_url

    async def execute(self, document: str, operation: str) -> dict[str, Any]:
        """POST a GraphQL document and return the decoded response body.

        Args:
            document: Complete query or mutation text.
            operation: Short label for logs and metrics (e.g. ``issue_create``).

        Raises:
            TrackerError: On any transport failure, non-2xx status or non-JSON body.
        """
        headers = {"Authorization": self._api_key, "Content-Type": "application/json"}
        start = time.monotonic()
        status = "error"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._api_url, json={"query": document}, headers=headers)
                _ = response.raise_for_status()
                body: dict[str, Any] = response.json()  # pyright: ignore[reportAny]
        except httpx.HTTPStatusError as e:
            raise TrackerError(f"Linear API error: HTTP {e.response.status_code} - {e.response.text[:500]}") from e
        except httpx.ConnectError as e:
            raise TrackerError(f"Cannot connect to Linear at {self._api_url}: {e}") from e
        except httpx.TimeoutException as e:
            raise TrackerError(f"Linear request timed out after {self._timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise TrackerError(f"Linear request failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise TrackerError(f"Linear returned a non-JSON response: {e}") from e
        else:
            status = "success"
        finally:
            TRACKER_CALLS_TOTAL.labels(operation=operation, status=status).inc()
            TRACKER_CALL_DURATION.labels(operation=operation).observe(time.monotonic() - start)

        if body.get("errors"):
            logger.warning("Linear %s returned errors: %s", operation, body["errors"])
        return body

    # --- Queries ---

    async def list_users(self) -> list[TrackerUser] | None:
        """Fetch every workspace user. Returns None when the response has no user list."""
        body = await self.execute("{ users { nodes { id name displayName email } } }", "list_users")
        nodes: list[TrackerUser] | None = ((body.get("data") or {}).get("users") or {}).get("nodes")
        return nodes

    async def resolve_issue_id(self, identifier: str) -> str | None:
        """Map a human-readable identifier (e.g. ``MOB-1234``) to the issue's id."""
        document = f'query {{ issue(id: "{escape_graphql_string(identifier)}") {{ id }} }}'
        body = await self.execute(document, "resolve_issue")
        issue = (body.get("data") or {}).get("issue") or {}
        issue_id: str | None = issue.get("id")
        return issue_id or None

    async def list_workflow_states(self) -> list[WorkflowState]:
        """List the team's workflow states (id and name)."""
        team = escape_graphql_string(self._team_id)
        document = (
            f'query {{ workflowStates(filter: {{ team: {{ id: {{ eq: "{team}" }} }} }}) {{ nodes {{ id name }} }} }}'
        )
        body = await self.execute(document, "workflow_states")
        nodes: list[WorkflowState] = ((body.get("data") or {}).get("workflowStates") or {}).get("nodes") or []
        return nodes

    async def find_state_id(self, status_name: str) -> str | None:
        """Case-insensitive exact match of a status name against the team's workflow states."""
        wanted = status_name.strip().lower()
        if not wanted:
            return None
        for state in await self.list_workflow_states():
            if state.get("name", "").lower() == wanted:
                return state["id"]
        return None

    # --- Mutations ---

    async def create_issue(
        self,
        title: str,
        description: str,
        assignee_id: str | None = None,
    ) -> TrackerIssue | None:
        """Create an issue in the configured team. Returns None if Linear rejected it."""
        fields = [
            f'title: "{escape_graphql_string(title)}"',
            f'description: "{escape_graphql_string(description)}"',
            f'teamId: "{escape_graphql_string(self._team_id)}"',
        ]
        if assignee_id:
            fields.append(f'assigneeId: "{escape_graphql_string(assignee_id)}"')

        document = (
            "mutation { issueCreate(input: { "
            + ", ".join(fields)
            + " }) { success issue { id identifier title state { name } assignee { id name } } } }"
        )
        body = await self.execute(document, "issue_create")
        issue: TrackerIssue | None = ((body.get("data") or {}).get("issueCreate") or {}).get("issue")
        return issue or None

    async def update_issue(
        self,
        issue_id: str,
        *,
        title: str | None = None,
        description: str | None = None,
        assignee_id: str | None = None,
        state_id: str | None = None,
    ) -> IssueUpdateResult:
        """Apply field updates to an existing issue.

        Only the keyword arguments that are not None are sent.
        """
        fields: list[str] = []
        if title is not None:
            fields.append(f'title: "{escape_graphql_string(title)}"')
        if description is not None:
            fields.append(f'description: "{escape_graphql_string(description)}"')
        if assignee_id is not None:
            fields.append(f'assigneeId: "{escape_graphql_string(assignee_id)}"')
        if state_id is not None:
            fields.append(f'stateId: "{escape_graphql_string(state_id)}"')
        if not fields:
            msg = "update_issue needs at least one field"
            raise ValueError(msg)

        document = (
            f'mutation {{ issueUpdate(id: "{escape_graphql_string(issue_id)}", input: {{ '
            + ", ".join(fields)
            + " }) { success issue { title description state { name } assignee { id name } } } }"
        )
        body = await self.execute(document, "issue_update")
        payload = (body.get("data") or {}).get("issueUpdate") or {}
        return IssueUpdateResult(success=bool(payload.get("success")), issue=payload.get("issue") or {})

    async def archive_issue(self, issue_id: str) -> bool:
        """Archive (reversibly cancel) an issue."""
        document = f'mutation {{ issueArchive(id: "{escape_graphql_string(issue_id)}") {{ success }} }}'
        body = await self.execute(document, "issue_archive")
        return bool(((body.get("data") or {}).get("issueArchive") or {}).get("success"))

    async def delete_issue(self, issue_id: str) -> bool:
        """Permanently delete an issue."""
        document = f'mutation {{ issueDelete(id: "{escape_graphql_string(issue_id)}") {{ success }} }}'
        body = await self.execute(document, "issue_delete")
        return bool(((body.get("data") or {}).get("issueDelete") or {}).get("success"))
