"""TypedDict models for the local issue mirror."""

from typing import TypedDict


class IssueComment(TypedDict):
    text: str
    author: str
    created_at: str  # ISO 8601


class IssueRecord(TypedDict):
    issue_id: str  # Linear issue id — the durable key
    chat_id: int
    requester: str
    team: str
    ticket_ref: str  # Human-readable identifier, e.g. MOB-1234
    title: str
    description: str
    status: str
    created_at: str  # ISO 8601
    updated_at: str  # ISO 8601
    comments: list[IssueComment]


class HistoryEntry(TypedDict):
    sender: str
    text: str
    sent_at: float  # Unix timestamp


class PendingEdit(TypedDict):
    chat_id: int
    field: str  # title | description
    ticket_ref: str
    expires_at: float  # Unix timestamp
