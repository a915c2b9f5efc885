from __future__ import annotations
from typing import Any, Dict, List, Literal, TypedDict

Role = Literal["user", "assistant", "error"]


class Message(TypedDict):
    """A single transcript entry, immutable once appended."""

    role: Role
    content: str         # message text
    timestamp: int       # epoch milliseconds


class ChatSession(TypedDict):
    sessionId: str
    title: str           # derived from the first message
    createdAt: int
    messages: List[Message]


class SessionSummary(TypedDict):
    """Projection of a ChatSession used by listings (no message bodies)."""

    sessionId: str
    title: str
    createdAt: int


class UserProfile(TypedDict):
    userId: str
    email: str
    name: str
    createdAt: int
    lastUpdated: int
    facts: Dict[str, Any]  # fact key -> arbitrary JSON value
