"""Data models for Claude Hub."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
import os
import uuid


class ActivityStatus(Enum):
    """Session activity status as seen by viewers."""
    ACTIVE = "active"              # Producing output
    WAITING = "waiting"            # Quiet, presumed blocked on input
    EXITED = "exited"              # Process terminated (terminal state)
    DISCONNECTED = "disconnected"  # No live process for the session


class HubError(Exception):
    """Base class for errors raised by the hub."""


class SessionNotFound(HubError):
    """Raised when a session identifier is not in the registry."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SpawnFailure(HubError):
    """Raised when a session's subprocess could not be launched."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(reason)
        self.session_id = session_id
        self.reason = reason


def generate_session_id() -> str:
    """Return a fresh opaque session identifier."""
    return uuid.uuid4().hex[:12]


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now()
    # Older state files written by JS carry a trailing Z
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass
class Session:
    """Persisted metadata for one logical CLI session."""
    id: str = field(default_factory=generate_session_id)
    name: str = ""
    cwd: str = field(default_factory=lambda: os.path.expanduser("~"))
    args: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    last_active_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        """Convert session to the dictionary shape used on disk and over HTTP."""
        return {
            "id": self.id,
            "name": self.name,
            "cwd": self.cwd,
            "args": list(self.args),
            "createdAt": self.created_at.isoformat(),
            "lastActiveAt": self.last_active_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            cwd=data.get("cwd") or os.path.expanduser("~"),
            args=list(data.get("args") or []),
            created_at=_parse_timestamp(data.get("createdAt")),
            last_active_at=_parse_timestamp(data.get("lastActiveAt")),
        )
