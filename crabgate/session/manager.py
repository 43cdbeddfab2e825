"""Session management for conversation history."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from loguru import logger

from crabgate.providers.base import ToolCallRequest

Role = Literal["user", "assistant", "tool"]


@dataclass
class Turn:
    """One role-tagged entry in a session's history."""

    role: Role
    content: str | None
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_call_id: str | None = None
    name: str | None = None  # tool name, for tool turns
    is_error: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def user(cls, content: str) -> Turn:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[ToolCallRequest] | None = None) -> Turn:
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, call: ToolCallRequest, result: str, is_error: bool = False) -> Turn:
        return cls(role="tool", content=result, tool_call_id=call.id, name=call.name, is_error=is_error)

    def to_message(self) -> dict[str, Any]:
        """Render as an OpenAI-style chat message."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                    },
                }
                for tc in self.tool_calls
            ]
        if self.role == "tool":
            msg["tool_call_id"] = self.tool_call_id
            msg["name"] = self.name
        return msg


@dataclass
class Session:
    """
    A conversation session.

    Turns are only appended by whoever holds ``lock``; the agent loop
    commits a whole processing pass at once so readers never see half
    of one.
    """

    key: str  # channel:chat_id
    turns: list[Turn] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_activity: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def commit(self, turns: list[Turn]) -> None:
        """Append the turns of a finished processing pass."""
        self.turns.extend(turns)
        self.touch()

    def touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)

    def get_history(self, max_turns: int = 100) -> list[Turn]:
        """
        Most recent turns, never starting in the middle of a tool exchange.

        A window that would begin with tool results (orphaned from the
        assistant turn that requested them) is advanced to the next user turn.
        """
        recent = self.turns[-max_turns:] if max_turns > 0 else []
        if recent and recent[0].role != "user":
            for i, turn in enumerate(recent):
                if turn.role == "user":
                    return recent[i:]
            return []
        return list(recent)

    def clear(self) -> None:
        """Clear all turns."""
        self.turns = []
        self.touch()


class SessionManager:
    """
    Holds sessions in memory, keyed by session key.

    Sessions are created lazily on first use and live for the process lifetime.
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}

    def get_or_create(self, key: str) -> Session:
        """
        Get an existing session or create a new one.

        Args:
            key: Session key (usually channel:chat_id).

        Returns:
            The session.
        """
        session = self._sessions.get(key)
        if session is None:
            session = Session(key=key)
            self._sessions[key] = session
            logger.debug("Session created: {}", key)
        return session

    def get(self, key: str) -> Session | None:
        return self._sessions.get(key)

    def invalidate(self, key: str) -> None:
        """Forget a session entirely."""
        self._sessions.pop(key, None)

    def list_sessions(self) -> list[dict[str, Any]]:
        """Summaries of all sessions, most recently active first."""
        return sorted(
            (
                {
                    "key": s.key,
                    "turns": len(s.turns),
                    "created_at": s.created_at.isoformat(),
                    "last_activity": s.last_activity.isoformat(),
                    "busy": s.lock.locked(),
                }
                for s in self._sessions.values()
            ),
            key=lambda x: x["last_activity"],
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self._sessions)
