"""Envelope types carried on the message bus."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Direction(str, Enum):
    """Which way an envelope travels relative to the agent."""

    IN = "in"
    OUT = "out"


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Envelope:
    """
    A directional message record.

    Inbound envelopes are produced by channel adapters (or the scheduler) and
    consumed by the agent loop; outbound envelopes flow the other way.
    Immutable once created.
    """

    session_key: str
    channel: str  # telegram, discord, cli, ...
    chat_id: str  # conversation / recipient inside the channel
    text: str
    direction: Direction
    sender: str = ""
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Freeze metadata so published envelopes cannot be altered by a consumer
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def inbound(
        cls,
        channel: str,
        chat_id: str,
        text: str,
        sender: str = "user",
        session_key: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> Envelope:
        """Build an inbound envelope; the session key defaults to channel:chat_id."""
        return cls(
            session_key=session_key or f"{channel}:{chat_id}",
            channel=channel,
            chat_id=chat_id,
            text=text,
            direction=Direction.IN,
            sender=sender,
            metadata=metadata or {},
        )

    @classmethod
    def outbound(
        cls,
        channel: str,
        chat_id: str,
        text: str,
        session_key: str | None = None,
        sender: str = "agent",
        metadata: Mapping[str, Any] | None = None,
    ) -> Envelope:
        """Build an outbound envelope addressed to channel + chat_id."""
        return cls(
            session_key=session_key or f"{channel}:{chat_id}",
            channel=channel,
            chat_id=chat_id,
            text=text,
            direction=Direction.OUT,
            sender=sender,
            metadata=metadata or {},
        )

    @property
    def is_inbound(self) -> bool:
        return self.direction is Direction.IN
