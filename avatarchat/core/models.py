"""
AvatarChat — Data Models

All dataclasses used across the package.
Single source of truth for shapes of data flowing through the system.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Session identity + endpoint
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConfig:
    """
    Identity and target of one realtime conversation.

    `endpoint` is host[:port][/path] without a scheme; `is_secure` picks
    https/wss over http/ws. The id is generated once and never changes.
    """
    endpoint: str
    is_secure: bool = False
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def media_url(self) -> str:
        """Playable URL of the session's video, known before any socket opens."""
        scheme = "https" if self.is_secure else "http"
        return f"{scheme}://{self.endpoint}/video?session={self.session_id}"

    @property
    def socket_url(self) -> str:
        scheme = "wss" if self.is_secure else "ws"
        return f"{scheme}://{self.endpoint}/video?session={self.session_id}"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """
    A single turn in the conversation log.

    `timestamp` is a position (seconds) in an external video timeline, used
    when the user asks about a moment of an uploaded training video.
    """
    content: str
    is_ai: bool = False
    timestamp: Optional[float] = None
    id: str = field(default_factory=_short_id)
    created_at: float = field(default_factory=time.time)

    @property
    def role(self) -> str:
        return "assistant" if self.is_ai else "user"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ChatTurn:
    """Role-tagged message sent to the language-generation collaborator."""
    role: str       # "system" | "user" | "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


# ---------------------------------------------------------------------------
# Media stream
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamUpdate:
    """
    A new playable media URL for the avatar video.

    `talk_id` is set when the synthesis service answered synchronously
    with {id, url}; pushed {url} events leave it empty.
    """
    url: str
    talk_id: Optional[str] = None
    received_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Training videos
# ---------------------------------------------------------------------------

@dataclass
class TrainingSession:
    """An uploaded training video and, once processed, its transcript."""
    id: str
    user_id: str
    title: str
    video_url: str
    transcript: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "TrainingSession":
        return cls(
            id=str(record["id"]),
            user_id=str(record.get("user_id", "")),
            title=record.get("title", ""),
            video_url=record.get("video_url", ""),
            transcript=record.get("transcript"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
