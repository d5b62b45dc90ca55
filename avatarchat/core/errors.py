"""
AvatarChat — Exceptions

One small hierarchy for the four failure families:

  • transport     — socket refused / timed out / closed abnormally.
                    Raised by the websocket connector, absorbed by the
                    channel; never reaches the UI.
  • protocol      — an inbound frame we cannot make sense of.
                    Logged and dropped; the connection stays open.
  • collaborator  — LLM / transcription / synthesis call failed.
                    Propagated to the immediate caller.
  • configuration — a collaborator was built without its credentials.
                    Fails that collaborator only.
"""

from __future__ import annotations

from typing import Iterable, Optional


class AvatarChatError(Exception):
    """Base class for everything this package raises on purpose."""


class TransportError(AvatarChatError):
    """A streaming connection could not be opened or was lost."""


class ProtocolError(AvatarChatError):
    """
    Raised when an inbound frame is not a JSON object.

    The frame text is kept (truncated) for the log line.
    """

    def __init__(self, frame, details: Optional[str] = None):
        self.frame = str(frame)[:200]
        self.details = details or "Frame is not a JSON object."
        super().__init__(f"Malformed frame: {self.frame!r} ({self.details})")


class CollaboratorError(AvatarChatError):
    """An external service call failed; `service` names which one."""

    def __init__(self, service: str, message: str):
        self.service = service
        self.message = message
        super().__init__(f"{service}: {message}")


class ConfigurationError(AvatarChatError):
    """
    Raised when a collaborator is constructed without its settings.

    The exception carries the component name and the list of missing
    environment variables so the server can report them verbatim.
    """

    def __init__(self, component: str, missing: Iterable[str]):
        self.component = component
        self.missing = list(missing)
        super().__init__(
            f"{component} is not configured. Set: " + ", ".join(self.missing)
        )


class SessionClosedError(AvatarChatError):
    """The session was cleaned up while the operation was in flight."""
