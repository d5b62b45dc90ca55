"""
AvatarChat — Collaborator Interfaces

Protocol definitions for every external service the core depends on:
  1. Language    — chat completion (text in, text out)
  2. Speech      — speech-to-text (audio in, text out)
  3. Media       — talking-avatar synthesis (text in, video URL out)
  4. Persistence — user-scoped records, blobs and row-update subscriptions

The core talks to these protocols only — never to a vendor SDK directly —
so tests and development runs can swap in fakes.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, runtime_checkable

from .models import ChatTurn, StreamUpdate


# ═══════════════════════════════════════════════════════════════════════════
# Language generation
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class LanguageModel(Protocol):
    """Ordered role-tagged turns in, completion text out."""

    async def complete(self, turns: List[ChatTurn]) -> str:
        ...

    def stream(self, turns: List[ChatTurn]) -> AsyncIterator[str]:
        """Yield completion text incrementally, chunk by chunk."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Speech-to-text
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SpeechToText(Protocol):

    async def transcribe(self, audio_b64: str, mime_type: str = "audio/webm") -> str:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Media synthesis
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class MediaSynthesizer(Protocol):
    """Synchronous shape of the avatar service: text in, {id, url} out."""

    async def create_talk(self, text: str) -> StreamUpdate:
        ...

    async def stop_talk(self, talk_id: str) -> None:
        """Release a talk; failures are only logged."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Persistence
# ═══════════════════════════════════════════════════════════════════════════

RowCallback = Callable[[Dict[str, Any]], Any]


@runtime_checkable
class RecordStore(Protocol):
    """Generic CRUD scoped to an authenticated user, plus row subscriptions."""

    async def insert(self, user_id: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update(self, user_id: str, record_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def select(self, user_id: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    def subscribe(self, record_id: str, callback: RowCallback) -> Callable[[], None]:
        """
        Call `callback(row)` on every update of `record_id`; returns unsubscribe.
        Polling stores also report the row as it is when the subscription starts.
        """
        ...


@runtime_checkable
class BlobStore(Protocol):

    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store `data` at `path` and return its public URL."""
        ...
