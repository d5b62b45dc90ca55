"""
AvatarChat — Transcript Job

Background processing of an uploaded training video: batch-transcribe the
stored video URL and write the transcript back onto the record. Whoever
subscribed to the row learns about completion from the update.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Set

from ..core.errors import CollaboratorError
from ..core.interfaces import RecordStore

logger = logging.getLogger("avatarchat.transcripts")


class UrlTranscriber(Protocol):

    async def transcribe_url(self, content_url: str) -> str:
        ...


class TranscriptJob:

    def __init__(self, store: RecordStore, speech: UrlTranscriber) -> None:
        self._store = store
        self._speech = speech
        self._tasks: Set["asyncio.Task[Any]"] = set()

    async def run(self, user_id: str, session_id: str) -> Optional[str]:
        """Transcribe one session's video. Returns the transcript or None."""
        record = await self._store.select(user_id, session_id)
        if record is None:
            logger.error(f"[{session_id}] Transcript job: session not found")
            return None

        video_url = record.get("video_url")
        if not video_url:
            logger.error(f"[{session_id}] Transcript job: session has no video URL")
            return None

        logger.info(f"[{session_id}] Processing video URL: {video_url}")
        try:
            transcript = await self._speech.transcribe_url(video_url)
        except CollaboratorError as e:
            logger.error(f"[{session_id}] Transcription failed: {e}")
            return None

        await self._store.update(user_id, session_id, {"transcript": transcript})
        logger.info(f"[{session_id}] Session updated with transcript ({len(transcript)} chars)")
        return transcript

    def start(self, user_id: str, session_id: str) -> "asyncio.Task[Optional[str]]":
        """Run in the background; the task is kept alive until it finishes."""
        task = asyncio.get_running_loop().create_task(
            self._run_logged(user_id, session_id), name=f"transcript-{session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_logged(self, user_id: str, session_id: str) -> Optional[str]:
        try:
            return await self.run(user_id, session_id)
        except Exception as e:
            logger.error(f"[{session_id}] Background task error: {e}", exc_info=True)
            return None

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
