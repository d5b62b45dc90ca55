"""
AvatarChat — Training Sessions

Upload a training video, wait for its transcript, then ask questions about
it — optionally pinned to a moment of the video:

    session = await training.upload_video(user_id, "onboarding.mp4", data)
    await training.wait_for_transcript(user_id, session.id, timeout=1800)
    answer = await training.ask_question(user_id, session.id, "What is step 2?", timestamp=95)

Question/answer logs follow the same partial-failure rule as the avatar
chat: a failed answer leaves the question in the log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

from ..core.config import ConversationConfig, conversation_cfg
from ..core.errors import CollaboratorError
from ..core.interfaces import BlobStore, LanguageModel, RecordStore
from ..core.models import ChatTurn, Message, TrainingSession
from .transcripts import TranscriptJob

logger = logging.getLogger("avatarchat.training")


def format_timestamp(seconds: float) -> str:
    """Video position as HH:MM:SS."""
    total = int(max(0, seconds))
    return f"{total // 3600:02d}:{total % 3600 // 60:02d}:{total % 60:02d}"


class TrainingService:

    def __init__(
        self,
        store: RecordStore,
        blobs: BlobStore,
        llm: Optional[LanguageModel] = None,
        transcripts: Optional[TranscriptJob] = None,
        conversation: ConversationConfig = conversation_cfg,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._llm = llm
        self._transcripts = transcripts
        self._conversation = conversation
        self._logs: Dict[str, List[Message]] = {}

    # ── Upload ──────────────────────────────────────────────────────────

    async def upload_video(
        self,
        user_id: str,
        filename: str,
        data: bytes,
        content_type: str = "video/mp4",
    ) -> TrainingSession:
        if not user_id:
            raise PermissionError("User not authenticated")
        if not data:
            raise ValueError("Video file is empty.")

        path = f"{user_id}/{int(time.time() * 1000)}-{filename}"
        video_url = await self._blobs.upload(path, data, content_type)
        record = await self._store.insert(user_id, {"title": filename, "video_url": video_url})
        session = TrainingSession.from_record(record)
        logger.info(f"[{session.id}] Training video stored at {video_url}")

        if self._transcripts is not None:
            self._transcripts.start(user_id, session.id)
        else:
            logger.warning(f"[{session.id}] No transcript job configured — transcript will stay empty")
        return session

    async def get_session(self, user_id: str, session_id: str) -> TrainingSession:
        record = await self._store.select(user_id, session_id)
        if record is None:
            raise KeyError(f"Training session {session_id} not found")
        return TrainingSession.from_record(record)

    async def wait_for_transcript(self, user_id: str, session_id: str, timeout: float) -> str:
        """Resolve once the row carries a transcript; raises asyncio.TimeoutError."""
        loop = asyncio.get_running_loop()
        ready: "asyncio.Future[str]" = loop.create_future()

        def on_row(row: Dict) -> None:
            if row.get("transcript") and not ready.done():
                ready.set_result(row["transcript"])

        unsubscribe = self._store.subscribe(session_id, on_row)
        try:
            # The job may have finished before we subscribed
            session = await self.get_session(user_id, session_id)
            if session.transcript:
                return session.transcript
            return await asyncio.wait_for(ready, timeout=timeout)
        finally:
            unsubscribe()

    # ── Questions ───────────────────────────────────────────────────────

    def messages(self, session_id: str) -> List[Message]:
        return list(self._logs.get(session_id, []))

    async def ask_question(
        self,
        user_id: str,
        session_id: str,
        question: str,
        timestamp: Optional[float] = None,
    ) -> Message:
        question = (question or "").strip()
        if not question:
            raise ValueError("Question text is required.")
        if self._llm is None:
            raise CollaboratorError("language-model", "No language model configured")

        session = await self.get_session(user_id, session_id)
        log = self._logs.setdefault(session_id, [])
        log.append(Message(content=question, timestamp=timestamp))

        prompt = f"Context: {session.transcript or ''}\n\nQuestion: {question}"
        if timestamp is not None:
            prompt += f" (at {format_timestamp(timestamp)})"
        turns = [
            ChatTurn(role="system", content=self._conversation.training_prompt),
            ChatTurn(role="user", content=prompt),
        ]

        try:
            answer = await self._llm.complete(turns)
        except CollaboratorError:
            raise
        except Exception as e:
            logger.error(f"[{session_id}] Error answering question: {e}")
            raise CollaboratorError("language-model", str(e)) from e

        answer = (answer or "").strip()
        if not answer:
            raise CollaboratorError("language-model", "Completion response did not include text.")

        reply = Message(content=answer, is_ai=True)
        log.append(reply)
        return reply
