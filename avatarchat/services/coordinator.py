"""
AvatarChat — Conversation Coordinator

================================================================================
ONE REQUEST / RESPONSE CYCLE
================================================================================

    send_message(text)
        1. append the user message to the log
        2. ask the language model (system prompt + recent turns)
        3. publish the answer to the avatar session for lip-synced video
        4. append the AI message and return it

If step 2 fails the error goes back to the caller: no AI message, no
publish, and the user's own message stays in the log. It is never rolled
back.

stream_message(text) is the incremental variant: chunks from the model are
coalesced into the last AI message as they arrive, and the full text is
published once the stream ends.

The coordinator does NOT handle media transport — that's the
SessionManager's job. This module handles the dialogue log.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional, Protocol

from ..core.callbacks import invoke
from ..core.config import conversation_cfg
from ..core.errors import CollaboratorError, SessionClosedError
from ..core.interfaces import LanguageModel
from ..core.models import ChatTurn, Message

logger = logging.getLogger("avatarchat.conversation")


class Publisher(Protocol):

    async def publish(self, text: str) -> bool:
        ...


class ConversationCoordinator:
    """
    Orchestrates the dialogue between the user and the avatar.

    Responsibilities:
      - Maintain the ordered message log
      - Build the role-tagged prompt for the language model
      - Forward answers to the avatar session
      - Coalesce streamed AI chunks
    """

    def __init__(
        self,
        publisher: Publisher,
        llm: LanguageModel,
        system_prompt: str = conversation_cfg.system_prompt,
        context_window: int = conversation_cfg.context_window,
        llm_timeout: float = conversation_cfg.llm_timeout,
        on_message: Optional[Callable[[Message], Any]] = None,
        name: str = "",
    ) -> None:
        self._publisher = publisher
        self._llm = llm
        self._system_prompt = system_prompt
        self._context_window = context_window
        self._llm_timeout = llm_timeout
        self._on_message = on_message
        self._name = name or "conversation"

        self._messages: List[Message] = []
        self._closed = False

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting results. In-flight model calls are discarded."""
        if not self._closed:
            self._closed = True
            logger.info(f"[{self._name}] Conversation closed ({len(self._messages)} messages)")

    # ── Prompt ──────────────────────────────────────────────────────────

    def build_turns(self) -> List[ChatTurn]:
        """System prompt followed by the most recent turns, oldest first."""
        history = self._messages
        if self._context_window > 0:
            history = history[-self._context_window:]
        turns = [ChatTurn(role="system", content=self._system_prompt)]
        turns.extend(ChatTurn(role=m.role, content=m.content) for m in history)
        return turns

    # ── Request / response ──────────────────────────────────────────────

    async def send_message(self, text: str) -> Message:
        """Run one full cycle and return the AI message."""
        self._append_user(text)
        turns = self.build_turns()

        try:
            answer = await asyncio.wait_for(self._llm.complete(turns), timeout=self._llm_timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[{self._name}] Language model timed out ({self._llm_timeout}s)")
            raise CollaboratorError("language-model", f"timed out after {self._llm_timeout}s") from e
        except CollaboratorError:
            raise
        except Exception as e:
            logger.warning(f"[{self._name}] Language model failed: {e}")
            raise CollaboratorError("language-model", str(e)) from e

        self._ensure_open()
        answer = (answer or "").strip()
        if not answer:
            raise CollaboratorError("language-model", "Completion response did not include text.")

        await self._publisher.publish(answer)
        self._ensure_open()
        return self._append(Message(content=answer, is_ai=True))

    async def stream_message(self, text: str) -> Message:
        """Like send_message, but the AI message grows chunk by chunk."""
        self._append_user(text)
        turns = self.build_turns()

        parts: List[str] = []
        try:
            async for chunk in self._llm.stream(turns):
                self._ensure_open()
                if not chunk:
                    continue
                parts.append(chunk)
                self.append_ai_chunk(chunk)
        except (CollaboratorError, SessionClosedError):
            raise
        except Exception as e:
            logger.warning(f"[{self._name}] Language model stream failed: {e}")
            raise CollaboratorError("language-model", str(e)) from e

        self._ensure_open()
        full = "".join(parts).strip()
        if not full:
            raise CollaboratorError("language-model", "Completion stream was empty.")

        await self._publisher.publish(full)
        self._ensure_open()
        return self._messages[-1]

    def append_ai_chunk(self, chunk: str) -> Message:
        """
        Coalesce a streamed chunk into the last AI message, or start a new AI
        message when the last one came from the user.
        """
        self._ensure_open()
        if self._messages and self._messages[-1].is_ai:
            last = self._messages[-1]
            last.content += chunk
            invoke(self._on_message, last)
            return last
        return self._append(Message(content=chunk, is_ai=True))

    # ── Internals ───────────────────────────────────────────────────────

    def _append_user(self, text: str) -> Message:
        self._ensure_open()
        text = (text or "").strip()
        if not text:
            raise ValueError("Message text is required.")
        return self._append(Message(content=text))

    def _append(self, message: Message) -> Message:
        self._messages.append(message)
        invoke(self._on_message, message)
        return message

    def _ensure_open(self) -> None:
        if self._closed:
            logger.info(f"[{self._name}] Result arrived after teardown — discarded")
            raise SessionClosedError("Conversation was closed")
