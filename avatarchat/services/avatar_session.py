"""
AvatarChat — Avatar Chat Session

Composition root for one chat view: builds the SessionManager and the
ConversationCoordinator, wires them together, and tears both down when
the view goes away. Nothing here is a process-wide singleton; every view
constructs its own.

    async with AvatarChatSession(llm) as chat:
        chat.on_stream_update(lambda update: player.load(update.url))
        reply = await chat.send_message("Hello!")
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.config import AvatarConfig, ReconnectConfig, avatar_cfg, reconnect_cfg
from ..core.interfaces import LanguageModel
from ..core.models import Message, SessionConfig, StreamUpdate
from ..core.scheduler import Scheduler
from ..transport.channel import Connector
from ..transport.reconnect import ReconnectionPolicy
from .coordinator import ConversationCoordinator
from .session_manager import SessionManager

logger = logging.getLogger("avatarchat.view")


class AvatarChatSession:

    def __init__(
        self,
        llm: LanguageModel,
        avatar: AvatarConfig = avatar_cfg,
        reconnect: ReconnectConfig = reconnect_cfg,
        session_id: Optional[str] = None,
        scheduler: Optional[Scheduler] = None,
        connector: Optional[Connector] = None,
        on_message: Optional[Callable[[Message], Any]] = None,
    ) -> None:
        identity = {"session_id": session_id} if session_id else {}
        config = SessionConfig(endpoint=avatar.endpoint, is_secure=avatar.is_secure, **identity)

        self.session = SessionManager(
            config,
            policy=ReconnectionPolicy.from_config(reconnect),
            scheduler=scheduler,
            connector=connector,
            connect_timeout=avatar.connect_timeout,
        )
        self.conversation = ConversationCoordinator(
            self.session, llm, on_message=on_message, name=config.session_id[:8],
        )
        self._closed = False

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    async def start(self) -> None:
        await self.session.initialize()

    def on_stream_update(self, callback: Callable[[StreamUpdate], Any]) -> Callable[[], None]:
        return self.session.on_stream_update(callback)

    def on_error(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        return self.session.on_error(callback)

    async def send_message(self, text: str) -> Message:
        return await self.conversation.send_message(text)

    async def stream_message(self, text: str) -> Message:
        return await self.conversation.stream_message(text)

    async def close(self) -> Dict[str, Any]:
        """Tear down conversation + transport; returns a short summary."""
        summary = {
            **self.session.summary(),
            "total_messages": len(self.conversation.messages),
        }
        if self._closed:
            return summary
        self._closed = True
        self.conversation.close()
        await self.session.cleanup()
        logger.info(f"[{self.session_id}] View session closed — {summary}")
        return summary

    async def __aenter__(self) -> "AvatarChatSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
