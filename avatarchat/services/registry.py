"""
AvatarChat — Session Registry

Maps a browser connection id → AvatarChatSession inside the server.
Each entry lives exactly as long as its WebSocket.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..core.interfaces import LanguageModel
from ..core.models import Message
from .avatar_session import AvatarChatSession

logger = logging.getLogger("avatarchat.registry")


class SessionRegistry:
    """Maps session_id → AvatarChatSession. Single event loop, no locking."""

    def __init__(self) -> None:
        self._sessions: Dict[str, AvatarChatSession] = {}

    def create(
        self,
        llm: LanguageModel,
        on_message: Optional[Callable[[Message], Any]] = None,
        **session_kwargs: Any,
    ) -> AvatarChatSession:
        session = AvatarChatSession(llm, on_message=on_message, **session_kwargs)
        self._sessions[session.session_id] = session
        logger.info(f"SessionRegistry: created {session.session_id} (total: {len(self._sessions)})")
        return session

    async def close_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        session = self._sessions.pop(session_id, None)
        if session:
            summary = await session.close()
            logger.info(f"SessionRegistry: removed {session_id} (total: {len(self._sessions)})")
            return summary
        return None

    async def close_all(self) -> None:
        for sid in list(self._sessions.keys()):
            await self.close_session(sid)

    def get(self, session_id: str) -> Optional[AvatarChatSession]:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def all_sessions(self) -> Dict[str, AvatarChatSession]:
        return dict(self._sessions)
