"""
AvatarChat — Session Manager

================================================================================
ONE LOGICAL CONVERSATION ↔ ONE STREAMING CONNECTION
================================================================================

1. IDENTITY: A SessionManager is built around a SessionConfig whose id is
   generated once. The media URL is derived from id + endpoint, so the UI
   can show a poster before any socket exists.

2. CONNECT: initialize() publishes the media URL to observers, opens the
   TransportChannel and, once connected, sends an `init` handshake:
       { "type": "init", "sessionId": "<id>" }

3. RECONNECT: Every failed open and every remote close is one failure
   cycle fed to the ReconnectionPolicy. The returned delay is handed to the
   injected Scheduler; the timer calls _connect() again. Exhaustion moves
   the session to FAILED for good — a new session is required.

4. FAN-OUT: on_stream_update() registers observers. The last known URL is
   replayed synchronously to every new observer, so a late-mounting view
   immediately has something to render.

5. TEARDOWN: cleanup() cancels the pending timer, closes the channel,
   clears the URL and the attempt counter. It is idempotent, and once it
   ran nothing the socket still delivers reaches an observer.

Transport failures never escape this class: callers see state changes and
error events, not exceptions.
================================================================================
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ..core.callbacks import invoke
from ..core.config import avatar_cfg, reconnect_cfg
from ..core.models import SessionConfig, StreamUpdate
from ..core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from ..core.state_machine import (
    SESSION_TRANSITIONS,
    ConnectionState,
    ConnectionStateMachine,
)
from ..transport.channel import Connector, TransportChannel
from ..transport.reconnect import ReconnectionPolicy

logger = logging.getLogger("avatarchat.session")

StreamObserver = Callable[[StreamUpdate], Any]
ErrorObserver = Callable[[str], Any]


class SessionManager:
    """
    The only component UI code talks to for realtime state.

    Lifecycle:
        manager = SessionManager(SessionConfig(endpoint="avatar.example.com", is_secure=True))
        unsubscribe = manager.on_stream_update(lambda update: render(update.url))
        await manager.initialize()
        await manager.publish("Hello there")
        await manager.cleanup()
    """

    def __init__(
        self,
        config: SessionConfig,
        policy: Optional[ReconnectionPolicy] = None,
        scheduler: Optional[Scheduler] = None,
        connector: Optional[Connector] = None,
        connect_timeout: float = avatar_cfg.connect_timeout,
    ) -> None:
        self._config = config
        self._policy = policy or ReconnectionPolicy.from_config(reconnect_cfg)
        self._scheduler = scheduler or AsyncioScheduler()
        self._sm = ConnectionStateMachine(SESSION_TRANSITIONS, name="session")
        self._channel = TransportChannel(
            name=config.session_id[:8],
            connect_timeout=connect_timeout,
            connector=connector,
            on_stream_url=self._handle_stream_update,
            on_error=self._handle_remote_error,
            on_closed=self._handle_channel_closed,
        )

        self._stream_observers: List[StreamObserver] = []
        self._error_observers: List[ErrorObserver] = []
        self._current: Optional[StreamUpdate] = None

        self._timer: Optional[TimerHandle] = None
        self._connecting = False
        self._initialized = False
        self._torn_down = False
        self.connect_attempts = 0

        logger.info(f"[{self.session_id}] Session manager created")

    # ── Read-only state ─────────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._config.session_id

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._sm.state

    @property
    def is_connected(self) -> bool:
        return self._sm.state == ConnectionState.CONNECTED

    @property
    def is_torn_down(self) -> bool:
        return self._torn_down

    @property
    def current_stream_url(self) -> Optional[str]:
        return self._current.url if self._current else None

    @property
    def attempts(self) -> int:
        """Consecutive failed connection cycles since the last success."""
        return self._policy.attempts

    @property
    def history(self) -> List[Dict]:
        return self._sm.history

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "stream_url": self.current_stream_url,
            "attempts": self.attempts,
            "connect_attempts": self.connect_attempts,
            "channel": self._channel.stats.to_dict(),
        }

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Publish the initial media URL, then connect."""
        if self._torn_down:
            logger.warning(f"[{self.session_id}] initialize() after cleanup — ignored")
            return
        if self._initialized:
            logger.warning(f"[{self.session_id}] Already initialized")
            return
        self._initialized = True

        media_url = self._config.media_url
        logger.info(f"[{self.session_id}] Setting up video URL: {media_url}")
        self._handle_stream_update(StreamUpdate(url=media_url))

        await self._connect()

    async def _connect(self) -> None:
        """One connection attempt. Serialized: never two at once."""
        self._timer = None
        if self._torn_down or self._connecting:
            return
        if self.state in (ConnectionState.CONNECTED, ConnectionState.FAILED):
            return

        self._connecting = True
        self.connect_attempts += 1
        self._sm.transition(
            ConnectionState.CONNECTING, reason=f"attempt {self.connect_attempts}",
        )
        try:
            connected = await self._channel.open(self._config.socket_url)
        finally:
            self._connecting = False

        if self._torn_down:
            return

        if not connected:
            self._sm.transition(ConnectionState.DISCONNECTED, reason="connect failed")
            self._schedule_reconnect()
            return

        self._policy.record_success()
        self._sm.transition(ConnectionState.CONNECTED)
        logger.info(f"[{self.session_id}] WebSocket connected successfully")
        await self._channel.send({"type": "init", "sessionId": self.session_id})

    def _schedule_reconnect(self) -> None:
        delay = self._policy.record_failure()
        if delay is None:
            logger.error(f"[{self.session_id}] Max reconnection attempts reached")
            self._sm.transition(ConnectionState.FAILED, reason="reconnect budget exhausted")
            self._notify_error("Max reconnection attempts reached")
            return

        self._timer = self._scheduler.call_later(
            delay, self._connect, name=f"reconnect-{self.session_id[:8]}",
        )

    async def cleanup(self) -> None:
        """Tear everything down. Safe to call any number of times."""
        first = not self._torn_down
        self._torn_down = True

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        await self._channel.close()

        self._current = None
        self._policy.reset()
        self._sm.reset(reason="cleanup")
        self._stream_observers.clear()
        self._error_observers.clear()

        if first:
            logger.info(f"[{self.session_id}] Cleaning up session")

    # ── Outbound ────────────────────────────────────────────────────────

    async def publish(self, text: str) -> bool:
        """
        Forward text to the avatar service. Dropped with a warning when not
        connected — there is no retry queue. Never raises.
        """
        if self._torn_down:
            logger.warning(f"[{self.session_id}] publish() after cleanup — dropped")
            return False
        if not self._channel.is_connected:
            logger.warning(
                f"[{self.session_id}] WebSocket is not connected (State: {self.state.value}) — message dropped"
            )
            return False
        logger.info(f"[{self.session_id}] Sending message to WebSocket ({len(text)} chars)")
        return await self._channel.send({
            "type": "message",
            "sessionId": self.session_id,
            "text": text,
        })

    # ── Observers ───────────────────────────────────────────────────────

    def on_stream_update(self, callback: StreamObserver) -> Callable[[], None]:
        """
        Register a stream observer and replay the current URL to it
        synchronously. Returns an unsubscribe function.
        """
        if self._torn_down:
            logger.warning(f"[{self.session_id}] on_stream_update() after cleanup — ignored")
            return lambda: None

        self._stream_observers.append(callback)
        if self._current is not None:
            invoke(callback, self._current)

        def unsubscribe() -> None:
            if callback in self._stream_observers:
                self._stream_observers.remove(callback)

        return unsubscribe

    def on_error(self, callback: ErrorObserver) -> Callable[[], None]:
        """Register for remote `error` frames and the terminal failure."""
        if self._torn_down:
            return lambda: None
        self._error_observers.append(callback)

        def unsubscribe() -> None:
            if callback in self._error_observers:
                self._error_observers.remove(callback)

        return unsubscribe

    # ── Channel callbacks ───────────────────────────────────────────────

    def _handle_stream_update(self, update: StreamUpdate) -> None:
        if self._torn_down:
            return
        self._current = update
        for callback in list(self._stream_observers):
            invoke(callback, update)

    def _handle_remote_error(self, message: str) -> None:
        if self._torn_down:
            return
        self._notify_error(message)

    def _handle_channel_closed(self, clean: bool) -> None:
        if self._torn_down:
            return
        logger.info(f"[{self.session_id}] WebSocket closed ({'clean' if clean else 'abnormal'})")
        if self.state == ConnectionState.CONNECTED:
            self._sm.transition(ConnectionState.DISCONNECTED, reason="remote close")
        self._schedule_reconnect()

    def _notify_error(self, message: str) -> None:
        for callback in list(self._error_observers):
            invoke(callback, message)
