"""
AvatarChat — Transport Channel

Owns exactly one WebSocket connection to the avatar service. Pure
connection lifecycle — no session or conversation semantics.

State machine (CHANNEL_TRANSITIONS):
    disconnected → connecting → connected → disconnected | failed

  • open()  never raises. Network errors and the bounded connect wait
            (default 5 s) end in FAILED; the caller reads the result from
            the return value and the state observer.
  • send()  only while CONNECTED. Otherwise the frame is dropped with a
            warning. There is no store-and-forward buffer.
  • close() idempotent from any state; always ends in DISCONNECTED and
            never reports itself through `on_closed`.

Inbound frames are JSON objects. `error` → on_error (state unchanged);
`url` → on_stream_url, for both the {id, url} and the {url} shape.
Anything else malformed is logged and dropped — the channel stays open.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..core.callbacks import invoke
from ..core.errors import ProtocolError, TransportError
from ..core.models import StreamUpdate
from ..core.state_machine import (
    CHANNEL_TRANSITIONS,
    ConnectionState,
    ConnectionStateMachine,
)

logger = logging.getLogger("avatarchat.transport")

Connector = Callable[[str], Awaitable[Any]]


async def websocket_connector(url: str) -> Any:
    # The channel enforces its own connect timeout
    try:
        return await websockets.connect(url, open_timeout=None)
    except (OSError, WebSocketException) as e:
        raise TransportError(f"Could not open {url}: {e}") from e


@dataclass
class ChannelStats:
    """Per-channel counters — never crash the channel."""
    opens: int = 0
    frames_sent: int = 0
    frames_dropped: int = 0
    frames_received: int = 0
    frames_malformed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TransportChannel:

    def __init__(
        self,
        name: str = "channel",
        connect_timeout: float = 5.0,
        connector: Optional[Connector] = None,
        on_state: Optional[Callable[[ConnectionState, ConnectionState, str], Any]] = None,
        on_stream_url: Optional[Callable[[StreamUpdate], Any]] = None,
        on_error: Optional[Callable[[str], Any]] = None,
        on_closed: Optional[Callable[[bool], Any]] = None,
    ) -> None:
        self.name = name
        self.stats = ChannelStats()
        self._connect_timeout = connect_timeout
        self._connector: Connector = connector or websocket_connector

        self._on_stream_url = on_stream_url
        self._on_error = on_error
        self._on_closed = on_closed
        self._sm = ConnectionStateMachine(
            CHANNEL_TRANSITIONS, name="channel", on_transition=on_state,
        )

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        # Bumped by every open() and close(); stale work compares against it
        self._generation = 0

    @property
    def state(self) -> ConnectionState:
        return self._sm.state

    @property
    def is_connected(self) -> bool:
        return self._sm.state == ConnectionState.CONNECTED

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def open(self, url: str) -> bool:
        """Connect to `url`. Returns True once CONNECTED, False on any failure."""
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.warning(f"[{self.name}] open() while {self.state.value} — ignored")
            return self.is_connected

        self._generation += 1
        generation = self._generation
        self.stats.opens += 1
        self._sm.transition(ConnectionState.CONNECTING, reason=url)

        try:
            ws = await asyncio.wait_for(self._connector(url), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            logger.error(f"[{self.name}] Connection timeout after {self._connect_timeout}s")
            self._fail_open(generation, "connect timeout")
            return False
        except asyncio.CancelledError:
            if generation == self._generation:
                self._sm.transition(ConnectionState.DISCONNECTED, reason="open cancelled")
            raise
        except TransportError as e:
            logger.error(f"[{self.name}] {e}")
            self._fail_open(generation, "transport error")
            return False
        except Exception as e:
            logger.error(f"[{self.name}] Connection failed: {e}")
            self._fail_open(generation, f"connect error: {e}")
            return False

        if generation != self._generation:
            # close() ran while we were connecting
            await self._close_socket(ws)
            return False

        self._ws = ws
        self._sm.transition(ConnectionState.CONNECTED)
        self._reader = asyncio.get_running_loop().create_task(
            self._read_loop(ws, generation), name=f"reader-{self.name}",
        )
        logger.info(f"[{self.name}] Connected to {url}")
        return True

    def _fail_open(self, generation: int, reason: str) -> None:
        if generation == self._generation:
            self._sm.transition(ConnectionState.FAILED, reason=reason)

    async def close(self) -> None:
        """Release the socket. Safe from any state, any number of times."""
        self._generation += 1

        reader, self._reader = self._reader, None
        if reader and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except (asyncio.CancelledError, Exception):
                pass

        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)

        self._sm.reset(reason="closed locally")

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"[{self.name}] Socket close error: {e}")

    # ── Outbound ────────────────────────────────────────────────────────

    async def send(self, payload: Union[Dict[str, Any], str]) -> bool:
        """Send one frame. Dropped (with a warning) unless CONNECTED."""
        if not self.is_connected or self._ws is None:
            self.stats.frames_dropped += 1
            logger.warning(f"[{self.name}] Not connected (state: {self.state.value}) — frame dropped")
            return False

        data = payload if isinstance(payload, str) else json.dumps(payload)
        try:
            await self._ws.send(data)
        except Exception as e:
            self.stats.frames_dropped += 1
            logger.warning(f"[{self.name}] Send failed — frame dropped: {e}")
            return False
        self.stats.frames_sent += 1
        return True

    # ── Inbound ─────────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any, generation: int) -> None:
        clean = True
        try:
            async for raw in ws:
                if generation != self._generation:
                    return
                self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            clean = False
            logger.warning(f"[{self.name}] Connection closed abnormally: {e}")
        except Exception as e:
            clean = False
            logger.error(f"[{self.name}] Reader error: {e}", exc_info=True)

        if generation != self._generation:
            return  # closed locally in the meantime

        self._ws = None
        self._reader = None
        target = ConnectionState.DISCONNECTED if clean else ConnectionState.FAILED
        self._sm.transition(target, reason="remote close" if clean else "abnormal close")
        logger.info(f"[{self.name}] Socket closed ({'clean' if clean else 'abnormal'})")
        invoke(self._on_closed, clean)

    def _handle_frame(self, raw: Union[str, bytes]) -> None:
        self.stats.frames_received += 1
        try:
            frame = self.parse_frame(raw)
        except ProtocolError as e:
            self.stats.frames_malformed += 1
            logger.warning(f"[{self.name}] {e}")
            return

        if frame.get("error"):
            logger.error(f"[{self.name}] Remote error: {frame['error']}")
            invoke(self._on_error, str(frame["error"]))
            return

        url = frame.get("url")
        if url:
            logger.info(f"[{self.name}] Received new stream URL: {url}")
            talk_id = frame.get("id")
            invoke(self._on_stream_url, StreamUpdate(
                url=url, talk_id=str(talk_id) if talk_id is not None else None,
            ))
            return

        logger.debug(f"[{self.name}] Ignoring frame without url/error: {frame}")

    @staticmethod
    def parse_frame(raw: Union[str, bytes]) -> Dict[str, Any]:
        """Decode one frame into a dict, or raise ProtocolError."""
        try:
            text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
            frame = json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as e:
            raise ProtocolError(raw, str(e)) from e

        if not isinstance(frame, dict):
            raise ProtocolError(raw)
        if "url" in frame and frame["url"] is not None and not isinstance(frame["url"], str):
            raise ProtocolError(raw, "url must be a string")
        return frame
