"""
AvatarChat — Connection State Machine

Enforces the connection lifecycle:
    disconnected → connecting → connected → disconnected | failed

The channel and the session share the states but not the rules: a channel
may be reopened after it failed, a session that ran out of retries may not.
All transitions go through this module so illegitimate states are
impossible and every transition is logged.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger("avatarchat.state")


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


Transitions = Dict[ConnectionState, Set[ConnectionState]]

# A channel can be reopened after any kind of close
CHANNEL_TRANSITIONS: Transitions = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING:   {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.FAILED},
    ConnectionState.CONNECTED:    {ConnectionState.DISCONNECTED, ConnectionState.FAILED},
    ConnectionState.FAILED:       {ConnectionState.DISCONNECTED, ConnectionState.CONNECTING},
}

# FAILED is terminal for a session; only reset() (cleanup) leaves it
SESSION_TRANSITIONS: Transitions = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.FAILED},
    ConnectionState.CONNECTING:   {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.FAILED},
    ConnectionState.CONNECTED:    {ConnectionState.DISCONNECTED, ConnectionState.FAILED},
    ConnectionState.FAILED:       set(),
}

HISTORY_MAX = 50


class ConnectionStateMachine:
    """
    Enforces legal state transitions and notifies a listener.

    Usage:
        sm = ConnectionStateMachine(CHANNEL_TRANSITIONS, name="channel", on_transition=cb)
        sm.transition(ConnectionState.CONNECTING)   # OK
        sm.transition(ConnectionState.CONNECTED)    # OK
        sm.transition(ConnectionState.CONNECTING)   # illegal from CONNECTED → raises
    """

    def __init__(
        self,
        transitions: Transitions,
        name: str = "",
        on_transition: Optional[Callable[[ConnectionState, ConnectionState, str], None]] = None,
    ) -> None:
        self._transitions = transitions
        self._name = name
        self._state = ConnectionState.DISCONNECTED
        self._on_transition = on_transition
        self._history: Deque[Dict] = deque(maxlen=HISTORY_MAX)
        self._entered_at = time.time()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def can_transition(self, target: ConnectionState) -> bool:
        return target == self._state or target in self._transitions.get(self._state, set())

    def transition(self, target: ConnectionState, reason: str = "") -> None:
        """
        Attempt a state transition. Raises ValueError on illegal transitions.
        """
        if target == self._state:
            return  # same state: no-op

        allowed = self._transitions.get(self._state, set())
        if target not in allowed:
            raise ValueError(
                f"Illegal {self._name} transition: {self._state.value} → {target.value}. "
                f"Allowed from {self._state.value}: {sorted(s.value for s in allowed)}. "
                f"Reason: {reason}"
            )
        self._apply(target, reason)

    def reset(self, reason: str = "reset") -> None:
        """Force DISCONNECTED from any state (teardown only)."""
        if self._state != ConnectionState.DISCONNECTED:
            self._apply(ConnectionState.DISCONNECTED, reason)

    def _apply(self, target: ConnectionState, reason: str) -> None:
        prev = self._state
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        self._state = target
        self._entered_at = now

        logger.info(
            f"{self._name.upper()} STATE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"State transition callback error: {e}")
