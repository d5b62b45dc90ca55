"""Shared fakes: manual scheduler, scripted sockets, language model, publisher."""

from __future__ import annotations

import asyncio
import json
from typing import Any, List, Optional, Sequence, Union

import pytest

from avatarchat.core.models import ChatTurn, SessionConfig

_END = object()


async def settle(rounds: int = 10) -> None:
    """Let pending tasks (readers, observer coroutines) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeTimer:
    def __init__(self, delay: float, job, name: str) -> None:
        self.delay = delay
        self.job = job
        self.name = name
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class FakeScheduler:
    """Records timers; tests fire them explicitly with run_next()."""

    def __init__(self) -> None:
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, job, name: str = "") -> FakeTimer:
        timer = FakeTimer(delay, job, name)
        self.timers.append(timer)
        return timer

    @property
    def delays(self) -> List[float]:
        return [t.delay for t in self.timers]

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled() and t.job is not None]

    async def run_next(self) -> None:
        timer = self.pending[0]
        job, timer.job = timer.job, None
        await job()
        await settle()


class FakeSocket:
    """Async-iterable stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self._inbox: Optional[asyncio.Queue] = None

    @property
    def inbox(self) -> asyncio.Queue:
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    @property
    def sent_frames(self) -> List[Any]:
        return [json.loads(s) for s in self.sent]

    async def send(self, data: str) -> None:
        if self.closed:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    def push(self, frame: Union[dict, str]) -> None:
        self.inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def finish(self) -> None:
        """Remote side closes cleanly."""
        self.inbox.put_nowait(_END)

    def fail(self, exc: Optional[BaseException] = None) -> None:
        """Remote side drops the connection."""
        self.inbox.put_nowait(exc or ConnectionResetError("connection reset by peer"))

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self.inbox.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedConnector:
    """
    Connector returning the scripted outcomes in order. An outcome is a
    FakeSocket, an exception to raise, or "hang" (never completes). Once
    the script runs out every call is refused.
    """

    def __init__(self, outcomes: Sequence[Any] = ()) -> None:
        self.outcomes = list(outcomes)
        self.urls: List[str] = []
        self.sockets: List[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else ConnectionRefusedError("refused")
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        self.sockets.append(outcome)
        return outcome

    @property
    def calls(self) -> int:
        return len(self.urls)


class FakeLLM:
    """Language model returning canned replies (or raising) and recording prompts."""

    def __init__(self, replies: Sequence[Any] = ("hi there",), chunks: Sequence[str] = ()) -> None:
        self.replies = list(replies)
        self.chunks = list(chunks)
        self.calls: List[List[ChatTurn]] = []

    async def complete(self, turns: List[ChatTurn]) -> str:
        self.calls.append(list(turns))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def stream(self, turns: List[ChatTurn]):
        self.calls.append(list(turns))
        for chunk in self.chunks:
            if isinstance(chunk, BaseException):
                raise chunk
            yield chunk


class FakePublisher:
    def __init__(self, accept: bool = True) -> None:
        self.accept = accept
        self.published: List[str] = []

    async def publish(self, text: str) -> bool:
        self.published.append(text)
        return self.accept


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(endpoint="avatar.test", session_id="abc123def456")
