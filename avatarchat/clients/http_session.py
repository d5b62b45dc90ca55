"""Shared aiohttp plumbing for the REST collaborators."""

from __future__ import annotations

from typing import Any, Optional

import aiohttp


class borrow_session:
    """Use the injected ClientSession, or open a short-lived one.

    Injected sessions are left open; owned ones close on exit.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession], timeout: float) -> None:
        self._given = session
        self._timeout = timeout
        self._owned: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> aiohttp.ClientSession:
        if self._given is not None:
            return self._given
        self._owned = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout))
        return self._owned

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._owned is not None:
            await self._owned.close()
            self._owned = None
