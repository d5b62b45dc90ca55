"""Talking-avatar synthesis collaborator (D-ID talks API)."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..core.config import DIDConfig, did_cfg
from ..core.errors import CollaboratorError
from ..core.models import StreamUpdate
from .http_session import borrow_session

logger = logging.getLogger("avatarchat.did")

SERVICE = "d-id"

# Talk status polling while the video renders
POLL_INTERVAL_S = 1.0
MAX_POLLS = 30


class DIDClient:
    """Create a talk for a piece of text and return its playable URL."""

    def __init__(self, cfg: DIDConfig = did_cfg, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.cfg = cfg.require()
        self._session = session
        token = base64.b64encode(f"{cfg.api_key}:".encode()).decode()
        self._headers = {
            "Authorization": f"Basic {token}",
            "Content-Type": "application/json",
        }

    def _talk_payload(self, text: str) -> Dict[str, Any]:
        return {
            "source_url": self.cfg.source_url,
            "script": {
                "type": "text",
                "input": text,
                "provider": {"type": self.cfg.voice_provider, "voice_id": self.cfg.voice_id},
            },
            "config": {"stitch": True, "result_format": "mp4", "streaming": True},
            "driver_url": self.cfg.source_url,
            "presenter_config": {"crop": {"type": "rectangle"}},
        }

    async def create_talk(self, text: str) -> StreamUpdate:
        """POST /talks, then wait until the talk has a result URL."""
        if not text or not text.strip():
            raise ValueError("Talk text is required.")

        logger.info(f"Creating D-ID talk ({len(text)} chars)")
        async with self._client() as http:
            data = await self._request(http, "POST", "/talks", json=self._talk_payload(text))
            talk_id = data.get("id")
            url = data.get("result_url")

            polls = 0
            while not url and talk_id and polls < MAX_POLLS:
                polls += 1
                await asyncio.sleep(POLL_INTERVAL_S)
                data = await self._request(http, "GET", f"/talks/{talk_id}")
                if data.get("status") in ("error", "rejected"):
                    raise CollaboratorError(SERVICE, f"Talk {talk_id} failed: {data.get('error') or data.get('status')}")
                url = data.get("result_url")

        if not url:
            raise CollaboratorError(SERVICE, f"Talk {talk_id} produced no result URL")
        logger.info(f"D-ID talk {talk_id} ready: {url}")
        return StreamUpdate(url=url, talk_id=str(talk_id) if talk_id else None)

    async def stop_talk(self, talk_id: str) -> None:
        """Best-effort delete of a talk; failures are only logged."""
        try:
            async with self._client() as http:
                await self._request(http, "DELETE", f"/talks/{talk_id}")
        except Exception as e:
            logger.warning(f"Failed to stop talk {talk_id}: {e}")

    # ── HTTP ────────────────────────────────────────────────────────────

    def _client(self) -> borrow_session:
        return borrow_session(self._session, self.cfg.request_timeout)

    async def _request(self, http: aiohttp.ClientSession, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with http.request(method, f"{self.cfg.base_url}{path}", headers=self._headers, **kwargs) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.error(f"D-ID API error: {resp.status} {body}")
                    raise CollaboratorError(SERVICE, f"D-ID API error: {resp.status} {body}")
                if resp.status == 204:
                    return {}
                return await resp.json(content_type=None) or {}
        except aiohttp.ClientError as e:
            raise CollaboratorError(SERVICE, str(e)) from e

