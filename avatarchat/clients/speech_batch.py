"""Batch transcription of uploaded videos (Azure Speech, REST v3.0)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from ..core.config import SpeechConfig, speech_cfg
from ..core.errors import CollaboratorError
from .http_session import borrow_session

logger = logging.getLogger("avatarchat.speech")

SERVICE = "azure-speech"

Sleep = Callable[[float], Awaitable[Any]]


class SpeechBatchClient:
    """
    Transcribe a video by URL.

    Steps: issue an access token, create a transcription job for the
    content URL, poll its status, then download the `Transcription` file.
    Polling runs every `poll_interval` seconds for at most `max_polls`.
    """

    def __init__(
        self,
        cfg: SpeechConfig = speech_cfg,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.cfg = cfg.require()
        self._session = session
        self._sleep = sleep
        self._endpoint = cfg.endpoint.rstrip("/")

    async def transcribe_url(self, content_url: str) -> str:
        async with borrow_session(self._session, timeout=60.0) as http:
            token = await self._issue_token(http)
            auth = {"Authorization": f"Bearer {token}"}

            job = await self._json(http, "POST", f"{self._endpoint}/speechtotext/v3.0/transcriptions", headers=auth, json={
                "contentUrls": [content_url],
                "properties": {
                    "diarizationEnabled": True,
                    "wordLevelTimestampsEnabled": True,
                    "punctuationMode": "DictatedAndAutomatic",
                    "profanityFilterMode": "Masked",
                },
                "locale": self.cfg.locale,
                "displayName": "training-video",
            })
            status_url = job.get("self")
            if not status_url:
                raise CollaboratorError(SERVICE, "Transcription job response had no status link")
            logger.info(f"Transcription job created: {status_url}")

            for attempt in range(1, self.cfg.max_polls + 1):
                await self._sleep(self.cfg.poll_interval)
                status = await self._json(http, "GET", status_url, headers=auth)
                state = status.get("status")
                logger.info(f"Checking transcription status (attempt {attempt}): {state}")

                if state == "Succeeded":
                    files_url = (status.get("links") or {}).get("files")
                    if not files_url:
                        raise CollaboratorError(SERVICE, "Succeeded job has no files link")
                    return await self._fetch_transcript(http, files_url, auth)
                if state == "Failed":
                    raise CollaboratorError(SERVICE, f"Transcription failed: {status.get('properties', {}).get('error')}")

        raise CollaboratorError(
            SERVICE, f"Transcription timed out after {self.cfg.max_polls} polls",
        )

    async def _issue_token(self, http: aiohttp.ClientSession) -> str:
        url = f"{self._endpoint}/sts/v1.0/issuetoken"
        headers = {"Ocp-Apim-Subscription-Key": self.cfg.api_key}
        try:
            async with http.post(url, headers=headers) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise CollaboratorError(SERVICE, f"Failed to get Azure token: {resp.status} {body}")
                return body
        except aiohttp.ClientError as e:
            raise CollaboratorError(SERVICE, str(e)) from e

    async def _fetch_transcript(self, http: aiohttp.ClientSession, files_url: str, auth: Dict[str, str]) -> str:
        files = await self._json(http, "GET", files_url, headers=auth)
        content_url = next(
            (
                (f.get("links") or {}).get("contentUrl")
                for f in files.get("values", [])
                if f.get("kind") == "Transcription"
            ),
            None,
        )
        if not content_url:
            raise CollaboratorError(SERVICE, "No Transcription file in job output")
        try:
            async with http.get(content_url) as resp:
                if resp.status >= 400:
                    raise CollaboratorError(SERVICE, f"Transcript download failed: {resp.status}")
                transcript = await resp.text()
        except aiohttp.ClientError as e:
            raise CollaboratorError(SERVICE, str(e)) from e
        logger.info(f"Transcript retrieved, length: {len(transcript)}")
        return transcript

    async def _json(self, http: aiohttp.ClientSession, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            async with http.request(method, url, **kwargs) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    logger.error(f"Azure Speech API error: {resp.status} {body}")
                    raise CollaboratorError(SERVICE, f"Azure Speech API error: {resp.status}")
                return await resp.json(content_type=None) or {}
        except aiohttp.ClientError as e:
            raise CollaboratorError(SERVICE, str(e)) from e
