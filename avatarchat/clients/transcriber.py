"""Speech-to-text collaborator: base64 audio in, transcript out (Whisper)."""

from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from ..core.config import OpenAIConfig, openai_cfg
from ..core.errors import CollaboratorError

logger = logging.getLogger("avatarchat.stt")

SERVICE = "whisper"

_EXTENSIONS = {
    "audio/webm": "webm",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/mp4": "mp4",
    "audio/aac": "m4a",
    "audio/ogg": "oga",
    "audio/opus": "ogg",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
}


def filename_for_mime(mime_type: str) -> str:
    """Return an upload filename whose extension matches `mime_type`.

    MIME parameters (e.g. 'audio/webm;codecs=opus') are ignored. Unknown
    types raise ValueError instead of sending a format the API rejects.
    """
    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    suffix = _EXTENSIONS.get(mime)
    if suffix is None:
        raise ValueError(f"Unsupported or unknown audio MIME type: '{mime_type}'")
    return f"audio.{suffix}"


class WhisperTranscriber:
    """Convert base64 audio blobs into text transcripts."""

    def __init__(self, cfg: OpenAIConfig = openai_cfg, client: Optional[Any] = None) -> None:
        self.cfg = cfg.require() if client is None else cfg
        self.client = client or AsyncOpenAI(api_key=cfg.api_key)

    async def transcribe(self, audio_b64: str, mime_type: str = "audio/webm") -> str:
        """Return a whitespace-trimmed transcript for the provided audio.

        Args:
            audio_b64: Base64-encoded audio payload.
            mime_type: MIME type of the recording, used for the file name.

        Returns:
            The transcript text returned by Whisper.
        """
        try:
            audio_bytes = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("audio must be valid base64") from exc
        if not audio_bytes:
            raise ValueError("audio must contain data for transcription.")

        audio_file = io.BytesIO(audio_bytes)
        audio_file.name = filename_for_mime(mime_type)

        try:
            response = await self.client.audio.transcriptions.create(
                model=self.cfg.transcribe_model,
                file=audio_file,
            )
        except Exception as exc:
            logger.error("Whisper transcription request failed: %s", exc)
            raise CollaboratorError(SERVICE, str(exc)) from exc

        transcript = getattr(response, "text", None)
        if transcript is None:
            raise CollaboratorError(SERVICE, "Transcription response did not include text.")
        return transcript.strip()
