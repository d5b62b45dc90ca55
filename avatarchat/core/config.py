"""
AvatarChat — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.

Each collaborator gets its own group so a missing key only disables that
collaborator: `require()` raises ConfigurationError naming what is absent,
everything else keeps working.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Tuple

from dotenv import load_dotenv
import certifi

from .errors import ConfigurationError

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class _Required:
    """Mixin for collaborator configs: names the fields that must be set."""

    # field name -> environment variable
    _required: Dict[str, str] = {}
    _component: str = ""

    @property
    def missing(self) -> Tuple[str, ...]:
        return tuple(env for name, env in self._required.items() if not getattr(self, name))

    @property
    def is_configured(self) -> bool:
        return not self.missing

    def require(self):
        """Return self, or raise ConfigurationError listing the unset keys."""
        if self.missing:
            raise ConfigurationError(self._component, list(self.missing))
        return self


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# Avatar stream endpoint + reconnection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AvatarConfig:
    """Where the realtime avatar service lives."""
    # host[:port][/path] without a scheme; `is_secure` picks it
    endpoint: str = os.getenv("AVATAR_ENDPOINT", "localhost:8080")
    is_secure: bool = _env_bool("AVATAR_SECURE", "false")
    # Bounded wait for the socket open confirmation
    connect_timeout: float = float(os.getenv("CONNECT_TIMEOUT_S", "5.0"))


@dataclass(frozen=True)
class ReconnectConfig:
    # First retry delay (ms); doubles per consecutive failure
    base_delay_ms: int = int(os.getenv("RECONNECT_BASE_MS", "1000"))
    # Upper bound on a single delay (ms)
    max_delay_ms: int = int(os.getenv("RECONNECT_MAX_MS", "10000"))
    # Consecutive failures before the session gives up for good
    max_attempts: int = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "5"))


# ---------------------------------------------------------------------------
# Conversation tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConversationConfig:
    # How many recent turns go to the LLM with each request (0 = whole log)
    context_window: int = 10
    # Hard timeout for a single completion call (seconds)
    llm_timeout: float = 30.0
    # Completion knobs
    max_tokens: int = 800
    temperature: float = 0.7
    top_p: float = 0.95
    # Persona for the talking avatar
    system_prompt: str = (
        "You are an AI assistant trained to engage in natural conversations "
        "while being displayed as a video avatar. "
        "Keep your responses concise, engaging, and natural as if speaking in a video call. "
        "Maintain a friendly and professional tone, and remember that your responses "
        "will be converted to speech and lip-synced with the video."
    )
    # Persona for questions about an uploaded training video
    training_prompt: str = (
        "You are a helpful assistant that answers questions about the training "
        "video content using the provided transcript."
    )


# ---------------------------------------------------------------------------
# Collaborator keys
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AzureOpenAIConfig(_Required):
    """Language-generation collaborator."""
    _required = {"endpoint": "AZURE_OPENAI_ENDPOINT", "api_key": "AZURE_OPENAI_API_KEY"}
    _component = "azure-openai"

    endpoint: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
    api_key: str = os.getenv("AZURE_OPENAI_API_KEY", "")
    deployment: str = os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o-mini")
    api_version: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-08-01-preview")


@dataclass(frozen=True)
class OpenAIConfig(_Required):
    """Speech-to-text collaborator (Whisper)."""
    _required = {"api_key": "OPENAI_API_KEY"}
    _component = "whisper"

    api_key: str = os.getenv("OPENAI_API_KEY", "")
    transcribe_model: str = "whisper-1"


@dataclass(frozen=True)
class DIDConfig(_Required):
    """Talking-avatar video synthesis collaborator."""
    _required = {"api_key": "DID_API_KEY"}
    _component = "d-id"

    api_key: str = os.getenv("DID_API_KEY", "")
    base_url: str = "https://api.d-id.com"
    source_url: str = "bank://lively/"
    voice_provider: str = "microsoft"
    voice_id: str = "en-US-JennyNeural"
    request_timeout: float = 30.0


@dataclass(frozen=True)
class SpeechConfig(_Required):
    """Batch transcription of uploaded training videos."""
    _required = {"endpoint": "AZURE_SPEECH_ENDPOINT", "api_key": "AZURE_SPEECH_KEY"}
    _component = "azure-speech"

    endpoint: str = os.getenv("AZURE_SPEECH_ENDPOINT", "")
    api_key: str = os.getenv("AZURE_SPEECH_KEY", "")
    locale: str = "en-US"
    # Poll every 30 s, give up after 30 min
    poll_interval: float = 30.0
    max_polls: int = 60


@dataclass(frozen=True)
class SupabaseConfig(_Required):
    """Persistence, blob storage and auth."""
    _required = {"url": "SUPABASE_URL", "service_key": "SUPABASE_SERVICE_ROLE_KEY"}
    _component = "supabase"

    url: str = os.getenv("SUPABASE_URL", "")
    service_key: str = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
    jwt_secret: str = os.getenv("SUPABASE_JWT_SECRET", "")
    sessions_table: str = "training_sessions"
    videos_bucket: str = "training_videos"
    # Row-update subscriptions poll at this cadence (seconds)
    watch_interval: float = 5.0


# ---------------------------------------------------------------------------
# Module-level settings (immutable)
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
avatar_cfg = AvatarConfig()
reconnect_cfg = ReconnectConfig()
conversation_cfg = ConversationConfig()
azure_openai_cfg = AzureOpenAIConfig()
openai_cfg = OpenAIConfig()
did_cfg = DIDConfig()
speech_cfg = SpeechConfig()
supabase_cfg = SupabaseConfig()
