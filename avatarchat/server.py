"""
AvatarChat — FastAPI Server

================================================================================
Architecture:
  • Per-WebSocket AvatarChatSession (SessionManager + ConversationCoordinator)
    held in a SessionRegistry for exactly as long as the browser socket
  • The avatar relay (/video) turns each published `{text}` frame into a
    talking-avatar video and answers with its `{id, url}`
  • REST proxies for chat completion and speech-to-text keep vendor keys on
    the server
  • Training videos: upload, background transcription, questions about a
    moment of the video
  • Collaborators are built once per app; one with missing keys answers 503
    naming the variables to set, the rest keep working
================================================================================

Endpoints:
  GET  /health                              — server health
  POST /chat/completions                    — {messages} → {content}
  POST /transcribe                          — {audio, mime_type} → {text}
  WS   /video?session=...                   — avatar relay
  WS   /ws/chat                             — realtime avatar chat
  POST /training/sessions                   — upload a training video
  GET  /training/sessions/{session_id}      — session + question log
  POST /training/sessions/{session_id}/questions

Client → Server messages (/ws/chat):
  { type: "send_message", text: "..." }     → one conversation cycle
  { type: "send_message", text, stream: true }
                                            → same, AI message grows per chunk
  { type: "audio", audio, mime_type }       → transcribe, then converse
                                            (also honours `stream`)
  { type: "ping" }                          → keepalive

Server → Client messages (/ws/chat):
  { type: "session_started", data: {...} }  → ack
  { type: "chat", data: {...} }             → conversation message
  { type: "stream_update", data: {...} }    → new avatar video URL
  { type: "error", message: "..." }         → error
  { type: "pong" }                          → keepalive ack
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

import jwt
from fastapi import Depends, FastAPI, File, Header, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .clients.azure_openai import AzureChatClient
from .clients.did import DIDClient
from .clients.speech_batch import SpeechBatchClient
from .clients.store import InMemoryStore, SupabaseStore
from .clients.transcriber import WhisperTranscriber
from .core.config import server_cfg, supabase_cfg
from .core.errors import CollaboratorError, ConfigurationError, SessionClosedError
from .core.interfaces import LanguageModel, MediaSynthesizer, SpeechToText
from .core.models import ChatTurn, Message, StreamUpdate
from .services.registry import SessionRegistry
from .services.training import TrainingService
from .services.transcripts import TranscriptJob

VERSION = "1.2.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("avatarchat")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@dataclass
class Collaborators:
    """Everything the endpoints talk to. `unavailable` maps component → missing env vars."""
    llm: Optional[LanguageModel] = None
    transcriber: Optional[SpeechToText] = None
    synthesizer: Optional[MediaSynthesizer] = None
    training: Optional[TrainingService] = None
    transcripts: Optional[TranscriptJob] = None
    jwt_secret: str = ""
    unavailable: Dict[str, List[str]] = field(default_factory=dict)
    # Extra AvatarChatSession kwargs (avatar config, scheduler, connector)
    session_options: Dict[str, Any] = field(default_factory=dict)

    def configured(self) -> Dict[str, bool]:
        return {
            "language_model": self.llm is not None,
            "transcriber": self.transcriber is not None,
            "synthesizer": self.synthesizer is not None,
            "training": self.training is not None,
            "auth": bool(self.jwt_secret),
        }


def build_collaborators() -> Collaborators:
    """Construct every collaborator that has its settings; record the rest."""
    collabs = Collaborators(jwt_secret=supabase_cfg.jwt_secret)

    def attempt(factory):
        try:
            return factory()
        except ConfigurationError as e:
            collabs.unavailable[e.component] = e.missing
            logger.warning(f"⚠️  {e}")
            return None

    collabs.llm = attempt(AzureChatClient)
    collabs.transcriber = attempt(WhisperTranscriber)
    collabs.synthesizer = attempt(DIDClient)

    if supabase_cfg.is_configured:
        store = SupabaseStore()
        blobs = store
    else:
        logger.warning("⚠️  Supabase not configured — training sessions kept in memory")
        store = blobs = InMemoryStore(bucket=supabase_cfg.videos_bucket)

    speech = attempt(SpeechBatchClient)
    if speech is not None:
        collabs.transcripts = TranscriptJob(store, speech)
    collabs.training = TrainingService(store, blobs, llm=collabs.llm, transcripts=collabs.transcripts)

    if not supabase_cfg.jwt_secret:
        collabs.unavailable.setdefault("auth", []).append("SUPABASE_JWT_SECRET")
    return collabs


def _unavailable(collabs: Collaborators, component: str) -> JSONResponse:
    missing = collabs.unavailable.get(component, [])
    error = ConfigurationError(component, missing) if missing else f"{component} is not configured"
    return JSONResponse(status_code=503, content={"error": str(error)})


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class ChatTurnIn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    messages: List[ChatTurnIn]


class TranscribeRequest(BaseModel):
    audio: str
    mime_type: str = "audio/webm"


class QuestionRequest(BaseModel):
    question: str
    timestamp: Optional[float] = None


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class AuthError(Exception):
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def current_user(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Return the `sub` of a valid Supabase access token."""
    collabs: Collaborators = request.app.state.collaborators
    if not collabs.jwt_secret:
        raise AuthError(503, str(ConfigurationError("auth", ["SUPABASE_JWT_SECRET"])))
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError(401, "User not authenticated")

    token = authorization.split(" ", 1)[1].strip()
    try:
        claims = jwt.decode(token, collabs.jwt_secret, algorithms=["HS256"], audience="authenticated")
    except jwt.PyJWTError as e:
        logger.info(f"Rejected token: {e}")
        raise AuthError(401, "Invalid or expired token") from e

    user_id = claims.get("sub")
    if not user_id:
        raise AuthError(401, "Token has no subject")
    return str(user_id)


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(collaborators: Optional[Collaborators] = None) -> FastAPI:
    collabs = collaborators or build_collaborators()
    registry = SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("🚀 AvatarChat Backend starting...")
        logger.info(f"   Collaborators configured: {collabs.configured()}")
        yield
        logger.info("🛑 Shutting down — closing all sessions...")
        await registry.close_all()
        if collabs.transcripts is not None:
            await collabs.transcripts.stop()
        logger.info("🛑 AvatarChat Backend stopped")

    app = FastAPI(
        title="AvatarChat — Realtime Avatar Conversations",
        version=VERSION,
        description=(
            "Chat with a talking video avatar: answers from a language model are "
            "lip-synced and streamed back as video, with question answering over "
            "uploaded training videos."
        ),
        lifespan=lifespan,
    )
    app.state.collaborators = collabs
    app.state.registry = registry

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(server_cfg.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthError)
    async def auth_error(request: Request, exc: AuthError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    # -----------------------------------------------------------------------
    # REST Endpoints
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": VERSION,
            "configured": collabs.configured(),
            "unavailable": collabs.unavailable,
            "active_sessions": registry.active_count,
        }

    @app.post("/chat/completions")
    async def chat_completions(body: ChatCompletionRequest):
        if collabs.llm is None:
            return _unavailable(collabs, "azure-openai")
        turns = [ChatTurn(role=m.role, content=m.content) for m in body.messages]
        try:
            content = await collabs.llm.complete(turns)
        except CollaboratorError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})
        return {"content": content}

    @app.post("/transcribe")
    async def transcribe(body: TranscribeRequest):
        if collabs.transcriber is None:
            return _unavailable(collabs, "whisper")
        try:
            text = await collabs.transcriber.transcribe(body.audio, body.mime_type)
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except CollaboratorError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})
        return {"text": text}

    # -----------------------------------------------------------------------
    # Training videos
    # -----------------------------------------------------------------------

    @app.post("/training/sessions")
    async def upload_training_video(
        file: UploadFile = File(...),
        user_id: str = Depends(current_user),
    ):
        if collabs.training is None:
            return _unavailable(collabs, "supabase")
        content_type = file.content_type or ""
        if not content_type.startswith("video/"):
            return JSONResponse(status_code=400, content={"error": f"Expected video, got {content_type}"})
        try:
            session = await collabs.training.upload_video(
                user_id, file.filename or "video.mp4", await file.read(), content_type,
            )
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except CollaboratorError as e:
            logger.error(f"Training upload failed: {e}")
            return JSONResponse(status_code=502, content={"error": f"Upload failed: {str(e)[:200]}"})
        return JSONResponse(status_code=201, content=session.to_dict())

    @app.get("/training/sessions/{session_id}")
    async def training_session(session_id: str, user_id: str = Depends(current_user)):
        if collabs.training is None:
            return _unavailable(collabs, "supabase")
        try:
            session = await collabs.training.get_session(user_id, session_id)
        except KeyError:
            return JSONResponse(status_code=404, content={"error": "session not found"})
        return {
            **session.to_dict(),
            "messages": [m.to_dict() for m in collabs.training.messages(session_id)],
        }

    @app.post("/training/sessions/{session_id}/questions")
    async def ask_question(session_id: str, body: QuestionRequest, user_id: str = Depends(current_user)):
        if collabs.training is None:
            return _unavailable(collabs, "supabase")
        if collabs.llm is None:
            return _unavailable(collabs, "azure-openai")
        try:
            answer = await collabs.training.ask_question(user_id, session_id, body.question, body.timestamp)
        except KeyError:
            return JSONResponse(status_code=404, content={"error": "session not found"})
        except ValueError as e:
            return JSONResponse(status_code=400, content={"error": str(e)})
        except CollaboratorError as e:
            return JSONResponse(status_code=502, content={"error": str(e)})
        return {
            "answer": answer.to_dict(),
            "messages": [m.to_dict() for m in collabs.training.messages(session_id)],
        }

    # -----------------------------------------------------------------------
    # WebSocket: avatar relay
    # -----------------------------------------------------------------------

    @app.websocket("/video")
    async def avatar_relay(ws: WebSocket, session: str = ""):
        """
        Realtime avatar endpoint the SessionManager connects to.
        Every `{text}` frame becomes a talk; the reply carries its video URL.
        The last talk is released when the relay socket closes.
        """
        await ws.accept()
        tag = session[:8] or "relay"
        logger.info(f"[{tag}] Avatar relay connected")
        last_talk: Optional[str] = None

        async def send(data: Dict[str, Any]) -> None:
            try:
                await ws.send_text(json.dumps(data))
            except Exception:
                pass

        try:
            while True:
                raw = await ws.receive_text()
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    frame = None
                if not isinstance(frame, dict):
                    await send({"error": "Malformed frame"})
                    continue

                if frame.get("type") == "init":
                    continue

                text = (frame.get("text") or "").strip()
                if not text:
                    continue
                if collabs.synthesizer is None:
                    await send({"error": str(ConfigurationError("d-id", collabs.unavailable.get("d-id", [])))})
                    continue

                try:
                    update = await collabs.synthesizer.create_talk(text)
                except (CollaboratorError, ValueError) as e:
                    logger.error(f"[{tag}] Talk failed: {e}")
                    await send({"error": str(e)[:200]})
                    continue
                last_talk = update.talk_id or last_talk
                await send({"id": update.talk_id, "url": update.url})

        except WebSocketDisconnect:
            logger.info(f"[{tag}] Avatar relay disconnected")
        except Exception as e:
            logger.error(f"[{tag}] Avatar relay error: {e}", exc_info=True)
        finally:
            if last_talk and collabs.synthesizer is not None:
                await collabs.synthesizer.stop_talk(last_talk)

    # -----------------------------------------------------------------------
    # WebSocket: per-session avatar chat
    # -----------------------------------------------------------------------

    @app.websocket("/ws/chat")
    async def websocket_chat(ws: WebSocket):
        """One AvatarChatSession per connection, closed when the socket goes."""
        await ws.accept()

        async def send(data: Dict[str, Any]) -> None:
            try:
                await ws.send_text(json.dumps(data))
            except Exception:
                pass

        if collabs.llm is None:
            await send({"type": "error", "message": str(ConfigurationError(
                "azure-openai", collabs.unavailable.get("azure-openai", []),
            ))})
            await ws.close()
            return

        def on_chat(msg: Message):
            # Serialize now; streamed chunks keep growing the same message
            return send({"type": "chat", "data": msg.to_dict()})

        async def on_stream_update(update: StreamUpdate) -> None:
            await send({"type": "stream_update", "data": update.to_dict()})

        async def on_error(message: str) -> None:
            await send({"type": "error", "message": message})

        chat = registry.create(collabs.llm, on_message=on_chat, **collabs.session_options)
        session_id = chat.session_id
        chat.on_stream_update(on_stream_update)
        chat.on_error(on_error)

        async def converse(text: str, stream: bool) -> bool:
            """One conversation cycle; False once the session is closed."""
            try:
                if stream:
                    await chat.stream_message(text)
                else:
                    await chat.send_message(text)
            except CollaboratorError as e:
                logger.warning(f"[{session_id}] Chat failed: {e}")
                await send({"type": "error", "message": "Failed to get a response"})
            except SessionClosedError:
                return False
            return True

        try:
            await chat.start()
            await send({"type": "session_started", "data": chat.session.summary()})

            while True:
                raw = await ws.receive_text()

                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if not isinstance(message, dict):
                    continue

                msg_type = message.get("type", "")
                stream = bool(message.get("stream"))

                # ── Chat ──
                if msg_type == "send_message":
                    text = (message.get("text") or "").strip()
                    if not text:
                        continue
                    if not await converse(text, stream):
                        break

                # ── Voice ──
                elif msg_type == "audio":
                    if collabs.transcriber is None:
                        await send({"type": "error", "message": str(ConfigurationError(
                            "whisper", collabs.unavailable.get("whisper", []),
                        ))})
                        continue
                    try:
                        text = await collabs.transcriber.transcribe(
                            message.get("audio") or "", message.get("mime_type") or "audio/webm",
                        )
                    except (CollaboratorError, ValueError) as e:
                        logger.warning(f"[{session_id}] Transcription failed: {e}")
                        await send({"type": "error", "message": "Failed to transcribe audio"})
                        continue
                    if not text:
                        continue
                    if not await converse(text, stream):
                        break

                # ── Keepalive ──
                elif msg_type == "ping":
                    await send({"type": "pong"})

        except WebSocketDisconnect:
            logger.info(f"[{session_id}] WebSocket disconnected")
        except Exception as e:
            logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
        finally:
            await registry.close_session(session_id)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "avatarchat.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        reload=True,
        log_level="info",
    )
