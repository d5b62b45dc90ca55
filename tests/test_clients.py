import base64
from types import SimpleNamespace

import pytest

from avatarchat.clients.azure_openai import AzureChatClient
from avatarchat.clients.did import DIDClient
from avatarchat.clients.transcriber import WhisperTranscriber, filename_for_mime
from avatarchat.core.config import AzureOpenAIConfig, DIDConfig, OpenAIConfig
from avatarchat.core.errors import CollaboratorError, ConfigurationError
from avatarchat.core.models import ChatTurn


# ── Configuration ───────────────────────────────────────────────────────────

def test_missing_keys_name_the_variables():
    with pytest.raises(ConfigurationError) as info:
        AzureChatClient(AzureOpenAIConfig(endpoint="", api_key=""))
    assert info.value.missing == ["AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY"]
    assert "AZURE_OPENAI_API_KEY" in str(info.value)


# ── Azure OpenAI ────────────────────────────────────────────────────────────

class FakeCompletions:
    def __init__(self, content=None, error=None, chunks=()):
        self.content, self.error, self.chunks = content, error, chunks
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        if kwargs.get("stream"):
            return self._stream()
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))])

    async def _stream(self):
        for text in self.chunks:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])


def chat_client(completions):
    return AzureChatClient(
        AzureOpenAIConfig(endpoint="https://x.openai.azure.com", api_key="k", deployment="gpt-4o-mini"),
        client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
    )


async def test_complete_sends_turns_and_knobs():
    completions = FakeCompletions(content="hi there")
    text = await chat_client(completions).complete([ChatTurn("user", "hello")])

    assert text == "hi there"
    request = completions.requests[0]
    assert request["model"] == "gpt-4o-mini"
    assert request["messages"] == [{"role": "user", "content": "hello"}]
    assert request["max_tokens"] == 800


async def test_complete_wraps_errors():
    with pytest.raises(CollaboratorError) as info:
        await chat_client(FakeCompletions(error=RuntimeError("429"))).complete([ChatTurn("user", "x")])
    assert info.value.service == "azure-openai"


async def test_stream_yields_non_empty_deltas():
    client = chat_client(FakeCompletions(chunks=["Hi", None, " there"]))
    assert [c async for c in client.stream([ChatTurn("user", "x")])] == ["Hi", " there"]


# ── Whisper ─────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("mime, name", [
    ("audio/webm", "audio.webm"),
    ("audio/webm;codecs=opus", "audio.webm"),
    ("AUDIO/WAV", "audio.wav"),
])
def test_filename_for_mime(mime, name):
    assert filename_for_mime(mime) == name


def test_unknown_mime_rejected():
    with pytest.raises(ValueError):
        filename_for_mime("video/quicktime")


async def test_transcribe_trims_text():
    seen = {}

    async def create(model, file):
        seen["name"] = file.name
        return SimpleNamespace(text="  hello  ")

    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))
    stt = WhisperTranscriber(OpenAIConfig(api_key="k"), client=client)

    audio = base64.b64encode(b"RIFF....").decode()
    assert await stt.transcribe(audio, "audio/wav") == "hello"
    assert seen["name"] == "audio.wav"


async def test_transcribe_rejects_empty_audio():
    stt = WhisperTranscriber(OpenAIConfig(api_key="k"), client=SimpleNamespace())
    with pytest.raises(ValueError):
        await stt.transcribe("", "audio/webm")


# ── D-ID ────────────────────────────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status, body):
        self.status, self.body = status, body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        return self.body

    async def text(self):
        return str(self.body)


class FakeHTTP:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return FakeResponse(*self.responses.pop(0))


async def test_create_talk_polls_until_result(monkeypatch):
    monkeypatch.setattr("avatarchat.clients.did.POLL_INTERVAL_S", 0)
    http = FakeHTTP([
        (201, {"id": "tlk_1", "status": "created"}),
        (200, {"id": "tlk_1", "status": "started"}),
        (200, {"id": "tlk_1", "status": "done", "result_url": "https://cdn.test/tlk_1.mp4"}),
    ])
    client = DIDClient(DIDConfig(api_key="user:secret"), session=http)

    update = await client.create_talk("Hello there")

    assert (update.talk_id, update.url) == ("tlk_1", "https://cdn.test/tlk_1.mp4")
    method, url, kwargs = http.calls[0]
    assert (method, url) == ("POST", "https://api.d-id.com/talks")
    assert kwargs["json"]["script"]["input"] == "Hello there"
    assert kwargs["headers"]["Authorization"].startswith("Basic ")
    assert [c[1] for c in http.calls[1:]] == ["https://api.d-id.com/talks/tlk_1"] * 2


async def test_create_talk_error_status():
    client = DIDClient(DIDConfig(api_key="k"), session=FakeHTTP([(402, {"kind": "InsufficientCredits"})]))
    with pytest.raises(CollaboratorError) as info:
        await client.create_talk("Hello")
    assert info.value.service == "d-id"


async def test_stop_talk_is_best_effort():
    client = DIDClient(DIDConfig(api_key="k"), session=FakeHTTP([(500, {"error": "down"})]))
    await client.stop_talk("tlk_1")
