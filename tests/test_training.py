import asyncio

import pytest

from avatarchat.clients.store import InMemoryStore
from avatarchat.core.errors import CollaboratorError
from avatarchat.services.training import TrainingService, format_timestamp
from avatarchat.services.transcripts import TranscriptJob

from conftest import FakeLLM, settle


class FakeSpeech:
    def __init__(self, transcript="step one, then step two", error=None):
        self.transcript = transcript
        self.error = error
        self.urls = []

    async def transcribe_url(self, content_url):
        self.urls.append(content_url)
        if self.error:
            raise self.error
        return self.transcript


def make_service(llm=None, speech=None):
    store = InMemoryStore(bucket="training_videos")
    job = TranscriptJob(store, speech) if speech else None
    return TrainingService(store, store, llm=llm or FakeLLM(["Step two is X."]), transcripts=job), store


@pytest.mark.parametrize("seconds, expected", [
    (0, "00:00:00"),
    (95, "00:01:35"),
    (3725.9, "01:02:05"),
])
def test_format_timestamp(seconds, expected):
    assert format_timestamp(seconds) == expected


async def test_upload_stores_blob_and_record():
    service, store = make_service()

    session = await service.upload_video("alice", "intro.mp4", b"\x00\x01")

    assert session.user_id == "alice"
    assert session.title == "intro.mp4"
    assert session.video_url.startswith("memory://training_videos/alice/")
    assert session.video_url.endswith("-intro.mp4")
    assert (await service.get_session("alice", session.id)).id == session.id


async def test_upload_requires_user():
    service, _ = make_service()
    with pytest.raises(PermissionError):
        await service.upload_video("", "intro.mp4", b"data")


async def test_transcript_job_fills_record_and_wakes_waiter():
    speech = FakeSpeech()
    service, _ = make_service(speech=speech)

    session = await service.upload_video("alice", "intro.mp4", b"data")
    transcript = await service.wait_for_transcript("alice", session.id, timeout=1.0)

    assert transcript == "step one, then step two"
    assert speech.urls == [session.video_url]
    assert (await service.get_session("alice", session.id)).transcript == transcript


async def test_wait_for_transcript_times_out():
    service, _ = make_service()
    session = await service.upload_video("alice", "intro.mp4", b"data")
    with pytest.raises(asyncio.TimeoutError):
        await service.wait_for_transcript("alice", session.id, timeout=0.01)


async def test_failed_transcription_leaves_record_untouched():
    service, store = make_service(speech=FakeSpeech(error=CollaboratorError("azure-speech", "boom")))
    session = await service.upload_video("alice", "intro.mp4", b"data")
    await settle()
    assert (await store.select("alice", session.id)).get("transcript") is None


async def test_question_prompt_includes_transcript_and_moment():
    llm = FakeLLM(["Step two is X."])
    service, store = make_service(llm=llm)
    session = await service.upload_video("alice", "intro.mp4", b"data")
    await store.update("alice", session.id, {"transcript": "step one, then step two"})

    answer = await service.ask_question("alice", session.id, "What is step two?", timestamp=95)

    assert answer.content == "Step two is X." and answer.is_ai
    prompt = llm.calls[0][-1].content
    assert prompt == "Context: step one, then step two\n\nQuestion: What is step two? (at 00:01:35)"
    log = service.messages(session.id)
    assert [(m.content, m.timestamp) for m in log] == [("What is step two?", 95), ("Step two is X.", None)]


async def test_failed_answer_keeps_question():
    service, _ = make_service(llm=FakeLLM([RuntimeError("down")]))
    session = await service.upload_video("alice", "intro.mp4", b"data")

    with pytest.raises(CollaboratorError):
        await service.ask_question("alice", session.id, "Anything?")
    assert [m.content for m in service.messages(session.id)] == ["Anything?"]


async def test_questions_are_user_scoped():
    service, _ = make_service()
    session = await service.upload_video("alice", "intro.mp4", b"data")
    with pytest.raises(KeyError):
        await service.ask_question("bob", session.id, "Peek?")


async def test_transcript_job_run_for_missing_session():
    job = TranscriptJob(InMemoryStore(), FakeSpeech())
    assert await job.run("alice", "nope") is None


async def test_blank_answer_is_rejected():
    service, _ = make_service(llm=FakeLLM(["   "]))
    session = await service.upload_video("alice", "intro.mp4", b"data")

    with pytest.raises(CollaboratorError):
        await service.ask_question("alice", session.id, "Anything?", timestamp=3)
    assert [(m.content, m.is_ai) for m in service.messages(session.id)] == [("Anything?", False)]
