import asyncio

import pytest

from avatarchat.core.errors import CollaboratorError, SessionClosedError
from avatarchat.services.coordinator import ConversationCoordinator

from conftest import FakeLLM, FakePublisher


def make_coordinator(llm, publisher=None, **kwargs):
    publisher = publisher or FakePublisher()
    return ConversationCoordinator(publisher, llm, system_prompt="be brief", **kwargs), publisher


async def test_send_message_round_trip():
    coordinator, publisher = make_coordinator(FakeLLM(["hi there"]))

    reply = await coordinator.send_message("hello")

    assert reply.content == "hi there" and reply.is_ai
    assert [(m.content, m.is_ai) for m in coordinator.messages] == [("hello", False), ("hi there", True)]
    assert publisher.published == ["hi there"]


async def test_prompt_has_system_turn_and_history():
    llm = FakeLLM(["one", "two"])
    coordinator, _ = make_coordinator(llm)

    await coordinator.send_message("first")
    await coordinator.send_message("second")

    turns = llm.calls[-1]
    assert [(t.role, t.content) for t in turns] == [
        ("system", "be brief"),
        ("user", "first"),
        ("assistant", "one"),
        ("user", "second"),
    ]


async def test_context_window_limits_history():
    llm = FakeLLM(["a", "b", "c"])
    coordinator, _ = make_coordinator(llm, context_window=2)

    await coordinator.send_message("q1")
    await coordinator.send_message("q2")

    assert [t.content for t in llm.calls[-1]] == ["be brief", "a", "q2"]


async def test_model_failure_keeps_user_message_only():
    coordinator, publisher = make_coordinator(FakeLLM([RuntimeError("rate limited")]))

    with pytest.raises(CollaboratorError):
        await coordinator.send_message("hello")

    assert [(m.content, m.is_ai) for m in coordinator.messages] == [("hello", False)]
    assert publisher.published == []


async def test_model_timeout_is_collaborator_error():
    class SlowLLM(FakeLLM):
        async def complete(self, turns):
            await asyncio.sleep(1)

    coordinator, publisher = make_coordinator(SlowLLM(), llm_timeout=0.01)

    with pytest.raises(CollaboratorError, match="timed out"):
        await coordinator.send_message("hello")
    assert len(coordinator.messages) == 1


async def test_empty_completion_is_an_error():
    coordinator, publisher = make_coordinator(FakeLLM(["   "]))

    with pytest.raises(CollaboratorError):
        await coordinator.send_message("hello")
    assert publisher.published == []


async def test_reply_is_kept_when_publish_is_dropped():
    coordinator, publisher = make_coordinator(FakeLLM(["hi"]), publisher=FakePublisher(accept=False))

    await coordinator.send_message("hello")

    assert publisher.published == ["hi"]
    assert coordinator.messages[-1].content == "hi"


async def test_result_after_close_is_discarded():
    release = asyncio.Event()

    class GatedLLM(FakeLLM):
        async def complete(self, turns):
            await release.wait()
            return "too late"

    coordinator, publisher = make_coordinator(GatedLLM())
    pending = asyncio.create_task(coordinator.send_message("hello"))
    await asyncio.sleep(0)

    coordinator.close()
    release.set()

    with pytest.raises(SessionClosedError):
        await pending
    assert [m.content for m in coordinator.messages] == ["hello"]
    assert publisher.published == []


class ClosingPublisher:
    """Closes the conversation while the frame is going out."""

    def __init__(self):
        self.coordinator = None
        self.published = []

    async def publish(self, text):
        self.published.append(text)
        self.coordinator.close()
        return True


async def test_close_during_publish_drops_reply():
    seen = []
    publisher = ClosingPublisher()
    coordinator, _ = make_coordinator(FakeLLM(["hi there"]), publisher, on_message=seen.append)
    publisher.coordinator = coordinator

    with pytest.raises(SessionClosedError):
        await coordinator.send_message("hello")

    assert publisher.published == ["hi there"]
    assert [(m.content, m.is_ai) for m in coordinator.messages] == [("hello", False)]
    assert [m.content for m in seen] == ["hello"]


async def test_close_during_stream_publish_raises():
    seen = []
    publisher = ClosingPublisher()
    coordinator, _ = make_coordinator(FakeLLM(chunks=["Hi", " there"]), publisher, on_message=seen.append)
    publisher.coordinator = coordinator

    with pytest.raises(SessionClosedError):
        await coordinator.stream_message("hello")

    assert publisher.published == ["Hi there"]
    assert len(seen) == 3


async def test_blank_message_rejected():
    coordinator, _ = make_coordinator(FakeLLM())
    with pytest.raises(ValueError):
        await coordinator.send_message("   ")
    assert coordinator.messages == []


def test_chunks_coalesce_into_last_ai_message():
    coordinator, _ = make_coordinator(FakeLLM())

    coordinator.append_ai_chunk("Hel")
    coordinator.append_ai_chunk("lo")

    assert [(m.content, m.is_ai) for m in coordinator.messages] == [("Hello", True)]


async def test_chunk_after_user_message_starts_new_ai_message():
    coordinator, _ = make_coordinator(FakeLLM(["first"]))
    await coordinator.send_message("q")

    coordinator._append_user("again")
    coordinator.append_ai_chunk("new")

    assert [(m.content, m.is_ai) for m in coordinator.messages] == [
        ("q", False), ("first", True), ("again", False), ("new", True),
    ]


async def test_stream_message_publishes_full_text_once():
    seen = []
    coordinator, publisher = make_coordinator(
        FakeLLM(chunks=["Hi", " there", "!"]), on_message=lambda m: seen.append(m.content),
    )

    reply = await coordinator.stream_message("hello")

    assert reply.content == "Hi there!"
    assert publisher.published == ["Hi there!"]
    assert [(m.content, m.is_ai) for m in coordinator.messages] == [("hello", False), ("Hi there!", True)]
    assert seen == ["hello", "Hi", "Hi there", "Hi there!"]


async def test_stream_failure_keeps_partial_reply_unpublished():
    coordinator, publisher = make_coordinator(FakeLLM(chunks=["Par", RuntimeError("dropped")]))

    with pytest.raises(CollaboratorError):
        await coordinator.stream_message("hello")

    assert [m.content for m in coordinator.messages] == ["hello", "Par"]
    assert publisher.published == []


def test_messages_is_a_copy():
    coordinator, _ = make_coordinator(FakeLLM())
    coordinator.append_ai_chunk("x")
    coordinator.messages.clear()
    assert len(coordinator.messages) == 1
