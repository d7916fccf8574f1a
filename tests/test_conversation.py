"""Tests for the in-memory conversation and its send operation."""

import asyncio

import pytest

from localchat.conversation import ERROR_MESSAGE, Conversation

from conftest import FakeEngine


def test_new_conversation_is_seeded_with_hidden_greeting():
    conversation = Conversation(greeting="Hi there")

    assert [(m.role, m.content) for m in conversation.messages] == [("system", "Hi there")]
    assert conversation.visible_messages() == []
    assert conversation.is_typing is False


def test_append_rejects_unknown_role():
    conversation = Conversation()
    with pytest.raises(ValueError):
        conversation.append("narrator", "once upon a time")


@pytest.mark.parametrize("text", ["", "   ", "\n\t", None])
async def test_blank_input_is_a_no_op(text, fake_engine):
    conversation = Conversation()

    result = await conversation.send(text, fake_engine)

    assert result is None
    assert len(conversation.messages) == 1
    assert fake_engine.calls == []


async def test_send_without_engine_is_a_no_op():
    conversation = Conversation()

    assert await conversation.send("hello", None) is None
    assert len(conversation.messages) == 1


async def test_send_appends_trimmed_user_message_and_reply(fake_engine):
    conversation = Conversation(greeting="Hello! How can I assist you today?")

    reply = await conversation.send("  What is 2 + 2?  \n", fake_engine)

    assert reply.role == "assistant"
    assert reply.content == "Hello **there**"
    assert [(m.role, m.content) for m in conversation.visible_messages()] == [
        ("user", "What is 2 + 2?"),
        ("assistant", "Hello **there**"),
    ]
    # The engine receives the full history, greeting included.
    assert fake_engine.calls == [
        [
            {"role": "system", "content": "Hello! How can I assist you today?"},
            {"role": "user", "content": "What is 2 + 2?"},
        ]
    ]
    assert conversation.is_typing is False


async def test_typing_flag_is_set_while_waiting():
    conversation = Conversation()
    seen = []

    class ObservingEngine(FakeEngine):
        async def create_chat_completion(self, messages):
            seen.append(conversation.is_typing)
            return await super().create_chat_completion(messages)

    await conversation.send("ping", ObservingEngine())

    assert seen == [True]
    assert conversation.is_typing is False


async def test_failed_engine_call_appends_one_warning(failing_engine):
    conversation = Conversation()

    reply = await conversation.send("hello", failing_engine)

    assert reply.content == ERROR_MESSAGE
    assert [(m.role, m.content) for m in conversation.visible_messages()] == [
        ("user", "hello"),
        ("assistant", ERROR_MESSAGE),
    ]
    assert conversation.is_typing is False


async def test_each_failure_appends_exactly_one_warning(failing_engine):
    conversation = Conversation()

    await conversation.send("first", failing_engine)
    await conversation.send("second", failing_engine)

    warnings = [m for m in conversation.messages if m.content == ERROR_MESSAGE]
    assert len(warnings) == 2
    assert [m.role for m in conversation.visible_messages()] == ["user", "assistant", "user", "assistant"]


async def test_malformed_reply_is_treated_as_failure():
    conversation = Conversation()

    class MalformedEngine(FakeEngine):
        async def create_chat_completion(self, messages):
            return {"choices": []}

    await conversation.send("hello", MalformedEngine())

    assert [m.content for m in conversation.visible_messages()] == ["hello", ERROR_MESSAGE]


async def test_history_is_sent_on_follow_up(fake_engine):
    conversation = Conversation(greeting=None)

    await conversation.send("one", fake_engine)
    await conversation.send("two", fake_engine)

    assert [m["content"] for m in fake_engine.calls[1]] == ["one", "Hello **there**", "two"]


class GatedEngine(FakeEngine):
    """Holds every reply until ``release`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def create_chat_completion(self, messages):
        self.started.set()
        await self.release.wait()
        return await super().create_chat_completion(messages)


async def test_reset_during_pending_reply_drops_the_reply():
    conversation = Conversation(greeting="Hi")
    engine = GatedEngine()

    pending = asyncio.create_task(conversation.send("hello", engine))
    await engine.started.wait()
    assert conversation.is_typing is True

    conversation.reset()
    engine.release.set()
    result = await pending

    assert result is None
    assert [m.role for m in conversation.messages] == ["system"]
    assert conversation.is_typing is False


async def test_failure_after_reset_is_dropped_too():
    conversation = Conversation(greeting="Hi")
    engine = GatedEngine(error=RuntimeError("boom"))

    pending = asyncio.create_task(conversation.send("hello", engine))
    await engine.started.wait()
    conversation.reset()
    engine.release.set()
    await pending

    assert [m.content for m in conversation.messages] == ["Hi"]


async def test_new_session_sends_normally_after_dropped_reply(fake_engine):
    conversation = Conversation(greeting="Hi")
    gated = GatedEngine()

    pending = asyncio.create_task(conversation.send("old", gated))
    await gated.started.wait()
    conversation.reset()
    gated.release.set()
    await pending

    reply = await conversation.send("new", fake_engine)

    assert reply.content == "Hello **there**"
    assert [m.content for m in conversation.visible_messages()] == ["new", "Hello **there**"]


async def test_non_text_reply_is_treated_as_failure():
    conversation = Conversation()

    await conversation.send("hello", FakeEngine(reply=["not", "text"]))

    assert [m.content for m in conversation.visible_messages()] == ["hello", ERROR_MESSAGE]


async def test_reset_starts_a_fresh_session(fake_engine):
    conversation = Conversation(greeting="Hi")
    await conversation.send("hello", fake_engine)

    conversation.reset()

    assert [(m.role, m.content) for m in conversation.messages] == [("system", "Hi")]
