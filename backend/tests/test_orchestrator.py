"""
Tests for bot reply context building and provider outcome handling.
"""

import base64
from datetime import datetime

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from conftest import FakeProvider, build_services
from sitechat.core.config import CONTEXT_WINDOW
from sitechat.models.chat import Message
from sitechat.services.orchestrator import (
    EMPTY_REPLY_FALLBACK,
    NOT_CONFIGURED_REPLY,
    SYSTEM_PROMPT,
    UNAVAILABLE_FALLBACK,
    FailureKind,
    ProviderFailure,
    ProviderReply,
    reply_text,
)


def make_message(id, content, is_from_bot=False, image_url=None):
    return Message(
        id=id,
        session_id=1,
        content=content,
        is_from_bot=is_from_bot,
        image_url=image_url,
        created_at=datetime(2024, 1, 1, 12, 0, id),
    )


class TestReplyText:
    """Test collapsing provider outcomes into transcript text."""

    def test_success_text(self):
        assert reply_text(ProviderReply("Hi there")) == "Hi there"

    def test_failure_kinds(self):
        assert reply_text(ProviderFailure(FailureKind.UNAVAILABLE, "boom")) == UNAVAILABLE_FALLBACK
        assert reply_text(ProviderFailure(FailureKind.EMPTY, "empty")) == EMPTY_REPLY_FALLBACK
        assert reply_text(ProviderFailure(FailureKind.NOT_CONFIGURED, "no key")) == NOT_CONFIGURED_REPLY


class TestBuildContext:
    """Test provider input construction."""

    def test_roles_and_order(self, services):
        history = [
            make_message(1, "hi"),
            make_message(2, "hello!", is_from_bot=True),
        ]

        messages = services.orchestrator.build_context(history, "how are you?")

        assert isinstance(messages[0], SystemMessage)
        assert messages[0].content == SYSTEM_PROMPT
        assert [type(m) for m in messages[1:]] == [HumanMessage, AIMessage, HumanMessage]
        assert [m.content for m in messages[1:]] == ["hi", "hello!", "how are you?"]

    def test_window_keeps_most_recent(self, services):
        history = [make_message(i, f"message {i}") for i in range(1, 21)]

        messages = services.orchestrator.build_context(history, "latest")

        assert len(messages) == 1 + CONTEXT_WINDOW + 1
        assert messages[1].content == "message 11"
        assert messages[-2].content == "message 20"

    def test_local_image_inlined(self, services, settings):
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        (settings.upload_dir / "cat.jpg").write_bytes(b"\xff\xd8fake-jpeg")

        messages = services.orchestrator.build_context([], "what is this?", "/uploads/cat.jpg")

        content = messages[-1].content
        assert isinstance(content, list)
        assert content[0]["type"] == "image_url"
        expected = base64.b64encode(b"\xff\xd8fake-jpeg").decode("ascii")
        assert content[0]["image_url"]["url"] == f"data:image/jpeg;base64,{expected}"
        assert content[1] == {"type": "text", "text": "what is this?"}

    def test_remote_image_passed_through(self, services):
        history = [make_message(1, "look", image_url="https://example.com/dog.png")]

        messages = services.orchestrator.build_context(history, "and now?")

        assert messages[1].content[0]["image_url"]["url"] == "https://example.com/dog.png"

    def test_missing_image_degrades_to_text(self, services):
        messages = services.orchestrator.build_context([], "see attached", "/uploads/missing.png")
        assert messages[-1].content == "see attached"

    def test_image_outside_upload_dir_ignored(self, services):
        messages = services.orchestrator.build_context([], "sneaky", "/uploads/../../etc/passwd")
        assert messages[-1].content == "sneaky"


@pytest.mark.asyncio
class TestProduceReply:
    """Test provider outcome handling."""

    async def test_success_is_trimmed(self, session_factory, settings):
        services = build_services(session_factory, settings, FakeProvider(reply="  Hello!  \n"))
        outcome = await services.orchestrator.produce_reply([], "hi")
        assert outcome == ProviderReply("Hello!")

    async def test_empty_reply(self, session_factory, settings):
        services = build_services(session_factory, settings, FakeProvider(reply="   "))
        outcome = await services.orchestrator.produce_reply([], "hi")
        assert outcome.kind == FailureKind.EMPTY

    async def test_exception_becomes_failure(self, session_factory, settings):
        services = build_services(session_factory, settings, FakeProvider(error=RuntimeError("401 Unauthorized")))
        outcome = await services.orchestrator.produce_reply([], "hi")
        assert outcome.kind == FailureKind.UNAVAILABLE
        assert "401 Unauthorized" in outcome.reason

    async def test_timeout_becomes_failure(self, session_factory, settings):
        settings.provider_timeout = 0.05
        services = build_services(session_factory, settings, FakeProvider(delays={"hi": 1.0}))
        outcome = await services.orchestrator.produce_reply([], "hi")
        assert outcome.kind == FailureKind.UNAVAILABLE
        assert "timed out" in outcome.reason

    async def test_no_provider_is_not_configured(self, session_factory, settings):
        services = build_services(session_factory, settings, None)
        outcome = await services.orchestrator.produce_reply([], "hi")
        assert outcome.kind == FailureKind.NOT_CONFIGURED

    async def test_circuit_opens_after_repeated_failures(self, session_factory, settings):
        provider = FakeProvider(error=ConnectionError("down"))
        services = build_services(session_factory, settings, provider, failure_threshold=2)

        await services.orchestrator.produce_reply([], "one")
        await services.orchestrator.produce_reply([], "two")
        outcome = await services.orchestrator.produce_reply([], "three")

        assert outcome == ProviderFailure(FailureKind.UNAVAILABLE, "circuit breaker open")
        assert len(provider.calls) == 2

    async def test_provider_sees_history_before_trigger(self, services, make_user, make_session, session_factory, provider):
        from sitechat.services import store
        from sitechat.services.registry import RoomBinding, room_key_for

        alice = make_user("alice")
        session = make_session(alice)
        with session_factory() as db:
            store.add_message(db, session.id, "earlier", False, None)
            store.add_message(db, session.id, "earlier reply", True, None)
            trigger = store.add_message(db, session.id, "now", False, None)

        binding = RoomBinding(room_key=room_key_for(session.id), session_id=session.id, user_id=alice.user_id)
        reply = await services.orchestrator.handle(binding, trigger)

        assert reply.is_from_bot is True
        assert reply.image_url is None
        assert reply.content == "Reply to: now"
        assert [m.content for m in provider.calls[0][1:]] == ["earlier", "earlier reply", "now"]

    async def test_reply_dropped_when_session_changed_owner(self, services, make_user, make_session, session_factory):
        from sitechat.services import store
        from sitechat.services.registry import RoomBinding, room_key_for

        alice = make_user("alice")
        bob = make_user("bob")
        session = make_session(bob)
        with session_factory() as db:
            trigger = store.add_message(db, session.id, "hello", False, None)

        binding = RoomBinding(room_key=room_key_for(session.id), session_id=session.id, user_id=alice.user_id)
        reply = await services.orchestrator.handle(binding, trigger)

        assert reply is None
        with session_factory() as db:
            assert store.count_messages(db, session.id, is_from_bot=True) == 0
