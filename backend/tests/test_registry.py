"""
Tests for the session registry: room joins, ownership and broadcast.
"""

import pytest

from conftest import connect
from sitechat.core.errors import NotFoundError
from sitechat.services import store
from sitechat.services.registry import parse_session_id, room_key_for


class TestParseSessionId:
    """Test session id coercion from client payloads."""

    def test_valid_ids(self):
        assert parse_session_id(5) == 5
        assert parse_session_id(" 12 ") == 12

    def test_invalid_ids(self):
        assert parse_session_id(True) is None
        assert parse_session_id("abc") is None
        assert parse_session_id({"id": 1}) is None
        assert parse_session_id(-3) == -3


@pytest.mark.asyncio
class TestSessionRegistry:
    """Test SessionRegistry functionality."""

    async def test_join_owned_session(self, services, make_user, make_session):
        alice = make_user("alice")
        session = make_session(alice, "Garden")
        conn = connect(alice)

        joined = await services.registry.join_room(conn, session.id)

        assert joined.id == session.id
        assert services.registry.binding_for(conn).room_key == room_key_for(session.id)
        assert services.registry.connection_count(room_key_for(session.id)) == 1
        confirmation = conn.transport.events("session:joined")[0]
        assert confirmation["id"] == session.id
        assert confirmation["title"] == "Garden"
        assert "createdAt" in confirmation

    async def test_join_foreign_session_is_silent(self, services, make_user, make_session):
        alice = make_user("alice")
        mallory = make_user("mallory")
        session = make_session(alice)
        conn = connect(mallory)

        joined = await services.registry.join_room(conn, session.id)

        assert joined is None
        assert conn.transport.sent == []
        assert services.registry.binding_for(conn) is None

    async def test_join_unknown_and_malformed_ids_are_silent(self, services, make_user):
        alice = make_user("alice")
        conn = connect(alice)

        assert await services.registry.join_room(conn, 9999) is None
        assert await services.registry.join_room(conn, "not-an-id") is None
        assert conn.transport.sent == []

    async def test_get_owned_session_hides_foreign_sessions(self, services, make_user, make_session):
        alice = make_user("alice")
        mallory = make_user("mallory")
        session = make_session(alice)

        with pytest.raises(NotFoundError):
            await services.registry.get_owned_session(session.id, mallory)

    async def test_join_without_id_creates_default_session(self, services, make_user, session_factory):
        alice = make_user("alice")
        conn = connect(alice)

        joined = await services.registry.join_room(conn, None)

        assert joined.title == "New Chat"
        with session_factory() as db:
            assert [s.id for s in store.list_sessions(db, alice.user_id)] == [joined.id]

    async def test_join_without_id_reuses_latest_session(self, services, make_user, make_session):
        alice = make_user("alice")
        make_session(alice, "Older")
        newest = make_session(alice, "Newest")
        conn = connect(alice)

        joined = await services.registry.join_room(conn, None)

        assert joined.id == newest.id

    async def test_rejoin_moves_connection(self, services, make_user, make_session):
        alice = make_user("alice")
        first = make_session(alice)
        second = make_session(alice)
        conn = connect(alice)

        await services.registry.join_room(conn, first.id)
        await services.registry.join_room(conn, second.id)

        assert services.registry.connection_count(room_key_for(first.id)) == 0
        assert services.registry.connection_count(room_key_for(second.id)) == 1

    async def test_leave_removes_mapping(self, services, make_user, make_session):
        alice = make_user("alice")
        session = make_session(alice)
        conn = connect(alice)
        await services.registry.join_room(conn, session.id)

        services.registry.leave(conn)
        services.registry.leave(conn)

        assert services.registry.binding_for(conn) is None
        assert services.registry.connection_count() == 0
        assert services.registry.members(room_key_for(session.id)) == []

    async def test_broadcast_drops_failed_connections(self, services, make_user, make_session):
        alice = make_user("alice")
        session = make_session(alice)
        healthy = connect(alice)
        broken = connect(alice)
        await services.registry.join_room(healthy, session.id)
        await services.registry.join_room(broken, session.id)
        broken.transport.fail = True

        await services.registry.broadcast(room_key_for(session.id), "chat:message", {"content": "hi"})

        assert healthy.transport.events("chat:message") == [{"content": "hi"}]
        assert services.registry.members(room_key_for(session.id)) == [healthy]

    async def test_create_and_list_sessions(self, services, make_user):
        alice = make_user("alice")

        first = await services.registry.create_session(alice)
        second = await services.registry.create_session(alice, "  Second  ")
        listed = await services.registry.list_sessions(alice)

        assert first.title == "New Chat"
        assert second.title == "Second"
        assert [s.id for s in listed] == [second.id, first.id]

    async def test_evict_sessions_unbinds_members(self, services, make_user, make_session):
        alice = make_user("alice")
        doomed = make_session(alice)
        kept = make_session(alice)
        first, second, other = connect(alice), connect(alice), connect(alice)
        await services.registry.join_room(first, doomed.id)
        await services.registry.join_room(second, doomed.id)
        await services.registry.join_room(other, kept.id)

        evicted = services.registry.evict_sessions([doomed.id, 424242])

        assert evicted == 2
        assert services.registry.binding_for(first) is None
        assert services.registry.binding_for(second) is None
        assert services.registry.binding_for(other).session_id == kept.id
