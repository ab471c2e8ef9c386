"""
Session Registry for the real-time channel.

Owns the only mutable connection state in the process:
- connection id -> room binding
- room key -> live connections

Join, leave and broadcast all go through the registry, so a connection is
never half-bound and teardown on disconnect removes every trace of it.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from sitechat.core.database import run_db
from sitechat.core.errors import NotFoundError
from sitechat.models.chat import ChatSession
from sitechat.schemas.chat import ChatSession as ChatSessionSchema
from sitechat.services import sessions
from sitechat.services.auth import Identity

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class Connection:
    """One authenticated real-time client."""
    identity: Identity
    transport: Any  # anything with an async send_json(dict), e.g. a WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    async def send(self, event: str, data: Any) -> None:
        await self.transport.send_json({"event": event, "data": data})


@dataclass(frozen=True)
class RoomBinding:
    """Where a connection's traffic goes."""
    room_key: str
    session_id: int
    user_id: int


def room_key_for(session_id: int) -> str:
    return f"session:{session_id}"


def parse_session_id(raw: Any) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None


class SessionRegistry:
    """Creates, lists and validates sessions; maps connections to rooms."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        # Map room key -> {connection id: Connection}
        self._rooms: dict[str, dict[str, Connection]] = {}
        # Map connection id -> binding (reverse lookup)
        self._bindings: dict[str, RoomBinding] = {}

    async def create_session(self, identity: Identity, title: Optional[str] = None) -> ChatSession:
        return await run_db(self._session_factory, sessions.create_session, identity.user_id, title)

    async def list_sessions(self, identity: Identity) -> List[ChatSession]:
        return await run_db(self._session_factory, sessions.list_sessions, identity.user_id)

    async def get_owned_session(self, session_id: int, identity: Identity) -> ChatSession:
        return await run_db(
            self._session_factory, sessions.get_owned_session, session_id, identity.user_id
        )

    async def resolve_room(self, identity: Identity, session_id: Any = None) -> tuple[RoomBinding, ChatSession]:
        """
        Resolve the room a connection should join.

        With a session id the caller must own that session. Without one the
        caller's most recent session is used, created if they have none.

        Raises:
            NotFoundError: The id is malformed, unknown or not owned.
        """
        if session_id is None:
            session = await run_db(
                self._session_factory, sessions.get_or_create_default_session, identity.user_id
            )
        else:
            parsed = parse_session_id(session_id)
            if parsed is None:
                raise NotFoundError()
            session = await self.get_owned_session(parsed, identity)

        binding = RoomBinding(
            room_key=room_key_for(session.id),
            session_id=session.id,
            user_id=identity.user_id,
        )
        return binding, session

    async def join_room(self, connection: Connection, session_id: Any = None) -> Optional[ChatSession]:
        """
        Bind a connection to a session room and confirm with session:joined.

        Unauthorized or unknown sessions are ignored without a reply so a
        non-owner learns nothing about them.
        """
        try:
            binding, session = await self.resolve_room(connection.identity, session_id)
        except NotFoundError:
            logger.info(
                "Join rejected",
                connection_id=connection.id,
                user_id=connection.identity.user_id,
            )
            return None

        self.leave(connection)
        self._rooms.setdefault(binding.room_key, {})[connection.id] = connection
        self._bindings[connection.id] = binding

        logger.info(
            "Connection joined room",
            connection_id=connection.id,
            room=binding.room_key,
            connection_count=len(self._rooms[binding.room_key]),
        )

        await connection.send(
            "session:joined",
            ChatSessionSchema.model_validate(session).model_dump(mode="json", by_alias=True),
        )
        return session

    def leave(self, connection: Connection) -> None:
        """Remove a connection from its room, if any."""
        binding = self._bindings.pop(connection.id, None)
        if binding is None:
            return

        members = self._rooms.get(binding.room_key)
        if members is not None:
            members.pop(connection.id, None)
            if not members:
                del self._rooms[binding.room_key]

        logger.info("Connection left room", connection_id=connection.id, room=binding.room_key)

    def evict_sessions(self, session_ids: Iterable[int]) -> int:
        """
        Unbind every connection joined to one of the given sessions.

        Called after sessions are deleted so no live connection keeps
        writing to an id that no longer belongs to its user.

        Returns:
            Number of connections unbound
        """
        evicted = 0
        for session_id in session_ids:
            room_key = room_key_for(session_id)
            for connection in self.members(room_key):
                self.leave(connection)
                evicted += 1
        if evicted:
            logger.info("Connections evicted from deleted sessions", count=evicted)
        return evicted

    def binding_for(self, connection: Connection) -> Optional[RoomBinding]:
        return self._bindings.get(connection.id)

    def members(self, room_key: str) -> List[Connection]:
        return list(self._rooms.get(room_key, {}).values())

    def connection_count(self, room_key: Optional[str] = None) -> int:
        if room_key:
            return len(self._rooms.get(room_key, {}))
        return len(self._bindings)

    async def broadcast(self, room_key: str, event: str, data: Any) -> None:
        """
        Send an event to every connection in a room.

        Connections that fail to receive are dropped from the room.
        """
        disconnected = []

        for connection in self.members(room_key):
            try:
                await connection.send(event, data)
            except Exception as e:
                logger.warning(
                    "Failed to send to connection",
                    connection_id=connection.id,
                    room=room_key,
                    error=str(e),
                )
                disconnected.append(connection)

        for connection in disconnected:
            self.leave(connection)
