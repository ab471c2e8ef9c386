"""
Message Pipeline

Ingests a human chat message from a joined connection:
validate -> truncate -> persist -> broadcast -> schedule the bot reply.

Persist and broadcast happen under the room lock, so a broadcast is never
observed before its row exists and concurrent writers in one room cannot
reorder each other. The bot reply is handed to the room's serial queue and
does not hold up the next submission.
"""

import functools
from typing import Any, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from sitechat.core.config import DEFAULT_SESSION_TITLE, MAX_MESSAGE_LENGTH
from sitechat.core.database import run_db
from sitechat.core.errors import NotFoundError, ValidationError
from sitechat.models.chat import Message
from sitechat.schemas.chat import Message as MessageSchema
from sitechat.services import store
from sitechat.services.orchestrator import BotOrchestrator
from sitechat.services.registry import Connection, SessionRegistry
from sitechat.services.room_queue import RoomLocks, RoomTaskQueue
from sitechat.services.sessions import derive_title, get_owned_session

logger = structlog.get_logger(__name__)


def normalize_message(content: Any, image_url: Any = None) -> Tuple[str, Optional[str]]:
    """
    Trim and bound an incoming message.

    Returns:
        (text, image_url) with text at most MAX_MESSAGE_LENGTH characters

    Raises:
        ValidationError: Wrong types, or neither text nor image after trimming
    """
    if content is not None and not isinstance(content, str):
        raise ValidationError("Message content must be a string")
    if image_url is not None and not isinstance(image_url, str):
        raise ValidationError("Image URL must be a string")

    text = (content or "").strip()
    image = (image_url or "").strip() or None

    # An attached image is enough on its own; such messages are stored with
    # empty content rather than a placeholder so history shows what was sent
    if not text and not image:
        raise ValidationError("Message must not be empty")

    return text[:MAX_MESSAGE_LENGTH], image


def persist_human_message(
    db: Session,
    session_id: int,
    user_id: int,
    text: str,
    image_url: Optional[str],
) -> Message:
    """
    Store a human message; the first one also names a still-untitled session.

    Raises:
        NotFoundError: The session is gone or no longer owned by `user_id`
    """
    session = get_owned_session(db, session_id, user_id)
    message = store.add_message(db, session_id, text, False, image_url)

    if (
        session.title == DEFAULT_SESSION_TITLE
        and store.count_messages(db, session_id, is_from_bot=False) == 1
    ):
        title = derive_title(text)
        if title:
            store.rename_session(db, session, title)

    return message


class MessagePipeline:
    """Validates, persists and broadcasts human messages."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: SessionRegistry,
        orchestrator: BotOrchestrator,
        locks: RoomLocks,
        queue: RoomTaskQueue,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._orchestrator = orchestrator
        self._locks = locks
        self._queue = queue

    async def submit_human_message(
        self,
        connection: Connection,
        content: Any,
        image_url: Any = None,
    ) -> Optional[Message]:
        """
        Run one human message through the pipeline.

        Returns:
            The persisted message, or None when it was dropped (no room
            joined, invalid input, or the session vanished)
        """
        binding = self._registry.binding_for(connection)
        if binding is None:
            logger.debug("Message dropped, connection has not joined a room", connection_id=connection.id)
            return None

        try:
            text, image = normalize_message(content, image_url)
        except ValidationError as e:
            logger.debug("Message dropped", connection_id=connection.id, reason=e.message)
            return None

        async with self._locks.lock(binding.room_key):
            try:
                message = await run_db(
                    self._session_factory,
                    persist_human_message,
                    binding.session_id,
                    binding.user_id,
                    text,
                    image,
                )
            except (IntegrityError, NotFoundError):
                logger.warning("Message dropped, session no longer exists", room=binding.room_key)
                self._registry.leave(connection)
                return None

            await self._registry.broadcast(
                binding.room_key,
                "chat:message",
                MessageSchema.model_validate(message).model_dump(mode="json", by_alias=True),
            )

        logger.info(
            "Message accepted",
            room=binding.room_key,
            message_id=message.id,
            has_image=image is not None,
            length=len(text),
        )

        self._queue.submit(
            binding.room_key,
            functools.partial(self._orchestrator.handle, binding, message),
        )
        return message
