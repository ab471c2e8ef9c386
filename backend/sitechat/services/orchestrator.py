"""
Bot Orchestrator

Produces the assistant's reply to a human message:
1. Load the messages that preceded the trigger and keep the newest ones
2. Map them to system/user/assistant turns (images become multi-part content)
3. Call the provider once, bounded by a timeout and a circuit breaker
4. Collapse the outcome to transcript text, persist it and broadcast it

Provider failures never escape: they are logged with their reason and the
room receives a fixed fallback message instead.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union

import structlog
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from sitechat.core.circuit_breaker import CircuitBreaker
from sitechat.core.config import CONTEXT_FETCH_LIMIT, CONTEXT_WINDOW
from sitechat.core.database import run_db
from sitechat.core.errors import NotFoundError, ProviderError
from sitechat.core.llm import ChatProvider
from sitechat.models.chat import Message
from sitechat.schemas.chat import Message as MessageSchema
from sitechat.services import store
from sitechat.services.assets import AssetStore
from sitechat.services.registry import RoomBinding, SessionRegistry
from sitechat.services.room_queue import RoomLocks
from sitechat.services.sessions import get_owned_session

logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = """You are a friendly assistant on a personal website. The site owner has enabled you to chat with visitors.
Be helpful, concise, and warm. If someone asks for the site owner, say they can leave a message and the owner will get back to them.
Keep responses reasonably short (a few sentences) unless the user asks for more detail."""

EMPTY_REPLY_FALLBACK = "Sorry, I could not generate a reply."
UNAVAILABLE_FALLBACK = "Sorry, the assistant is temporarily unavailable. Please try again later."
NOT_CONFIGURED_REPLY = "Chatbot is not configured. Please set CHAT_API_KEY."


class FailureKind(str, Enum):
    UNAVAILABLE = "unavailable"
    EMPTY = "empty"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class ProviderReply:
    text: str


@dataclass(frozen=True)
class ProviderFailure:
    kind: FailureKind
    reason: str


ProviderOutcome = Union[ProviderReply, ProviderFailure]

_FALLBACKS = {
    FailureKind.UNAVAILABLE: UNAVAILABLE_FALLBACK,
    FailureKind.EMPTY: EMPTY_REPLY_FALLBACK,
    FailureKind.NOT_CONFIGURED: NOT_CONFIGURED_REPLY,
}


def reply_text(outcome: ProviderOutcome) -> str:
    """The string that goes into the transcript for a provider outcome."""
    if isinstance(outcome, ProviderReply):
        return outcome.text
    return _FALLBACKS[outcome.kind]


def persist_bot_reply(db: Session, session_id: int, user_id: int, text: str) -> Message:
    """Store a bot reply, provided the session still belongs to the user it was asked in."""
    get_owned_session(db, session_id, user_id)
    return store.add_message(db, session_id, text, True, None)


class BotOrchestrator:
    """Builds provider context, calls the provider and posts the reply."""

    def __init__(
        self,
        session_factory: sessionmaker,
        registry: SessionRegistry,
        locks: RoomLocks,
        assets: AssetStore,
        provider: Optional[ChatProvider],
        circuit_breaker: CircuitBreaker,
        timeout: float = 30.0,
        inline_images: bool = True,
    ):
        self._session_factory = session_factory
        self._registry = registry
        self._locks = locks
        self._assets = assets
        self._provider = provider
        self._breaker = circuit_breaker
        self._timeout = timeout
        self._inline_images = inline_images

    def _content(self, text: str, image_url: Optional[str]) -> Union[str, list]:
        parts: list = []
        if image_url:
            data_url = self._assets.materialize(image_url, inline=self._inline_images)
            if data_url:
                parts.append({"type": "image_url", "image_url": {"url": data_url}})

        if not parts:
            return text
        if text:
            parts.append({"type": "text", "text": text})
        return parts

    def build_context(
        self,
        history: Sequence[Message],
        current_text: str,
        current_image: Optional[str] = None,
    ) -> List[BaseMessage]:
        """
        Provider input for a reply.

        Args:
            history: Earlier messages of the session, oldest first
            current_text: Text of the message being answered
            current_image: Image reference of the message being answered

        Returns:
            System prompt, the last CONTEXT_WINDOW history turns, then the
            current message as the final user turn
        """
        messages: List[BaseMessage] = [SystemMessage(content=SYSTEM_PROMPT)]

        for m in list(history)[-CONTEXT_WINDOW:]:
            if m.is_from_bot:
                if m.content:
                    messages.append(AIMessage(content=m.content))
                continue

            content = self._content(m.content, m.image_url)
            if content:
                messages.append(HumanMessage(content=content))

        messages.append(HumanMessage(content=self._content(current_text, current_image)))
        return messages

    async def _call_provider(self, messages: List[BaseMessage]) -> str:
        try:
            text = await asyncio.wait_for(self._provider.complete(messages), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(f"timed out after {self._timeout}s") from e
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e
        return (text or "").strip()

    async def produce_reply(
        self,
        history: Sequence[Message],
        current_text: str,
        current_image: Optional[str] = None,
    ) -> ProviderOutcome:
        """Ask the provider for a reply; every failure becomes a ProviderFailure."""
        if self._provider is None:
            return ProviderFailure(FailureKind.NOT_CONFIGURED, "no provider API key configured")

        if not self._breaker.can_execute():
            return ProviderFailure(FailureKind.UNAVAILABLE, "circuit breaker open")

        messages = await run_in_threadpool(self.build_context, history, current_text, current_image)

        try:
            text = await self._call_provider(messages)
        except ProviderError as e:
            self._breaker.record_failure(e.message)
            return ProviderFailure(FailureKind.UNAVAILABLE, e.message)

        self._breaker.record_success()
        if not text:
            return ProviderFailure(FailureKind.EMPTY, "provider returned no content")
        return ProviderReply(text)

    async def handle(self, binding: RoomBinding, trigger: Message) -> Optional[Message]:
        """
        Reply to `trigger` in its room.

        Runs on the room's serial queue, so replies are posted in the order
        their triggers were submitted.
        """
        history = await run_db(
            self._session_factory,
            store.get_messages_before,
            binding.session_id,
            trigger.id,
            CONTEXT_FETCH_LIMIT,
        )

        outcome = await self.produce_reply(history, trigger.content, trigger.image_url)
        if isinstance(outcome, ProviderFailure):
            log = logger.warning if outcome.kind == FailureKind.EMPTY else logger.error
            log(
                "Bot reply fell back",
                room=binding.room_key,
                trigger_id=trigger.id,
                kind=outcome.kind.value,
                reason=outcome.reason,
            )

        async with self._locks.lock(binding.room_key):
            try:
                reply = await run_db(
                    self._session_factory,
                    persist_bot_reply,
                    binding.session_id,
                    binding.user_id,
                    reply_text(outcome),
                )
            except (IntegrityError, NotFoundError):
                logger.warning("Session removed before bot reply was stored", room=binding.room_key)
                return None

            await self._registry.broadcast(
                binding.room_key,
                "chat:message",
                MessageSchema.model_validate(reply).model_dump(mode="json", by_alias=True),
            )

        return reply
