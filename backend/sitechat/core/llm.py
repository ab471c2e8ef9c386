from typing import Optional, Protocol, Sequence

import structlog
from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage
from langchain_ollama import ChatOllama
from langchain_openai import ChatOpenAI

from sitechat.core.config import Settings

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URLS = {
    "openai": "https://dashscope.aliyuncs.com/compatible-mode/v1",
    "ollama": "http://localhost:11434",
}


class ChatProvider(Protocol):
    """Anything that turns a conversation into reply text."""

    async def complete(self, messages: Sequence[BaseMessage]) -> Optional[str]:
        ...


def message_text(message: BaseMessage) -> str:
    """Plain text of a model response, joining text parts of multi-part content."""
    content = message.content
    if isinstance(content, str):
        return content

    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class LangChainChatProvider:
    """ChatProvider backed by a LangChain chat model."""

    def __init__(self, model: BaseChatModel, name: str):
        self.model = model
        self.name = name

    async def complete(self, messages: Sequence[BaseMessage]) -> Optional[str]:
        response = await self.model.ainvoke(list(messages))
        return message_text(response)


def get_chat_model(settings: Settings) -> Optional[BaseChatModel]:
    """
    Returns the chat model for the configured provider.

    Hosted providers need an API key; without one None is returned and the
    bot answers with the not-configured message. Ollama runs without a key.
    """
    provider = settings.provider.lower()
    base_url = settings.provider_base_url or DEFAULT_BASE_URLS.get(provider)

    if provider == "ollama":
        return ChatOllama(
            model=settings.provider_model,
            base_url=base_url,
            temperature=settings.provider_temperature,
            num_predict=settings.provider_max_tokens,
        )

    if not settings.provider_api_key:
        logger.warning("No API key set, chatbot is not configured", provider=provider)
        return None

    if provider == "anthropic":
        kwargs = {"base_url": base_url} if base_url else {}
        return ChatAnthropic(
            model=settings.provider_model,
            max_tokens=settings.provider_max_tokens,
            temperature=settings.provider_temperature,
            api_key=settings.provider_api_key,
            timeout=settings.provider_timeout,
            max_retries=0,
            **kwargs,
        )

    if provider == "openai":
        return ChatOpenAI(
            model=settings.provider_model,
            api_key=settings.provider_api_key,
            base_url=base_url,
            max_tokens=settings.provider_max_tokens,
            temperature=settings.provider_temperature,
            timeout=settings.provider_timeout,
            max_retries=0,
        )

    raise ValueError(f"Unknown chat provider: {settings.provider}")


def get_chat_provider(settings: Settings) -> Optional[ChatProvider]:
    model = get_chat_model(settings)
    if model is None:
        return None

    logger.info("Chat provider initialized", provider=settings.provider, model=settings.provider_model)
    return LangChainChatProvider(model, settings.provider)
