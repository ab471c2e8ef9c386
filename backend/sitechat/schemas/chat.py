from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime


class CamelModel(BaseModel):
    """Serializes with camelCase keys; accepts either form on input."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class User(CamelModel):
    id: int
    username: str


class ChatSession(CamelModel):
    id: int
    title: str
    created_at: datetime

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime) -> str:
        return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()


class Message(CamelModel):
    """A message exactly as it is broadcast and as history returns it."""
    id: int
    session_id: int
    content: str
    is_from_bot: bool
    image_url: Optional[str] = None
    created_at: datetime

    @field_serializer("created_at")
    def _serialize_created_at(self, value: datetime) -> str:
        return value.isoformat() + "Z" if value.tzinfo is None else value.isoformat()


class Credentials(BaseModel):
    username: Optional[str] = None
    password: Optional[str] = None


class SessionCreate(BaseModel):
    title: Optional[str] = None


class SessionUpdate(BaseModel):
    title: Optional[str] = None


class IncomingChatMessage(CamelModel):
    """Client payload of a chat:message event."""
    content: Optional[str] = None
    image_url: Optional[str] = None


class AuthResponse(BaseModel):
    token: str
    user: User


class MeResponse(BaseModel):
    user: User


class SessionResponse(BaseModel):
    session: ChatSession


class SessionListResponse(BaseModel):
    sessions: List[ChatSession]


class HistoryResponse(BaseModel):
    messages: List[Message]
    session: ChatSession


class UploadResponse(CamelModel):
    image_url: str
