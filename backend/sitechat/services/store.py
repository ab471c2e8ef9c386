"""
Persistence access layer for users, sessions and messages.

Every function takes an open SQLAlchemy session and commits its own writes.
Session lookups by id take the owner too; message reads assume the caller
has already checked ownership.
"""

from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sitechat.core.config import DEFAULT_SESSION_TITLE, HISTORY_LIMIT
from sitechat.models.chat import ChatSession, Message, User


def create_user(db: Session, username: str, password_hash: str) -> User:
    user = User(username=username, password_hash=password_hash)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.execute(select(User).where(User.username == username)).scalar_one_or_none()


def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)


def create_session(db: Session, user_id: int, title: str = DEFAULT_SESSION_TITLE) -> ChatSession:
    session = ChatSession(user_id=user_id, title=title)
    db.add(session)
    db.commit()
    db.refresh(session)
    return session


def list_sessions(db: Session, user_id: int) -> List[ChatSession]:
    """Sessions owned by the user, most recent first."""
    stmt = (
        select(ChatSession)
        .where(ChatSession.user_id == user_id)
        .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
    )
    return list(db.execute(stmt).scalars())


def get_session(db: Session, session_id: int, user_id: int) -> Optional[ChatSession]:
    stmt = select(ChatSession).where(ChatSession.id == session_id, ChatSession.user_id == user_id)
    return db.execute(stmt).scalar_one_or_none()


def get_latest_session(db: Session, user_id: int) -> Optional[ChatSession]:
    stmt = (
        select(ChatSession)
        .where(ChatSession.user_id == user_id)
        .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
        .limit(1)
    )
    return db.execute(stmt).scalar_one_or_none()


def rename_session(db: Session, session: ChatSession, title: str) -> ChatSession:
    session.title = title
    db.commit()
    db.refresh(session)
    return session


def delete_session(db: Session, session: ChatSession) -> None:
    db.delete(session)
    db.commit()


def delete_sessions_for_user(db: Session, user_id: int) -> List[int]:
    """Delete all of a user's sessions; returns the deleted ids."""
    sessions = list_sessions(db, user_id)
    deleted = [session.id for session in sessions]
    for session in sessions:
        db.delete(session)
    db.commit()
    return deleted


def add_message(
    db: Session,
    session_id: int,
    content: str,
    is_from_bot: bool = False,
    image_url: Optional[str] = None,
) -> Message:
    message = Message(
        session_id=session_id,
        content=content,
        is_from_bot=is_from_bot,
        image_url=image_url,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_messages(db: Session, session_id: int, limit: int = HISTORY_LIMIT) -> List[Message]:
    """Oldest-first page of a session's log."""
    stmt = (
        select(Message)
        .where(Message.session_id == session_id)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def get_messages_before(db: Session, session_id: int, before_id: int, limit: int) -> List[Message]:
    """The `limit` most recent messages older than `before_id`, oldest first."""
    stmt = (
        select(Message)
        .where(Message.session_id == session_id, Message.id < before_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
    )
    return list(reversed(db.execute(stmt).scalars().all()))


def count_messages(db: Session, session_id: int, is_from_bot: Optional[bool] = None) -> int:
    stmt = select(func.count(Message.id)).where(Message.session_id == session_id)
    if is_from_bot is not None:
        stmt = stmt.where(Message.is_from_bot == is_from_bot)
    return db.execute(stmt).scalar_one()
