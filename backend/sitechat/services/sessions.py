"""Session operations shared by the HTTP routes and the real-time registry."""

from typing import List, Optional

from sqlalchemy.orm import Session

from sitechat.core.config import DEFAULT_SESSION_TITLE, MAX_TITLE_LENGTH
from sitechat.core.errors import NotFoundError, ValidationError
from sitechat.models.chat import ChatSession
from sitechat.services import store


def normalize_title(title: Optional[str], default: Optional[str] = DEFAULT_SESSION_TITLE) -> str:
    """Trim a title; fall back to `default` when blank, reject when there is none."""
    text = (title or "").strip()
    if not text:
        if default is None:
            raise ValidationError("Title must not be empty")
        return default
    if len(text) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return text


def derive_title(content: str, max_length: int = 40) -> Optional[str]:
    """Short session title from a first message, cut on a word boundary."""
    title = " ".join(content.split()).strip()
    if not title:
        return None
    if len(title) > max_length:
        cut = title[:max_length].rsplit(" ", 1)[0] or title[:max_length]
        title = cut + "..."
    return title


def create_session(db: Session, user_id: int, title: Optional[str] = None) -> ChatSession:
    return store.create_session(db, user_id, normalize_title(title))


def list_sessions(db: Session, user_id: int) -> List[ChatSession]:
    return store.list_sessions(db, user_id)


def get_owned_session(db: Session, session_id: int, user_id: int) -> ChatSession:
    """
    Look up a session the user owns.

    Raises:
        NotFoundError: The session does not exist or belongs to someone else.
            Both cases look the same to the caller.
    """
    session = store.get_session(db, session_id, user_id)
    if session is None:
        raise NotFoundError()
    return session


def get_or_create_default_session(db: Session, user_id: int) -> ChatSession:
    session = store.get_latest_session(db, user_id)
    if session is None:
        session = store.create_session(db, user_id, DEFAULT_SESSION_TITLE)
    return session


def rename_session(db: Session, session_id: int, user_id: int, title: Optional[str]) -> ChatSession:
    session = get_owned_session(db, session_id, user_id)
    return store.rename_session(db, session, normalize_title(title, default=None))


def delete_session(db: Session, session_id: int, user_id: int) -> None:
    session = get_owned_session(db, session_id, user_id)
    store.delete_session(db, session)


def clear_history(db: Session, user_id: int) -> List[int]:
    return store.delete_sessions_for_user(db, user_id)
