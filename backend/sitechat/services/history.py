from typing import List, Tuple

from sqlalchemy.orm import Session

from sitechat.core.config import HISTORY_LIMIT
from sitechat.models.chat import ChatSession, Message
from sitechat.services import store
from sitechat.services.sessions import get_owned_session


def get_history(db: Session, session_id: int, user_id: int, limit: int = HISTORY_LIMIT) -> Tuple[List[Message], ChatSession]:
    """
    Messages of an owned session in reading order (oldest first).

    Sessions are listed newest first, history reads oldest first.

    Raises:
        NotFoundError: The session is absent or owned by someone else.
    """
    session = get_owned_session(db, session_id, user_id)
    limit = max(1, min(limit, HISTORY_LIMIT))
    return store.get_messages(db, session.id, limit), session
