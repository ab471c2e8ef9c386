from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from sitechat.core.config import HISTORY_LIMIT
from sitechat.core.database import get_db, run_db
from sitechat.core.errors import NotFoundError
from sitechat.schemas.chat import (
    HistoryResponse,
    SessionCreate,
    SessionListResponse,
    SessionResponse,
    SessionUpdate,
)
from sitechat.services import sessions
from sitechat.services.auth import Identity, get_current_identity
from sitechat.services.history import get_history
from sitechat.services.registry import parse_session_id

router = APIRouter()


def _session_id(raw: str) -> int:
    # Malformed ids look exactly like sessions that do not exist
    session_id = parse_session_id(raw)
    if session_id is None:
        raise NotFoundError()
    return session_id


@router.get("/sessions", response_model=SessionListResponse)
def list_sessions(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    return {"sessions": sessions.list_sessions(db, identity.user_id)}


@router.post("/sessions", response_model=SessionResponse)
def create_session(
    body: Optional[SessionCreate] = None,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    title = body.title if body else None
    return {"session": sessions.create_session(db, identity.user_id, title)}


@router.patch("/sessions/{session_id}", response_model=SessionResponse)
def rename_session(
    session_id: str,
    body: SessionUpdate,
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    """Update session title."""
    return {"session": sessions.rename_session(db, _session_id(session_id), identity.user_id, body.title)}


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(
    session_id: str,
    request: Request,
    identity: Identity = Depends(get_current_identity),
):
    """Delete an owned session and its messages; live connections in its room are unbound."""
    parsed = _session_id(session_id)
    await run_db(request.app.state.session_factory, sessions.delete_session, parsed, identity.user_id)
    request.app.state.registry.evict_sessions([parsed])
    return Response(status_code=204)


@router.delete("/sessions", status_code=204)
async def clear_history(request: Request, identity: Identity = Depends(get_current_identity)):
    """Delete every session of the caller, with their messages."""
    deleted = await run_db(request.app.state.session_factory, sessions.clear_history, identity.user_id)
    request.app.state.registry.evict_sessions(deleted)
    return Response(status_code=204)


@router.get("/messages/{session_id}", response_model=HistoryResponse)
def get_messages(
    session_id: str,
    limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_LIMIT),
    identity: Identity = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    messages, session = get_history(db, _session_id(session_id), identity.user_id, limit)
    return {"messages": messages, "session": session}
