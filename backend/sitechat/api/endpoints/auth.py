from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from sitechat.core.database import get_db
from sitechat.core.errors import AuthError
from sitechat.schemas.chat import AuthResponse, Credentials, MeResponse
from sitechat.services import store
from sitechat.services.auth import AuthService, Identity, get_auth_service, get_current_identity

router = APIRouter()


@router.post("/register", response_model=AuthResponse)
def register(
    credentials: Credentials,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    return auth.register(db, credentials.username, credentials.password)


@router.post("/login", response_model=AuthResponse)
def login(
    credentials: Credentials,
    db: Session = Depends(get_db),
    auth: AuthService = Depends(get_auth_service),
):
    return auth.login(db, credentials.username, credentials.password)


@router.get("/me", response_model=MeResponse)
def me(identity: Identity = Depends(get_current_identity), db: Session = Depends(get_db)):
    user = store.get_user_by_id(db, identity.user_id)
    if user is None:
        raise AuthError("User not found")
    return {"user": user}
