"""
Auth gate and the bundled credential service.

The rest of the service only relies on `AuthService.authenticate`, which turns
a bearer token into an Identity or None. Registration and login are the
reference credential issuer: bcrypt password hashes and HS256 JWTs carrying
{userId, username}.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
import structlog
from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sitechat.core.config import (
    PASSWORD_MIN_LENGTH,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    Settings,
)
from sitechat.core.errors import AuthError, ValidationError
from sitechat.models.chat import User
from sitechat.services import store

logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class Identity:
    """Who a credential belongs to."""
    user_id: int
    username: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def extract_bearer(header_value: Optional[str]) -> Optional[str]:
    """Pull the token out of an `Authorization: Bearer <token>` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class AuthService:
    """Issues and verifies credentials."""

    def __init__(self, settings: Settings):
        self._secret = settings.jwt_secret
        self._ttl = timedelta(days=settings.token_ttl_days)

    def issue_token(self, user: User) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "userId": user.id,
            "username": user.username,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=JWT_ALGORITHM)

    def authenticate(self, credential: Optional[str]) -> Optional[Identity]:
        """Return the identity behind a token, or None if it is missing or invalid."""
        if not credential:
            return None
        try:
            payload = jwt.decode(credential, self._secret, algorithms=[JWT_ALGORITHM])
        except jwt.PyJWTError as e:
            logger.debug("Token rejected", error_type=type(e).__name__)
            return None

        user_id = payload.get("userId")
        username = payload.get("username")
        if not isinstance(user_id, int) or not isinstance(username, str):
            return None
        return Identity(user_id=user_id, username=username)

    def register(self, db: Session, username: Optional[str], password: Optional[str]) -> dict:
        if not username or not password:
            raise ValidationError("Username and password required")
        if len(username) < USERNAME_MIN_LENGTH or len(username) > USERNAME_MAX_LENGTH:
            raise ValidationError(
                f"Username must be {USERNAME_MIN_LENGTH}-{USERNAME_MAX_LENGTH} characters"
            )
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
        if store.get_user_by_username(db, username):
            raise ValidationError("Username already taken")

        try:
            store.create_user(db, username, hash_password(password))
        except IntegrityError:
            # Lost a race with a concurrent registration of the same name
            db.rollback()
            raise ValidationError("Username already taken")
        logger.info("User registered", username=username)
        return self.login(db, username, password)

    def login(self, db: Session, username: Optional[str], password: Optional[str]) -> dict:
        user = store.get_user_by_username(db, username) if username else None
        if user is None or not password or not check_password(password, user.password_hash):
            raise AuthError("Invalid username or password")

        return {
            "token": self.issue_token(user),
            "user": {"id": user.id, "username": user.username},
        }


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_current_identity(request: Request) -> Identity:
    """FastAPI dependency: the caller's identity, or a 401."""
    token = extract_bearer(request.headers.get("Authorization"))
    identity = get_auth_service(request).authenticate(token)
    if identity is None:
        raise AuthError()
    return identity
