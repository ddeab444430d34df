"""Access token helpers and the credential verifier used by the realtime core."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

import jwt
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from conecta.realtime.errors import AuthenticationError

from app.config import get_settings
from app.models import User

settings = get_settings()


def create_access_token(data: Dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a signed JWT access token with an expiration time."""

    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def read_token_subject(token: str) -> int:
    """Return the user id carried by *token* or raise AuthenticationError."""

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Could not validate credentials") from exc

    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        raise AuthenticationError("Could not validate credentials") from None


def decode_access_token(token: str) -> int:
    """HTTP flavour of :func:`read_token_subject` raising 401 errors."""

    try:
        return read_token_subject(token)
    except AuthenticationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=exc.detail) from exc


class JwtCredentialVerifier:
    """Map bearer tokens to existing user ids."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def verify(self, token: str) -> int:
        user_id = read_token_subject(token)
        with self._session_factory() as db:
            if db.get(User, user_id) is None:
                raise AuthenticationError("Unknown user")
        return user_id


__all__ = [
    "JwtCredentialVerifier",
    "create_access_token",
    "decode_access_token",
    "read_token_subject",
]
