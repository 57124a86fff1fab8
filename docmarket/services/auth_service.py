"""Authentication helpers for issuing and validating JWT tokens."""
from __future__ import annotations

import datetime as dt
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from ..config import get_settings
from ..database import get_session
from ..models import User, UserRole


class AuthService:
    """Provide JWT issuance and verification."""

    def __init__(self) -> None:
        settings = get_settings()
        self.jwt_secret = settings.jwt_secret
        self.jwt_cookie_name = settings.jwt_cookie_name

    def issue_token(self, user_id: str, expires_minutes: int = 60) -> str:
        """Create a signed JWT for a user."""
        payload = {
            "sub": user_id,
            "exp": dt.datetime.now(dt.timezone.utc) + dt.timedelta(minutes=expires_minutes),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm="HS256")

    def verify_token(self, token: str) -> dict:
        """Decode the JWT and return the payload."""
        return jwt.decode(token, self.jwt_secret, algorithms=["HS256"])

    def get_user(self, session: Session, user_id: str) -> Optional[User]:
        """Fetch a user by identifier."""
        return session.query(User).filter(User.id == user_id).one_or_none()


auth_service = AuthService()
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    session: Session = Depends(get_session),
) -> User:
    """Retrieve the authenticated user from the bearer token or session cookie."""
    token = credentials.credentials if credentials else request.cookies.get(auth_service.jwt_cookie_name)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    try:
        payload = auth_service.verify_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token") from exc

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token")

    user = auth_service.get_user(session, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.ADMIN:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


__all__ = ["AuthService", "auth_service", "get_current_user", "require_admin"]
