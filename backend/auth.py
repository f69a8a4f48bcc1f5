# backend/auth.py
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

import config
from database import get_db
from errors import Forbidden, NotAuthenticated
from models import User

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def create_access_token(user: User, expires_hours: Optional[int] = None) -> str:
    """Issue a signed session token for an authenticated user"""
    expire = datetime.utcnow() + timedelta(hours=expires_hours or config.JWT_EXPIRE_HOURS)
    claims = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "exp": expire,
    }
    return jwt.encode(claims, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise NotAuthenticated("Token expired")
    except JWTError:
        raise NotAuthenticated("Invalid token")

    if not claims.get("sub"):
        raise NotAuthenticated("Invalid token format")
    return claims


def user_from_token(db: Session, token: str) -> User:
    claims = decode_access_token(token)
    try:
        user_id = int(claims["sub"])
    except (TypeError, ValueError):
        raise NotAuthenticated("Invalid token format")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise NotAuthenticated("User not found or token invalid")
    return user


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None or not credentials.credentials:
        raise NotAuthenticated("Not authenticated - Invalid or missing token")
    return user_from_token(db, credentials.credentials.strip())


def require_role(*roles: str):
    """Dependency factory restricting a route to the given roles"""

    def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            logger.info(f"User {user.id} with role {user.role} denied; requires {roles}")
            raise Forbidden("Not authorized to access this route")
        return user

    return checker
