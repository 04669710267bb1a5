"""
Refund Adjudication Engine - Authentication Utilities
Password hashing, JWT tokens, and reviewer auth dependencies
"""
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .database import get_db
from .models.db_models import ReviewerDB, ReviewerRole

# Configuration
SECRET_KEY = os.getenv("JWT_SECRET_KEY", "refund-engine-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 12

# Bearer token security
security = HTTPBearer()


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode('utf-8'), hashed_password.encode('utf-8'))


def create_access_token(reviewer_id: str, email: str, role: str) -> str:
    """Create a JWT access token carrying the reviewer's role."""
    expire = datetime.utcnow() + timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    to_encode = {
        "sub": reviewer_id,
        "email": email,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


async def get_current_reviewer(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> ReviewerDB:
    """
    Dependency to get the authenticated reviewer.
    jose rejects expired tokens during decode.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_token(credentials.credentials)
    if payload is None or payload.get("sub") is None:
        raise credentials_exception

    reviewer = db.query(ReviewerDB).filter(ReviewerDB.id == payload["sub"]).first()
    if reviewer is None or not reviewer.is_active:
        raise credentials_exception

    return reviewer


def require_roles(*roles: ReviewerRole) -> Callable:
    """
    Dependency factory restricting a route to the given reviewer roles.
    Use this on committee, compliance and sign-off routes.
    """
    async def dependency(current_reviewer: ReviewerDB = Depends(get_current_reviewer)) -> ReviewerDB:
        if current_reviewer.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(r.value for r in roles)}",
            )
        return current_reviewer

    return dependency
