"""
Refund Adjudication Engine - Authentication Router
Reviewer login and session verification.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import ReviewerDB
from ..auth import verify_password, create_access_token, get_current_reviewer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class ReviewerResponse(BaseModel):
    id: str
    email: str
    full_name: str
    role: str


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/login", response_model=TokenResponse)
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Authenticate a reviewer and return a JWT token.
    """
    reviewer = db.query(ReviewerDB).filter(ReviewerDB.email == request.email).first()

    if not reviewer or not reviewer.is_active or not verify_password(request.password, reviewer.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    access_token = create_access_token(reviewer.id, reviewer.email, reviewer.role.value)

    logger.info(f"Reviewer logged in: {request.email} ({reviewer.role.value})")
    return TokenResponse(access_token=access_token)


@router.get("/me", response_model=ReviewerResponse)
async def get_me(current_reviewer: ReviewerDB = Depends(get_current_reviewer)):
    return ReviewerResponse(
        id=current_reviewer.id,
        email=current_reviewer.email,
        full_name=current_reviewer.full_name,
        role=current_reviewer.role.value,
    )
