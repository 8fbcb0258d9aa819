"""
Authentication router.
Handles registration, login and profile; tokens are JWT bearer access tokens.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from auth.security import create_access_token, get_current_user_id
from auth.users import EmailTakenError, UserStore
from storage import get_store

router = APIRouter(prefix="/auth", tags=["auth"])


# ─── Schemas ───────────────────────────────────────────────────────────────────

class CredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)


class UserResponse(BaseModel):
    id: str
    email: str
    created_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# ─── Dependencies ──────────────────────────────────────────────────────────────

def get_user_store() -> UserStore:
    return UserStore(get_store().backend)


def _token_for(user) -> TokenResponse:
    token = create_access_token(user.id, user.email)
    return TokenResponse(
        access_token=token,
        user=UserResponse(id=user.id, email=user.email, created_at=user.created_at),
    )


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def register(request: CredentialsRequest, users: UserStore = Depends(get_user_store)):
    if "@" not in request.email:
        raise HTTPException(status_code=400, detail="Invalid email address")
    try:
        user = await users.create(request.email, request.password)
    except EmailTakenError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return _token_for(user)


@router.post("/login", response_model=TokenResponse)
async def login(request: CredentialsRequest, users: UserStore = Depends(get_user_store)):
    user = await users.authenticate(request.email, request.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid email or password")
    return _token_for(user)


@router.get("/me", response_model=UserResponse)
async def me(
    user_id: str = Depends(get_current_user_id),
    users: UserStore = Depends(get_user_store),
):
    user = await users.get(user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return UserResponse(id=user.id, email=user.email, created_at=user.created_at)
