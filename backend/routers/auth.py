# routers/auth.py — Authentication endpoints
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from auth import (
    ACCESS_TOKEN_EXPIRE_MINUTES, AuthService, CurrentUser, TokenResponse,
    UserLogin, UserRegister, get_current_user, role_value, user_payload,
)
from database import get_db_session
from logging_system import LogCategory, get_logger

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])
slog = get_logger()


def _build_token_response(user_obj) -> TokenResponse:
    token_data = {
        "sub": user_obj.id,
        "email": user_obj.email,
        "role": role_value(user_obj.role),
    }
    return TokenResponse(
        access_token=AuthService.create_access_token(token_data),
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=user_payload(user_obj),
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(
    user_data: UserRegister,
    db: AsyncSession = Depends(get_db_session),
):
    """Register a new account with the `user` role"""
    user = await AuthService.register_user(user_data, db)
    slog.info(f"User registered: {user.email}", category=LogCategory.AUTH, user_id=user.id)
    return _build_token_response(user)


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: UserLogin,
    db: AsyncSession = Depends(get_db_session),
):
    user = await AuthService.authenticate_user(credentials.email, credentials.password, db)
    if not user:
        slog.warning("Failed login", category=LogCategory.SECURITY, metadata={"email": credentials.email})
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return _build_token_response(user)


@router.get("/me")
async def get_me(user: CurrentUser = Depends(get_current_user)):
    return user.model_dump()
