"""
Authentication router — signup and login endpoints.

These are the only public endpoints besides /health. Everything else
requires a bearer token.

Endpoints:
  POST /auth/signup  — Register a member, open their default account, get a token
  POST /auth/login   — Authenticate and get a token

Plaintext passwords exist only in memory while the request is processed.
They are hashed before any database write and never logged.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.database import get_db
from ledger_api.schemas.auth import (
    SignupResponse,
    TokenResponse,
    UserLoginRequest,
    UserSignupRequest,
)
from ledger_api.services import auth_service

router = APIRouter()


@router.post(
    "/signup",
    response_model=SignupResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new member",
)
async def signup(
    request: UserSignupRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Register a member and open their default PERSONAL account.

    - **email**: Valid and not already registered (case-insensitive)
    - **password**: Minimum 8 characters
    - **phoneNumber**: Optional, any format; used for recipient lookup
    - **currency**: Optional currency of the default account
    """
    user, account, token = await auth_service.signup(
        db=db,
        email=request.email,
        password=request.password,
        first_name=request.first_name,
        last_name=request.last_name,
        phone_number=request.phone_number,
        currency=request.currency,
    )
    return SignupResponse(
        user_id=user.id,
        email=user.email,
        user_type=user.user_type.value,
        account_id=account.id,
        account_number=account.account_number,
        token=token,
    )


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Authenticate and get a token",
)
async def login(
    request: UserLoginRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Authenticate with email and password.

    Send the token on every other request:

        Authorization: Bearer <token>
    """
    _, token = await auth_service.login(db=db, email=request.email, password=request.password)
    return TokenResponse(token=token)
