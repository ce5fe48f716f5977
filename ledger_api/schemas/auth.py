"""
Pydantic schemas for authentication endpoints (signup and login).

Malformed bodies are rejected before the route runs and reported as 400
by the validation handler in exceptions.py.
"""

import re
import uuid

from pydantic import EmailStr, Field, field_validator

from ledger_api.schemas.common import CamelModel


class UserSignupRequest(CamelModel):
    """Request body for POST /auth/signup."""
    email: EmailStr
    password: str = Field(min_length=8)
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    # Any format; stored as digits only
    phone_number: str | None = Field(default=None, max_length=32)
    # Currency of the default account; DEFAULT_CURRENCY when omitted
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("phone_number")
    @classmethod
    def phone_fits_column(cls, value: str | None) -> str | None:
        """Digits only must fit users.phone_number (20)."""
        if value is not None and len(re.sub(r"\D", "", value)) > 20:
            raise ValueError("Phone number has too many digits")
        return value


class UserLoginRequest(CamelModel):
    """Request body for POST /auth/login."""
    email: EmailStr
    password: str


class TokenResponse(CamelModel):
    """Response body for successful login."""
    token: str
    token_type: str = "bearer"


class SignupResponse(CamelModel):
    """Response body for successful signup: the new user, their default account and a token."""
    user_id: uuid.UUID
    email: str
    user_type: str
    account_id: uuid.UUID
    account_number: str
    token: str
    token_type: str = "bearer"
