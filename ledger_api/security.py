"""
Credential handling: Argon2 password hashes and signed bearer tokens.

Passwords:
  Hashed with Argon2id through passlib's CryptContext. deprecated="auto"
  lets a future scheme take over: old hashes still verify and
  needs_rehash() reports them so login can upgrade them in place.

Tokens:
  HS256-signed JWTs (python-jose) carrying the user id in "sub" and the
  role in "role". The role claim is informational only; every request
  reloads the user, so a demoted or deactivated user loses access at once.
"""

import uuid
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from ledger_api.config import settings

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Constant-time check of a password against a stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def password_needs_rehash(hashed_password: str) -> bool:
    return pwd_context.needs_update(hashed_password)


def create_access_token(
    user_id: uuid.UUID,
    role: str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Sign a bearer token for a user.

    Expires after ACCESS_TOKEN_EXPIRE_MINUTES unless expires_delta is given.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    claims = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> uuid.UUID:
    """
    Verify a token's signature and expiry and return the user id it names.

    Raises:
        JWTError: If the token is expired, tampered with, or malformed.
    """
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    subject = payload.get("sub")
    if subject is None:
        raise JWTError("Token has no subject")
    try:
        return uuid.UUID(subject)
    except ValueError:
        raise JWTError("Token subject is not a user id") from None
