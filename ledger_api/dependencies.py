"""
FastAPI dependencies for authentication, authorization and services.

    get_current_user (bearer token -> User)
        ├── get_current_member (User -> User)   [MEMBER role]
        └── require_admin (User -> User)        [ADMIN role]

Members move money and see only their own accounts and history. Admins
operate the ledger (account status, closing stuck transactions,
reconciliation) but are blocked from member endpoints, so an operator
account can never initiate a transfer.

get_transfer_engine, get_lookup_service and get_payment_request_service build
the service objects on the request's session, so a route and the services it
calls share one storage handle.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.database import get_db
from ledger_api.models.user import User, UserType
from ledger_api.security import decode_access_token
from ledger_api.services.lookup_service import LookupService
from ledger_api.services.payment_requests import PaymentRequestService
from ledger_api.services.transfer_engine import TransferEngine

# Where Swagger UI's "Authorize" button obtains a token
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to an active User.

    Raises:
        HTTPException 401: If the token is invalid or the user is gone or inactive.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        user_id = decode_access_token(token)
    except JWTError:
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise credentials_exception
    return user


async def get_current_member(user: User = Depends(get_current_user)) -> User:
    """
    Raises:
        HTTPException 403: If the user is an admin.
    """
    if user.user_type == UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin accounts cannot use member payment endpoints",
        )
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """
    Raises:
        HTTPException 403: If the user is not an admin.
    """
    if user.user_type != UserType.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def get_transfer_engine(db: AsyncSession = Depends(get_db)) -> TransferEngine:
    return TransferEngine(db)


def get_lookup_service(db: AsyncSession = Depends(get_db)) -> LookupService:
    return LookupService(db)


def get_payment_request_service(
    engine: TransferEngine = Depends(get_transfer_engine),
    lookup: LookupService = Depends(get_lookup_service),
) -> PaymentRequestService:
    return PaymentRequestService(engine.db, engine=engine, lookup=lookup)
