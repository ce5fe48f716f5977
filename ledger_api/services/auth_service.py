"""
Signup and login.

Signup creates the User and the user's default account in one database
transaction, so a new member can receive a transfer immediately. The
default account is PERSONAL, opened in DEFAULT_CURRENCY unless the signup
request names another supported currency.

Emails are stored lower-cased and phone numbers as digits only; recipient
lookup relies on both normalizations.

Login returns the same InvalidCredentialsError for an unknown email, a wrong
password and a deactivated user, so the endpoint can't be used to probe
which emails are registered.
"""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.config import settings
from ledger_api.exceptions import (
    DuplicateEmailError,
    InvalidCredentialsError,
    TransferValidationError,
)
from ledger_api.models.account import Account
from ledger_api.models.user import User, UserType
from ledger_api.money import is_supported_currency, normalize_currency
from ledger_api.security import (
    create_access_token,
    hash_password,
    password_needs_rehash,
    verify_password,
)
from ledger_api.services.account_store import AccountStore
from ledger_api.services.lookup_service import normalize_email, normalize_phone

logger = logging.getLogger(__name__)


async def signup(
    db: AsyncSession,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    phone_number: str | None = None,
    currency: str | None = None,
) -> tuple[User, Account, str]:
    """
    Register a member and open their default account.

    Returns:
        Tuple of (User instance, default Account, bearer token).

    Raises:
        DuplicateEmailError: If the email is already registered.
        TransferValidationError: If the requested currency isn't supported.
    """
    email = normalize_email(email)
    currency = normalize_currency(currency or settings.DEFAULT_CURRENCY)
    if not is_supported_currency(currency):
        raise TransferValidationError(f"Unsupported currency: {currency}")

    result = await db.execute(select(User.id).where(func.lower(User.email) == email))
    if result.scalar_one_or_none() is not None:
        raise DuplicateEmailError(email)

    user = User(
        email=email,
        phone_number=normalize_phone(phone_number) or None,
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        hashed_password=hash_password(password),
        user_type=UserType.MEMBER,
    )
    db.add(user)
    # Flush to get user.id for the account's foreign key
    await db.flush()

    account = await AccountStore(db).create_account(user.id, currency)
    logger.info("Signed up user %s", user.id)

    token = create_access_token(user.id, user.user_type.value)
    return user, account, token


async def login(db: AsyncSession, email: str, password: str) -> tuple[User, str]:
    """
    Authenticate a user.

    Raises:
        InvalidCredentialsError: Unknown email, wrong password, or inactive user.
    """
    result = await db.execute(
        select(User).where(func.lower(User.email) == normalize_email(email))
    )
    user = result.scalar_one_or_none()

    if user is None or not verify_password(password, user.hashed_password):
        raise InvalidCredentialsError()
    if not user.is_active:
        raise InvalidCredentialsError()

    if password_needs_rehash(user.hashed_password):
        user.hashed_password = hash_password(password)

    token = create_access_token(user.id, user.user_type.value)
    return user, token
