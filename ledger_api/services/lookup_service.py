"""
Recipient lookup — resolves a human-supplied identifier to a user and accounts.

Identifiers are either an email address or a phone number:

  - Email (anything containing "@"): trimmed and compared case-insensitively.
    Emails are stored lower-cased at signup.

  - Phone: every non-digit is stripped, so "+233 (24) 412-3456",
    "233244123456" and "0244123456" all reduce to digit strings. Two numbers
    match when the digit strings are equal, or when one ends with the other's
    subscriber part (the national form with its trunk zeros removed), which
    covers the with/without country code cases. A suffix match needs at
    least MIN_PHONE_DIGITS digits. An exact match wins over suffix matches;
    several suffix matches and no exact one is treated as no match rather
    than a guess.

Lookup never writes anything.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ledger_api.exceptions import RecipientHasNoAccountError, RecipientNotFoundError
from ledger_api.models.account import Account, AccountStatus
from ledger_api.models.user import User

logger = logging.getLogger(__name__)

MIN_PHONE_DIGITS = 7

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str) -> str:
    """Strip everything but digits."""
    return _NON_DIGITS.sub("", phone or "")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def phones_match(stored: str, candidate: str) -> bool:
    """True if two digit strings are the same number, with or without country code."""
    if not stored or not candidate:
        return False
    if stored == candidate:
        return True
    stored_local = stored.lstrip("0")
    candidate_local = candidate.lstrip("0")
    shorter, longer = sorted((stored_local, candidate_local), key=len)
    return len(shorter) >= MIN_PHONE_DIGITS and longer.endswith(shorter)


@dataclass(frozen=True)
class Resolution:
    """A resolved recipient and every account they own, oldest first."""
    user_id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    phone_number: str | None
    accounts: list[Account] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class LookupService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def resolve(self, identifier: str) -> Resolution:
        """
        Resolve an email or phone number to a user and their accounts.

        Raises:
            RecipientNotFoundError: If no user matches.
            RecipientHasNoAccountError: If the user owns no accounts.
        """
        identifier = (identifier or "").strip()
        if "@" in identifier:
            user = await self._find_by_email(identifier)
        else:
            user = await self._find_by_phone(identifier)

        if user is None:
            logger.info("Lookup found no user")
            raise RecipientNotFoundError(identifier)
        if not user.accounts:
            raise RecipientHasNoAccountError(user.id)

        return Resolution(
            user_id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            phone_number=user.phone_number,
            accounts=list(user.accounts),
        )

    async def _find_by_email(self, email: str) -> User | None:
        result = await self.db.execute(
            select(User)
            .where(func.lower(User.email) == normalize_email(email))
            .options(selectinload(User.accounts))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _find_by_phone(self, phone: str) -> User | None:
        digits = normalize_phone(phone)
        local = digits.lstrip("0")
        if len(local) < MIN_PHONE_DIGITS:
            return None

        # Narrow in SQL on the last digits, then decide in Python
        tail = local[-MIN_PHONE_DIGITS:]
        result = await self.db.execute(
            select(User)
            .where(User.phone_number.is_not(None))
            .where(User.phone_number.like(f"%{tail}"))
            .options(selectinload(User.accounts))
            .execution_options(populate_existing=True)
        )
        candidates = [u for u in result.scalars().all() if phones_match(u.phone_number, digits)]

        exact = [u for u in candidates if u.phone_number == digits]
        if len(exact) == 1:
            return exact[0]
        if len(candidates) == 1:
            return candidates[0]
        if candidates:
            logger.warning("Phone lookup matched %d users, refusing to guess", len(candidates))
        return None


def pick_account(resolution: Resolution, currency: str | None = None) -> Account:
    """
    The recipient's first ACTIVE account, optionally restricted to a currency.

    Raises:
        RecipientHasNoAccountError: If no account qualifies.
    """
    for account in resolution.accounts:
        if account.status != AccountStatus.ACTIVE:
            continue
        if currency is not None and account.currency != currency.strip().upper():
            continue
        return account
    raise RecipientHasNoAccountError(resolution.user_id)
