"""
Account Record Store — durable, race-free storage of account balances.

The store knows nothing about transfers. It guarantees exactly two things:
  - every read returns the row as it is in the database right now
  - a balance adjustment is a single atomic statement that cannot drive a
    balance negative, cannot touch an inactive account, and cannot lose an
    update to a concurrent writer

Fresh reads:
  Sessions are created with expire_on_commit=False, so an Account already in
  the identity map would otherwise be returned from memory. Every query here
  uses populate_existing, which overwrites the in-memory copy with the row
  the database returned.

Atomic adjustment:
  adjust_balances issues one conditional UPDATE:

      UPDATE accounts
         SET balance_cents = balance_cents + :delta, ...
       WHERE id = :id AND status = 'ACTIVE'
         AND available_balance_cents + :available_delta >= 0 ...

  The database evaluates the condition against the current row under its own
  row lock, so two concurrent debits are serialized and the second one sees
  the first one's result. When no row matches, a follow-up read tells us why.

Deadlock prevention:
  lock_accounts takes SELECT ... FOR UPDATE locks in ascending id order. Two
  transfers touching the same pair of accounts in opposite directions then
  always lock in the same order. On SQLite, FOR UPDATE is a no-op and the
  database-level write lock provides the serialization instead.
"""

import logging
import random
import string
import uuid
from collections.abc import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidTransitionError,
)
from ledger_api.models.account import Account, AccountStatus, AccountType

logger = logging.getLogger(__name__)

# Allowed administrative status changes; CLOSED is terminal
_STATUS_TRANSITIONS: dict[AccountStatus, set[AccountStatus]] = {
    AccountStatus.ACTIVE: {AccountStatus.SUSPENDED, AccountStatus.CLOSED},
    AccountStatus.SUSPENDED: {AccountStatus.ACTIVE, AccountStatus.CLOSED},
    AccountStatus.CLOSED: set(),
}


def _generate_account_number() -> str:
    """Generate a random 10-digit account number."""
    return "".join(random.choices(string.digits, k=10))


class AccountStore:
    """Passive storage for Account rows, bound to one storage handle (session)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_account(self, account_id: uuid.UUID) -> Account | None:
        result = await self.db.execute(
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_account(self, account_id: uuid.UUID) -> Account:
        """
        Get a single account by ID.

        Raises:
            AccountNotFoundError: If the account doesn't exist.
        """
        account = await self.find_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def get_accounts_for_user(self, user_id: uuid.UUID) -> list[Account]:
        """List every account owned by a user, oldest first."""
        result = await self.db.execute(
            select(Account)
            .where(Account.user_id == user_id)
            .order_by(Account.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_accounts(self, status: AccountStatus | None = None) -> list[Account]:
        query = select(Account).order_by(Account.created_at)
        if status is not None:
            query = query.where(Account.status == status)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Locking and balance mutation
    # ------------------------------------------------------------------

    async def lock_accounts(self, account_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Account]:
        """
        Lock account rows for the rest of the current database transaction.

        Rows are locked in ascending id order regardless of the order given.

        Raises:
            AccountNotFoundError: If any account doesn't exist.
        """
        locked: dict[uuid.UUID, Account] = {}
        for account_id in sorted(set(account_ids)):
            result = await self.db.execute(
                select(Account)
                .where(Account.id == account_id)
                .with_for_update()  # No-op on SQLite, locks row on PostgreSQL
                .execution_options(populate_existing=True)
            )
            account = result.scalar_one_or_none()
            if account is None:
                raise AccountNotFoundError(account_id)
            locked[account_id] = account
        return locked

    async def adjust_balances(
        self,
        account_id: uuid.UUID,
        balance_delta: int,
        available_balance_delta: int,
    ) -> Account:
        """
        Apply signed deltas (minor units) to both balances in one atomic statement.

        Does not commit; the change belongs to the caller's transaction.

        Returns:
            The account as it is after the adjustment.

        Raises:
            AccountNotFoundError: If the account doesn't exist.
            AccountInactiveError: If the account is suspended or closed.
            InsufficientFundsError: If either balance would go negative, or the
                available balance would exceed the ledger balance.
        """
        new_balance = Account.balance_cents + balance_delta
        new_available = Account.available_balance_cents + available_balance_delta

        result = await self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .where(Account.status == AccountStatus.ACTIVE)
            .where(new_available >= 0)
            .where(new_balance >= 0)
            .where(new_available <= new_balance)
            .values(
                balance_cents=new_balance,
                available_balance_cents=new_available,
                version=Account.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            account = await self.find_account(account_id)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status != AccountStatus.ACTIVE:
                raise AccountInactiveError(account_id, account.status.value)
            logger.info(
                "Balance adjustment rejected for account %s: available %s, delta %s",
                account_id, account.available_balance_cents, available_balance_delta,
            )
            raise InsufficientFundsError(
                account_id=account_id,
                requested_cents=-available_balance_delta,
                available_cents=account.available_balance_cents,
            )

        return await self.get_account(account_id)

    # ------------------------------------------------------------------
    # Provisioning and administration
    # ------------------------------------------------------------------

    async def create_account(
        self,
        user_id: uuid.UUID,
        currency: str,
        account_type: AccountType = AccountType.PERSONAL,
        opening_balance_cents: int = 0,
    ) -> Account:
        """
        Create a new account with a unique account number.

        opening_balance_cents is for provisioning (seed data, migrations from
        another system); once created, balances only move through transfers.
        """
        # Retry on collision, extremely unlikely with 10 random digits
        for _ in range(10):
            account_number = _generate_account_number()
            existing = await self.db.execute(
                select(Account.id).where(Account.account_number == account_number)
            )
            if existing.scalar_one_or_none() is None:
                break
        else:
            raise RuntimeError("Failed to generate a unique account number")

        account = Account(
            user_id=user_id,
            account_type=account_type,
            account_number=account_number,
            currency=currency,
            balance_cents=opening_balance_cents,
            available_balance_cents=opening_balance_cents,
        )
        self.db.add(account)
        await self.db.flush()
        logger.info("Opened %s account %s for user %s", currency, account.id, user_id)
        return account

    async def set_status(self, account_id: uuid.UUID, status: AccountStatus) -> Account:
        """
        Administrative status change (suspend, reactivate, close).

        Setting the current status again is a no-op.

        Raises:
            AccountNotFoundError: If the account doesn't exist.
            InvalidTransitionError: If the change is not allowed (e.g. reopening).
        """
        account = await self.get_account(account_id)
        if account.status == status:
            return account
        if status not in _STATUS_TRANSITIONS[account.status]:
            raise InvalidTransitionError(account_id, account.status.value, status.value)

        result = await self.db.execute(
            update(Account)
            .where(Account.id == account_id)
            .where(Account.status == account.status)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Someone else changed the status between our read and write
            current = await self.get_account(account_id)
            raise InvalidTransitionError(account_id, current.status.value, status.value)
        logger.info("Account %s status %s -> %s", account_id, account.status.value, status.value)
        return await self.get_account(account_id)
