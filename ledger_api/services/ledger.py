"""
Transaction Ledger — append-oriented storage of transfer records.

The ledger is a record of intent and outcome only; it never computes or
touches balances. A row is created PENDING (create_pending) and moved to a
terminal status exactly once (finalize for the engine, close for
administrators). Terminal rows are immutable.

Single-winner finalize:
  Both finalize and close are conditional updates (`... WHERE status =
  'PENDING'`). If the engine and the reconciliation sweep race on the same
  row, the database lets one of them through and the other gets
  InvalidTransitionError.

None of these methods commit. The caller owns the transaction boundary:
the idempotency guard commits the PENDING row together with its
idempotency record, and the transfer engine commits COMPLETED together
with the balance changes.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.exceptions import (
    DuplicateRequestError,
    InvalidTransitionError,
    StorageFailureError,
    TransactionNotFoundError,
)
from ledger_api.models.account import Account
from ledger_api.models.transaction import Transaction, TransactionCategory, TransactionStatus

logger = logging.getLogger(__name__)

ENGINE_OUTCOMES = {TransactionStatus.COMPLETED, TransactionStatus.FAILED}
ADMIN_OUTCOMES = {TransactionStatus.CANCELLED, TransactionStatus.REFUNDED}


def generate_reference() -> str:
    """External reconciliation reference, e.g. TRF-20261019131502-3F9A0C1B2D."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"TRF-{stamp}-{secrets.token_hex(5).upper()}"


@dataclass(frozen=True)
class TransferIntent:
    """Everything the ledger records about a transfer before it executes."""
    sender_account_id: uuid.UUID
    recipient_account_id: uuid.UUID
    amount_cents: int
    currency: str
    idempotency_key: str
    request_fingerprint: str
    category: TransactionCategory = TransactionCategory.TRANSFER
    description: str | None = None
    metadata: dict = field(default_factory=dict)


class TransactionLedger:
    """Ledger rows, bound to one storage handle (session)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_pending(self, intent: TransferIntent) -> Transaction:
        """
        Write a new PENDING row with a system-generated reference.

        Raises:
            DuplicateRequestError: If the idempotency key is already recorded.
                The current database transaction has been rolled back.
            StorageFailureError: On any other integrity failure.
        """
        txn = Transaction(
            id=uuid.uuid4(),
            idempotency_key=intent.idempotency_key,
            reference=generate_reference(),
            request_fingerprint=intent.request_fingerprint,
            sender_account_id=intent.sender_account_id,
            recipient_account_id=intent.recipient_account_id,
            amount_cents=intent.amount_cents,
            currency=intent.currency,
            category=intent.category,
            description=intent.description,
            meta=dict(intent.metadata),
            status=TransactionStatus.PENDING,
        )
        self.db.add(txn)
        try:
            await self.db.flush()
        except IntegrityError as exc:
            await self.db.rollback()
            if await self.get_by_idempotency_key(intent.idempotency_key) is not None:
                raise DuplicateRequestError(intent.idempotency_key) from exc
            logger.error("Integrity failure writing ledger row: %s", exc)
            raise StorageFailureError() from exc

        logger.info(
            "Ledger row %s (%s) PENDING: %s %s from %s to %s",
            txn.id, txn.reference, intent.amount_cents, intent.currency,
            intent.sender_account_id, intent.recipient_account_id,
        )
        return txn

    async def finalize(
        self,
        transaction_id: uuid.UUID,
        outcome: TransactionStatus,
        reason: str | None = None,
        sender_balance_after_cents: int | None = None,
        recipient_balance_after_cents: int | None = None,
    ) -> Transaction:
        """
        Move a PENDING row to COMPLETED or FAILED and stamp completed_at.

        Raises:
            ValueError: If outcome is not COMPLETED or FAILED.
            TransactionNotFoundError: If the row doesn't exist.
            InvalidTransitionError: If the row is already terminal.
        """
        if outcome not in ENGINE_OUTCOMES:
            raise ValueError(f"finalize outcome must be COMPLETED or FAILED, got {outcome}")

        values = {
            "status": outcome,
            "completed_at": datetime.now(timezone.utc),
            "failure_reason": reason if outcome is TransactionStatus.FAILED else None,
        }
        if outcome is TransactionStatus.COMPLETED:
            values["sender_balance_after_cents"] = sender_balance_after_cents
            values["recipient_balance_after_cents"] = recipient_balance_after_cents

        return await self._transition(transaction_id, outcome, values)

    async def close(self, transaction_id: uuid.UUID, status: TransactionStatus) -> Transaction:
        """
        Administrative exit: PENDING -> CANCELLED or REFUNDED.

        Raises:
            ValueError: If status is not CANCELLED or REFUNDED.
            TransactionNotFoundError: If the row doesn't exist.
            InvalidTransitionError: If the row is already terminal.
        """
        if status not in ADMIN_OUTCOMES:
            raise ValueError(f"close status must be CANCELLED or REFUNDED, got {status}")
        return await self._transition(
            transaction_id,
            status,
            {"status": status, "completed_at": datetime.now(timezone.utc)},
        )

    async def _transition(
        self,
        transaction_id: uuid.UUID,
        target: TransactionStatus,
        values: dict,
    ) -> Transaction:
        result = await self.db.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id)
            .where(Transaction.status == TransactionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = await self.get_by_id(transaction_id)
            raise InvalidTransitionError(transaction_id, current.status.value, target.value)

        logger.info("Ledger row %s PENDING -> %s", transaction_id, target.value)
        return await self.get_by_id(transaction_id)

    # ------------------------------------------------------------------
    # Reads (always fresh, newest first)
    # ------------------------------------------------------------------

    async def find_by_id(self, transaction_id: uuid.UUID) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, transaction_id: uuid.UUID) -> Transaction:
        """
        Raises:
            TransactionNotFoundError: If the row doesn't exist.
        """
        txn = await self.find_by_id(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(transaction_id)
        return txn

    async def get_by_idempotency_key(self, idempotency_key: str) -> Transaction | None:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_account(
        self,
        account_id: uuid.UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Transaction], int]:
        """Rows where the account is either party. Returns (rows, total)."""
        condition = or_(
            Transaction.sender_account_id == account_id,
            Transaction.recipient_account_id == account_id,
        )
        return await self._page(condition, page, page_size)

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Transaction], int]:
        """Rows where any of the user's accounts is either party. Returns (rows, total)."""
        user_accounts = select(Account.id).where(Account.user_id == user_id)
        condition = or_(
            Transaction.sender_account_id.in_(user_accounts),
            Transaction.recipient_account_id.in_(user_accounts),
        )
        return await self._page(condition, page, page_size)

    async def list_all(
        self,
        status: TransactionStatus | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[Transaction], int]:
        condition = Transaction.status == status if status is not None else None
        return await self._page(condition, page, page_size)

    async def list_stale_pending(self, older_than: datetime) -> list[Transaction]:
        """PENDING rows created before `older_than`, oldest first."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.PENDING)
            .where(Transaction.created_at < older_than)
            .order_by(Transaction.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _page(self, condition, page: int, page_size: int) -> tuple[list[Transaction], int]:
        page = max(page, 1)
        query = select(Transaction)
        count_query = select(func.count()).select_from(Transaction)
        if condition is not None:
            query = query.where(condition)
            count_query = count_query.where(condition)

        result = await self.db.execute(
            query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(page_size)
            .offset((page - 1) * page_size)
            .execution_options(populate_existing=True)
        )
        total = (await self.db.execute(count_query)).scalar_one()
        return list(result.scalars().all()), total
