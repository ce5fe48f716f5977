"""
Transfer Engine — moves funds between two accounts exactly once.

The engine coordinates the account store, the transaction ledger and the
idempotency guard, and holds no state of its own between calls. Every
transfer walks these states (logged, not persisted; only the ledger status
is persisted):

    VALIDATING -> RESERVING -> APPLYING -> FINALIZING -> COMPLETED
                                  |             |
                                  +-------------+-----> FAILED

VALIDATING:
  Amount, currency and idempotency key are checked, then the guard is asked
  whether this key already has an outcome (idempotent replay). Both accounts
  must exist, be ACTIVE and hold the request currency. Nothing is written.

RESERVING:
  The guard claims the idempotency key and the ledger writes the PENDING row
  in a single commit. This is the durability checkpoint: from here on a
  crash leaves a PENDING row for the reconciliation sweep, never a lost
  transfer.

APPLYING + FINALIZING:
  One database transaction locks both accounts (ascending id order), debits
  the sender, credits the recipient and finalizes the row COMPLETED with the
  resulting balances. The commit publishes all of it at once, so a reader
  can never observe a debit without its credit, or a COMPLETED row without
  its balance changes.

Failure policy:
  - A domain error (InsufficientFundsError, AccountInactiveError, ...) or
    any other non-storage exception rolls back the balance transaction,
    finalizes the row FAILED with the error_type as reason, and re-raises.
  - A storage error (SQLAlchemyError while applying, a failed commit, or a
    failed FAILED-finalize) means the outcome cannot be trusted. The row is
    left PENDING and StorageFailureError is raised; the caller retries with
    the same key, and the sweep resolves the row if nobody does.

Replays:
  COMPLETED -> the original TransferResult, rebuilt from the ledger row
  (replayed=True). FAILED for insufficient funds -> InsufficientFundsError
  again. Any other terminal status -> TransferFailedError.
"""

import enum
import logging
import uuid
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.exceptions import (
    AccountInactiveError,
    InsufficientFundsError,
    InvalidTransitionError,
    LedgerAPIError,
    StorageFailureError,
    TransferFailedError,
    TransferValidationError,
)
from ledger_api.models.account import AccountStatus
from ledger_api.models.transaction import Transaction, TransactionCategory, TransactionStatus
from ledger_api.money import is_supported_currency, normalize_currency, to_minor_units
from ledger_api.services.account_store import AccountStore
from ledger_api.services.idempotency import IdempotencyGuard, request_fingerprint
from ledger_api.services.ledger import TransactionLedger, TransferIntent
from ledger_api.services.results import TransferResult, result_from_transaction

logger = logging.getLogger(__name__)

# Largest amount a BigInteger column can hold
MAX_AMOUNT_MINOR_UNITS = 2**63 - 1
MAX_IDEMPOTENCY_KEY_LENGTH = 255
# Width of transactions.description
MAX_DESCRIPTION_LENGTH = 255

# failure_reason for exceptions that are neither domain nor storage errors
INTERNAL_ERROR_REASON = "internal_error"


class TransferState(str, enum.Enum):
    VALIDATING = "VALIDATING"
    RESERVING = "RESERVING"
    APPLYING = "APPLYING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransferEngine:
    """
    Executes transfers against one storage handle (session).

    The collaborators default to instances bound to the same session; tests
    pass their own to inject failures.
    """

    def __init__(
        self,
        db: AsyncSession,
        accounts: AccountStore | None = None,
        ledger: TransactionLedger | None = None,
        guard: IdempotencyGuard | None = None,
    ):
        self.db = db
        self.accounts = accounts or AccountStore(db)
        self.ledger = ledger or TransactionLedger(db)
        self.guard = guard or IdempotencyGuard(db, self.ledger)

    async def transfer(
        self,
        sender_account_id: uuid.UUID,
        recipient_account_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str | None = None,
        category: TransactionCategory = TransactionCategory.TRANSFER,
        metadata: dict | None = None,
    ) -> TransferResult:
        """
        Move `amount` from sender to recipient, at most once per idempotency key.

        Returns:
            TransferResult for the completed transfer (replayed=True when the
            key had already completed).

        Raises:
            TransferValidationError: Malformed input. Nothing was written.
            AccountNotFoundError: Either account is missing.
            AccountInactiveError: Either account is suspended or closed.
            InsufficientFundsError: Sender's available balance is too low.
            DuplicateRequestError: Key reused with different parameters.
            TransferInProgressError: Key's original is still executing.
            TransferFailedError: Key's original ended FAILED/CANCELLED/REFUNDED.
            StorageFailureError: Outcome unknown; retry with the same key.
        """
        self._log_state(TransferState.VALIDATING, idempotency_key)
        currency = self._validate_currency(currency)
        amount_cents = self._validate_amount(amount, currency)
        idempotency_key = self._validate_key(idempotency_key)
        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            raise TransferValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )
        if sender_account_id == recipient_account_id:
            raise TransferValidationError("Sender and recipient accounts must be different")

        fingerprint = request_fingerprint(
            sender_account_id, recipient_account_id, amount_cents, currency
        )
        existing = await self.guard.find_existing(idempotency_key, fingerprint)
        if existing is not None:
            return self._replay(existing)

        await self._validate_accounts(sender_account_id, recipient_account_id, currency)

        self._log_state(TransferState.RESERVING, idempotency_key)
        intent = TransferIntent(
            sender_account_id=sender_account_id,
            recipient_account_id=recipient_account_id,
            amount_cents=amount_cents,
            currency=currency,
            idempotency_key=idempotency_key,
            request_fingerprint=fingerprint,
            category=category,
            description=description,
            metadata=metadata or {},
        )
        reservation = await self.guard.check_and_reserve(idempotency_key, fingerprint, intent)
        if not reservation.is_new:
            return self._replay(reservation.transaction)

        txn = await self._apply(reservation.transaction.id, intent)
        result = result_from_transaction(txn)
        logger.info(
            "Transfer %s (%s) COMPLETED: %s %s from %s to %s",
            result.transaction_id, result.reference, result.amount, result.currency,
            result.sender_account_id, result.recipient_account_id,
        )
        return result

    async def find_replay(
        self,
        sender_account_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> TransferResult | None:
        """
        Replay the outcome recorded for a key before the recipient is known.

        For requests that name the recipient by email or phone: a retry
        returns the original outcome without resolving the recipient again.
        Returns None when the key has not been used.

        Raises:
            The replay errors of transfer(): DuplicateRequestError,
            TransferInProgressError, InsufficientFundsError, TransferFailedError.
        """
        currency = self._validate_currency(currency)
        amount_cents = self._validate_amount(amount, currency)
        idempotency_key = self._validate_key(idempotency_key)
        existing = await self.guard.find_for_sender(
            idempotency_key, sender_account_id, amount_cents, currency
        )
        if existing is None:
            return None
        return self._replay(existing)

    # ------------------------------------------------------------------
    # Validation (no writes)
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_currency(currency: str) -> str:
        if not currency or not is_supported_currency(currency):
            raise TransferValidationError(f"Unsupported currency: {currency}")
        return normalize_currency(currency)

    @staticmethod
    def _validate_amount(amount: Decimal, currency: str) -> int:
        amount_cents = to_minor_units(amount, currency)
        if amount_cents <= 0:
            raise TransferValidationError("Amount must be greater than zero")
        if amount_cents > MAX_AMOUNT_MINOR_UNITS:
            raise TransferValidationError("Amount is too large")
        return amount_cents

    @staticmethod
    def _validate_key(idempotency_key: str) -> str:
        key = (idempotency_key or "").strip()
        if not key:
            raise TransferValidationError("An idempotency key is required")
        if len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise TransferValidationError(
                f"Idempotency key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )
        return key

    async def _validate_accounts(
        self,
        sender_account_id: uuid.UUID,
        recipient_account_id: uuid.UUID,
        currency: str,
    ) -> None:
        for account_id in (sender_account_id, recipient_account_id):
            account = await self.accounts.get_account(account_id)
            if account.status != AccountStatus.ACTIVE:
                raise AccountInactiveError(account_id, account.status.value)
            if account.currency != currency:
                raise TransferValidationError(
                    f"Account {account_id} holds {account.currency}, not {currency}"
                )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _apply(self, transaction_id: uuid.UUID, intent: TransferIntent) -> Transaction:
        """
        Lock, debit, credit and finalize COMPLETED in one commit.

        Raises whatever stopped the transfer after recording FAILED, or
        StorageFailureError with the row left PENDING.
        """
        amount_cents = intent.amount_cents
        self._log_state(TransferState.APPLYING, intent.idempotency_key, transaction_id)
        try:
            await self.accounts.lock_accounts(
                [intent.sender_account_id, intent.recipient_account_id]
            )
            sender = await self.accounts.adjust_balances(
                intent.sender_account_id, -amount_cents, -amount_cents
            )
            recipient = await self.accounts.adjust_balances(
                intent.recipient_account_id, amount_cents, amount_cents
            )

            self._log_state(TransferState.FINALIZING, intent.idempotency_key, transaction_id)
            txn = await self.ledger.finalize(
                transaction_id,
                TransactionStatus.COMPLETED,
                sender_balance_after_cents=sender.balance_cents,
                recipient_balance_after_cents=recipient.balance_cents,
            )
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Storage error applying transfer %s, left PENDING: %s", transaction_id, exc
            )
            raise StorageFailureError() from exc
        except LedgerAPIError as exc:
            await self.db.rollback()
            await self._record_failure(transaction_id, exc.error_type)
            raise
        except Exception:
            await self.db.rollback()
            logger.exception("Unexpected error applying transfer %s", transaction_id)
            await self._record_failure(transaction_id, INTERNAL_ERROR_REASON)
            raise

        try:
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Commit failed for transfer %s, left PENDING: %s", transaction_id, exc
            )
            raise StorageFailureError() from exc

        self._log_state(TransferState.COMPLETED, intent.idempotency_key, transaction_id)
        return txn

    async def _record_failure(self, transaction_id: uuid.UUID, reason: str) -> None:
        """Finalize the row FAILED in its own commit."""
        try:
            await self.ledger.finalize(transaction_id, TransactionStatus.FAILED, reason=reason)
            await self.db.commit()
        except InvalidTransitionError:
            # Already terminal (e.g. the reconciliation sweep got there first)
            await self.db.rollback()
            logger.warning("Transfer %s was already terminal, FAILED not recorded", transaction_id)
            return
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error(
                "Could not record FAILED for transfer %s, left PENDING: %s", transaction_id, exc
            )
            raise StorageFailureError() from exc

        logger.info("Transfer %s %s: %s", transaction_id, TransferState.FAILED.value, reason)

    # ------------------------------------------------------------------
    # Replays
    # ------------------------------------------------------------------

    @staticmethod
    def _replay(txn: Transaction) -> TransferResult:
        logger.info(
            "Replaying idempotency key %r: transaction %s is %s",
            txn.idempotency_key, txn.id, txn.status.value,
        )
        if txn.status is TransactionStatus.COMPLETED:
            return result_from_transaction(txn).as_replay()
        if (
            txn.status is TransactionStatus.FAILED
            and txn.failure_reason == InsufficientFundsError.error_type
        ):
            raise InsufficientFundsError(
                account_id=txn.sender_account_id,
                requested_cents=txn.amount_cents,
            )
        reason = txn.failure_reason if txn.status is TransactionStatus.FAILED else txn.status.value
        raise TransferFailedError(txn.id, reason)

    @staticmethod
    def _log_state(
        state: TransferState,
        idempotency_key: str,
        transaction_id: uuid.UUID | None = None,
    ) -> None:
        if transaction_id is None:
            logger.debug("Transfer [%s] %s", idempotency_key, state.value)
        else:
            logger.debug("Transfer [%s] %s: %s", idempotency_key, transaction_id, state.value)
