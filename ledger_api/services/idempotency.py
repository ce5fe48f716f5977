"""
Idempotency Guard — a retried transfer request executes at most once.

The guard stores one IdempotencyRecord per key, inserted in the same commit
as the PENDING ledger row. The insert itself is the concurrency gate: the
primary key on the record (and the unique idempotency_key on the ledger
row) lets exactly one of several racing requests through. Losers roll back
and are handed the winner's transaction.

A request fingerprint (hash of sender, recipient, amount and currency) is
stored with the key. A key presented again with a different fingerprint is
not a retry, it is a client bug, and is rejected with DuplicateRequestError.

In-flight originals:
  If the winner is still PENDING, the guard polls for up to
  IDEMPOTENCY_WAIT_SECONDS. If the original has not reached a terminal
  status by then, the caller gets TransferInProgressError and should retry
  later with the same key.
"""

import asyncio
import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.config import settings
from ledger_api.exceptions import (
    DuplicateRequestError,
    StorageFailureError,
    TransferInProgressError,
)
from ledger_api.models.idempotency import IdempotencyRecord
from ledger_api.models.transaction import Transaction, TransactionStatus
from ledger_api.services.ledger import TransactionLedger, TransferIntent
from ledger_api.services.results import TransferResult, result_from_transaction

logger = logging.getLogger(__name__)


def request_fingerprint(
    sender_account_id: uuid.UUID,
    recipient_account_id: uuid.UUID,
    amount_cents: int,
    currency: str,
) -> str:
    """SHA-256 over the parameters that decide what money moves."""
    payload = f"{sender_account_id}|{recipient_account_id}|{amount_cents}|{currency}"
    return hashlib.sha256(payload.encode()).hexdigest()


@dataclass(frozen=True)
class Reservation:
    """
    Outcome of check_and_reserve.

    is_new=True: this caller owns the key and must execute `transaction`.
    is_new=False: `transaction` is the terminal row recorded for the key;
    existing_result is set when that row is COMPLETED.
    """
    is_new: bool
    transaction: Transaction
    existing_result: TransferResult | None = None


class IdempotencyGuard:
    def __init__(
        self,
        db: AsyncSession,
        ledger: TransactionLedger | None = None,
        wait_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ):
        self.db = db
        self.ledger = ledger or TransactionLedger(db)
        self.wait_seconds = (
            settings.IDEMPOTENCY_WAIT_SECONDS if wait_seconds is None else wait_seconds
        )
        self.poll_interval_seconds = (
            settings.IDEMPOTENCY_POLL_INTERVAL_SECONDS
            if poll_interval_seconds is None
            else poll_interval_seconds
        )

    async def find_existing(self, idempotency_key: str, fingerprint: str) -> Transaction | None:
        """
        Return the terminal transaction already recorded for this key, if any.

        Blocks briefly while the recorded transaction is still PENDING.

        Raises:
            DuplicateRequestError: If the key was used with different parameters.
            TransferInProgressError: If the original is still PENDING after the wait.
        """
        txn, stored_fingerprint = await self._load(idempotency_key)
        if txn is None:
            return None
        return await self._matching(idempotency_key, txn, stored_fingerprint, fingerprint)

    async def find_for_sender(
        self,
        idempotency_key: str,
        sender_account_id: uuid.UUID,
        amount_cents: int,
        currency: str,
    ) -> Transaction | None:
        """
        find_existing for a request whose recipient has not been resolved yet.

        The recipient is taken from the recorded row, so the request matches
        when its sender, amount and currency match the original.

        Raises:
            DuplicateRequestError: If the key was used with different parameters.
            TransferInProgressError: If the original is still PENDING after the wait.
        """
        txn, stored_fingerprint = await self._load(idempotency_key)
        if txn is None:
            return None
        fingerprint = request_fingerprint(
            sender_account_id, txn.recipient_account_id, amount_cents, currency
        )
        return await self._matching(idempotency_key, txn, stored_fingerprint, fingerprint)

    async def _load(self, idempotency_key: str) -> tuple[Transaction | None, str | None]:
        record = await self._get_record(idempotency_key)
        if record is not None:
            return await self.ledger.find_by_id(record.transaction_id), record.request_fingerprint
        # The record may have been purged; the ledger row keeps the key too
        txn = await self.ledger.get_by_idempotency_key(idempotency_key)
        return txn, (txn.request_fingerprint if txn is not None else None)

    async def _matching(
        self,
        idempotency_key: str,
        txn: Transaction,
        stored_fingerprint: str | None,
        fingerprint: str,
    ) -> Transaction:
        if stored_fingerprint != fingerprint:
            logger.warning("Idempotency key %r reused with different parameters", idempotency_key)
            raise DuplicateRequestError(idempotency_key)
        if txn.status is TransactionStatus.PENDING:
            txn = await self._wait_for_outcome(txn.id, idempotency_key)
        return txn

    async def check_and_reserve(
        self,
        idempotency_key: str,
        fingerprint: str,
        intent: TransferIntent,
    ) -> Reservation:
        """
        Atomically claim the key by writing the PENDING row and its record.

        Commits on success; the PENDING row is the transfer's durability
        checkpoint.

        Raises:
            DuplicateRequestError: If the key was used with different parameters.
            TransferInProgressError: If a racing original is still PENDING after the wait.
            StorageFailureError: If the write fails for any other reason.
        """
        existing = await self.find_existing(idempotency_key, fingerprint)
        if existing is not None:
            return self._replay(existing)

        try:
            txn = await self.ledger.create_pending(intent)
            self.db.add(
                IdempotencyRecord(
                    key=idempotency_key,
                    transaction_id=txn.id,
                    request_fingerprint=fingerprint,
                )
            )
            await self.db.flush()
            await self.db.commit()
        except DuplicateRequestError:
            # Lost the race on the ledger's unique key; the ledger rolled back
            logger.info("Idempotency key %r claimed concurrently, loading winner", idempotency_key)
            return await self._load_winner(idempotency_key, fingerprint)
        except IntegrityError:
            await self.db.rollback()
            logger.info("Idempotency record %r claimed concurrently, loading winner", idempotency_key)
            return await self._load_winner(idempotency_key, fingerprint)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Could not reserve idempotency key %r: %s", idempotency_key, exc)
            raise StorageFailureError() from exc

        return Reservation(is_new=True, transaction=txn)

    async def purge_expired(self, older_than: datetime | None = None) -> int:
        """
        Delete records created before `older_than` (default: the retention window).

        Does not commit. Returns the number of records deleted.
        """
        if older_than is None:
            older_than = datetime.now(timezone.utc) - timedelta(
                hours=settings.IDEMPOTENCY_RETENTION_HOURS
            )
        result = await self.db.execute(
            delete(IdempotencyRecord)
            .where(IdempotencyRecord.created_at < older_than)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ------------------------------------------------------------------

    async def _get_record(self, idempotency_key: str) -> IdempotencyRecord | None:
        result = await self.db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _load_winner(self, idempotency_key: str, fingerprint: str) -> Reservation:
        existing = await self.find_existing(idempotency_key, fingerprint)
        if existing is None:
            # The clash was real but the row is gone; nothing safe to return
            raise StorageFailureError()
        return self._replay(existing)

    async def _wait_for_outcome(self, transaction_id: uuid.UUID, idempotency_key: str) -> Transaction:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds
        while loop.time() < deadline:
            await asyncio.sleep(self.poll_interval_seconds)
            # End any open read transaction so the next read sees new commits
            await self.db.rollback()
            txn = await self.ledger.get_by_id(transaction_id)
            if txn.status.is_terminal:
                return txn
        logger.info("Transfer for idempotency key %r still in progress", idempotency_key)
        raise TransferInProgressError(idempotency_key)

    @staticmethod
    def _replay(txn: Transaction) -> Reservation:
        result = None
        if txn.status is TransactionStatus.COMPLETED:
            result = result_from_transaction(txn).as_replay()
        return Reservation(is_new=False, transaction=txn, existing_result=result)
