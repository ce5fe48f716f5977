"""
Payment requests — one member asks another for money, the other pays.

Lifecycle (see models/payment_request.py):

    create ──> PENDING ──pay──> PAID
                  ├──cancel──> CANCELLED
                  └──(expires_at passes)──> EXPIRED

Paying is an ordinary transfer from one of the payer's accounts to the
account named by the requester, executed by the TransferEngine under a key
derived from the request: payment-request:<id>:<attempt>. Retrying a pay
call therefore replays the same transfer instead of paying twice, and a
PAID request answers a repeated pay with the original transfer (replayed).

Expiry is applied lazily: every read or action first moves overdue PENDING
requests to EXPIRED with one conditional UPDATE.

create and cancel do not commit; the request's session does. pay commits
the request's new state itself, because the transfer it wraps has already
committed by then.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.config import settings
from ledger_api.exceptions import (
    AccountInactiveError,
    DuplicateRequestError,
    InvalidTransitionError,
    LedgerAPIError,
    PaymentRequestNotFoundError,
    StorageFailureError,
    TransferInProgressError,
    TransferValidationError,
    UnauthorizedAccessError,
)
from ledger_api.models.payment_request import PaymentRequest, PaymentRequestStatus
from ledger_api.money import from_minor_units, normalize_currency, to_minor_units
from ledger_api.services.account_store import AccountStore
from ledger_api.services.lookup_service import LookupService
from ledger_api.services.results import TransferResult
from ledger_api.services.transfer_engine import (
    MAX_AMOUNT_MINOR_UNITS,
    MAX_DESCRIPTION_LENGTH,
    TransferEngine,
)

logger = logging.getLogger(__name__)

# Errors after which the same attempt key must be kept: the outcome is
# unknown or still in flight, or the key was never used by this request.
_KEEP_ATTEMPT = (TransferInProgressError, DuplicateRequestError, StorageFailureError)


def payment_key(request_id: uuid.UUID, attempt: int) -> str:
    """Idempotency key of one attempt to pay a request."""
    return f"payment-request:{request_id}:{attempt}"


class PaymentRequestService:
    """Payment requests, bound to one storage handle (session)."""

    def __init__(
        self,
        db: AsyncSession,
        engine: TransferEngine | None = None,
        lookup: LookupService | None = None,
        expiry_hours: int | None = None,
    ):
        self.db = db
        self.engine = engine or TransferEngine(db)
        self.lookup = lookup or LookupService(db)
        if expiry_hours is None:
            expiry_hours = settings.PAYMENT_REQUEST_EXPIRY_HOURS
        self.expiry_hours = expiry_hours

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        requester_id: uuid.UUID,
        account_id: uuid.UUID,
        payer_identifier: str,
        amount: Decimal,
        currency: str,
        description: str | None = None,
    ) -> PaymentRequest:
        """
        Ask the user behind `payer_identifier` (email or phone) for money.

        Raises:
            UnauthorizedAccessError: The account is not the requester's.
            AccountInactiveError: The account is suspended or closed.
            TransferValidationError: Bad amount, currency or description, or
                the payer is the requester.
            RecipientNotFoundError / RecipientHasNoAccountError: Unknown payer.
        """
        account = await AccountStore(self.db).get_account(account_id)
        if account.user_id != requester_id:
            raise UnauthorizedAccessError("You do not have access to this account")
        if not account.is_active:
            raise AccountInactiveError(account.id, account.status.value)

        currency = normalize_currency(currency)
        amount_cents = to_minor_units(amount, currency)
        if amount_cents <= 0:
            raise TransferValidationError("Amount must be greater than zero")
        if amount_cents > MAX_AMOUNT_MINOR_UNITS:
            raise TransferValidationError("Amount is too large")
        if account.currency != currency:
            raise TransferValidationError(
                f"Account {account.id} holds {account.currency}, not {currency}"
            )
        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            raise TransferValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )

        payer = await self.lookup.resolve(payer_identifier)
        if payer.user_id == requester_id:
            raise TransferValidationError("Cannot request money from yourself")

        now = datetime.now(timezone.utc)
        request = PaymentRequest(
            requester_user_id=requester_id,
            requester_account_id=account.id,
            payer_user_id=payer.user_id,
            amount_cents=amount_cents,
            currency=currency,
            description=description,
            status=PaymentRequestStatus.PENDING,
            pay_attempts=0,
            expires_at=now + timedelta(hours=self.expiry_hours),
            created_at=now,
        )
        self.db.add(request)
        await self.db.flush()
        logger.info(
            "Payment request %s created: %s %s from user %s to user %s",
            request.id, from_minor_units(amount_cents, currency), currency,
            payer.user_id, requester_id,
        )
        return await self._load(request.id)

    async def get(self, request_id: uuid.UUID, user_id: uuid.UUID) -> PaymentRequest:
        """
        A request the user is party to, as requester or payer.

        Raises:
            PaymentRequestNotFoundError: Missing, or the user is not a party.
        """
        await self._expire_due(PaymentRequest.id == request_id)
        request = await self._load(request_id)
        if user_id not in (request.requester_user_id, request.payer_user_id):
            raise PaymentRequestNotFoundError(request_id)
        return request

    async def list_for_user(
        self,
        user_id: uuid.UUID,
        status: PaymentRequestStatus | None = None,
    ) -> list[PaymentRequest]:
        """Requests the user sent or received, newest first."""
        party = or_(
            PaymentRequest.requester_user_id == user_id,
            PaymentRequest.payer_user_id == user_id,
        )
        await self._expire_due(party)

        query = select(PaymentRequest).where(party)
        if status is not None:
            query = query.where(PaymentRequest.status == status)
        result = await self.db.execute(
            query.order_by(PaymentRequest.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def cancel(self, request_id: uuid.UUID, user_id: uuid.UUID) -> PaymentRequest:
        """
        Withdraw (requester) or decline (payer) a PENDING request.

        Raises:
            PaymentRequestNotFoundError: Missing, or the user is not a party.
            InvalidTransitionError: The request is no longer PENDING.
        """
        request = await self.get(request_id, user_id)
        if request.status is not PaymentRequestStatus.PENDING:
            raise InvalidTransitionError(
                request_id, request.status.value, PaymentRequestStatus.CANCELLED.value
            )

        result = await self.db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.id == request_id)
            .where(PaymentRequest.status == PaymentRequestStatus.PENDING)
            .values(status=PaymentRequestStatus.CANCELLED, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        request = await self._load(request_id)
        if result.rowcount != 1:
            # Paid or expired in between
            raise InvalidTransitionError(
                request_id, request.status.value, PaymentRequestStatus.CANCELLED.value
            )
        logger.info("Payment request %s cancelled by user %s", request_id, user_id)
        return request

    async def pay(
        self,
        request_id: uuid.UUID,
        user_id: uuid.UUID,
        payer_account_id: uuid.UUID,
    ) -> tuple[PaymentRequest, TransferResult]:
        """
        Pay a request from one of the payer's accounts.

        Returns:
            The request (PAID) and the transfer's result. Paying a request
            that is already PAID returns the original transfer, replayed.

        Raises:
            PaymentRequestNotFoundError: Missing, or the user is not a party.
            UnauthorizedAccessError: The user is the requester, or the paying
                account is not theirs.
            InvalidTransitionError: The request is CANCELLED or EXPIRED.
            Any transfer error (InsufficientFundsError, ...). The request stays
            PENDING and the next call is a new attempt.
        """
        request = await self.get(request_id, user_id)
        if request.payer_user_id != user_id:
            raise UnauthorizedAccessError("Only the payer can pay this request")
        account = await AccountStore(self.db).get_account(payer_account_id)
        if account.user_id != user_id:
            raise UnauthorizedAccessError("You do not have access to the paying account")
        if request.status not in (PaymentRequestStatus.PENDING, PaymentRequestStatus.PAID):
            raise InvalidTransitionError(
                request_id, request.status.value, PaymentRequestStatus.PAID.value
            )

        # The engine may roll the session back, which expires `request`
        was_paid = request.status is PaymentRequestStatus.PAID
        attempt = request.pay_attempts
        recipient_account_id = request.requester_account_id
        amount = from_minor_units(request.amount_cents, request.currency)
        currency = request.currency
        description = request.description or f"Payment request {request_id}"

        try:
            result = await self.engine.transfer(
                sender_account_id=payer_account_id,
                recipient_account_id=recipient_account_id,
                amount=amount,
                currency=currency,
                idempotency_key=payment_key(request_id, attempt),
                description=description,
                metadata={"payment_request_id": str(request_id)},
            )
        except _KEEP_ATTEMPT:
            raise
        except LedgerAPIError:
            if not was_paid:
                await self._next_attempt(request_id, attempt)
            raise

        if not was_paid:
            await self._mark_paid(request_id, result.transaction_id)
        return await self._load(request_id), result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, request_id: uuid.UUID) -> PaymentRequest:
        result = await self.db.execute(
            select(PaymentRequest)
            .where(PaymentRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise PaymentRequestNotFoundError(request_id)
        return request

    async def _expire_due(self, *criteria) -> None:
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(PaymentRequest)
            .where(PaymentRequest.status == PaymentRequestStatus.PENDING)
            .where(PaymentRequest.expires_at <= now)
            .where(*criteria)
            .values(status=PaymentRequestStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("Expired %d payment requests", result.rowcount)

    async def _next_attempt(self, request_id: uuid.UUID, attempt: int) -> None:
        """Move to a fresh key after a failed attempt. Concurrent failures bump once."""
        try:
            await self.db.execute(
                update(PaymentRequest)
                .where(PaymentRequest.id == request_id)
                .where(PaymentRequest.pay_attempts == attempt)
                .values(pay_attempts=attempt + 1, updated_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            # The next call replays this attempt's failure and bumps then
            await self.db.rollback()
            logger.error(
                "Could not advance payment request %s past attempt %d: %s",
                request_id, attempt, exc,
            )

    async def _mark_paid(self, request_id: uuid.UUID, transaction_id: uuid.UUID) -> None:
        """Record the paying transfer. Wins over a concurrent cancel or expiry."""
        now = datetime.now(timezone.utc)
        try:
            await self.db.execute(
                update(PaymentRequest)
                .where(PaymentRequest.id == request_id)
                .where(PaymentRequest.transaction_id.is_(None))
                .values(
                    status=PaymentRequestStatus.PAID,
                    transaction_id=transaction_id,
                    paid_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            # Money has moved; a retry replays the transfer and marks PAID
            await self.db.rollback()
            logger.error("Could not mark payment request %s PAID: %s", request_id, exc)
            raise StorageFailureError() from exc
        logger.info("Payment request %s PAID by transaction %s", request_id, transaction_id)
