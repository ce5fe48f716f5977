"""
Tests for the transfer engine.

These tests verify:
  - Conservation: a transfer moves exactly the amount, both legs at once
  - Idempotency: the same key twice is one ledger row and one mutation
  - No negative balances: an overdraft is rejected and changes nothing
  - Validation failures write nothing
  - Failures after the PENDING row end FAILED with a reason, or stay
    PENDING (storage failures) for the reconciliation sweep
  - Terminal rows are never touched again
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from ledger_api.exceptions import (
    AccountInactiveError,
    AccountNotFoundError,
    DuplicateRequestError,
    InsufficientFundsError,
    StorageFailureError,
    TransferFailedError,
    TransferInProgressError,
    TransferValidationError,
)
from ledger_api.models.account import Account, AccountStatus
from ledger_api.models.transaction import Transaction, TransactionCategory, TransactionStatus
from ledger_api.services.account_store import AccountStore
from ledger_api.services.idempotency import IdempotencyGuard
from ledger_api.services.ledger import TransactionLedger
from ledger_api.services.reconciliation import reconcile_stale_pending
from ledger_api.services.transfer_engine import TransferEngine


async def count_transactions(session) -> int:
    return (await session.execute(select(func.count()).select_from(Transaction))).scalar_one()


async def balance(session, account_id) -> int:
    return (await AccountStore(session).get_account(account_id)).balance_cents


async def only_transaction(session) -> Transaction:
    rows, total = await TransactionLedger(session).list_all()
    assert total == 1
    return rows[0]


def disk_error() -> OperationalError:
    return OperationalError("UPDATE accounts", {}, Exception("disk I/O error"))


class TestScenarios:
    async def test_transfer_moves_funds(self, db_session, make_account):
        """A=1000, B=500, transfer 200 -> A=800, B=700."""
        a = await make_account("1000.00")
        b = await make_account("500.00")

        result = await TransferEngine(db_session).transfer(
            a.id, b.id, Decimal("200.00"), "USD", idempotency_key="scenario-a",
            description="Rent share",
        )

        assert result.status == TransactionStatus.COMPLETED
        assert result.amount == Decimal("200.00")
        assert result.sender_new_balance == Decimal("800.00")
        assert result.recipient_new_balance == Decimal("700.00")
        assert result.reference.startswith("TRF-")
        assert result.replayed is False
        assert await balance(db_session, a.id) == 80000
        assert await balance(db_session, b.id) == 70000

        txn = await only_transaction(db_session)
        assert txn.id == result.transaction_id
        assert txn.status == TransactionStatus.COMPLETED
        assert txn.description == "Rent share"
        assert txn.completed_at is not None

    async def test_overdraft_rejected(self, db_session, make_account):
        """A=800 transferring 2000 -> InsufficientFunds, balances unchanged, row FAILED."""
        a = await make_account("800.00")
        b = await make_account("700.00")

        with pytest.raises(InsufficientFundsError) as exc_info:
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("2000.00"), "USD", idempotency_key="scenario-b"
            )
        assert exc_info.value.available_cents == 80000

        assert await balance(db_session, a.id) == 80000
        assert await balance(db_session, b.id) == 70000
        txn = await only_transaction(db_session)
        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "insufficient_funds"

    async def test_self_transfer_writes_nothing(self, db_session, make_account):
        a = await make_account("100.00")
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, a.id, Decimal("10.00"), "USD", idempotency_key="self"
            )
        assert await count_transactions(db_session) == 0

    async def test_same_key_twice_moves_money_once(self, db_session, make_account):
        a = await make_account("1000.00")
        b = await make_account("0.00")
        engine = TransferEngine(db_session)

        first = await engine.transfer(a.id, b.id, Decimal("100.00"), "USD", idempotency_key="twice")
        second = await engine.transfer(a.id, b.id, Decimal("100.00"), "USD", idempotency_key="twice")

        assert second == first
        assert second.transaction_id == first.transaction_id
        assert second.reference == first.reference
        assert second.replayed is True
        assert await balance(db_session, a.id) == 90000
        assert await balance(db_session, b.id) == 10000
        assert await count_transactions(db_session) == 1


class TestConservation:
    async def test_sum_is_unchanged(self, db_session, make_account):
        accounts = [await make_account("250.00") for _ in range(3)]
        engine = TransferEngine(db_session)
        moves = [(0, 1, "12.34"), (1, 2, "100.00"), (2, 0, "0.01"), (1, 0, "50.50")]

        for i, (src, dst, amount) in enumerate(moves):
            await engine.transfer(
                accounts[src].id, accounts[dst].id, Decimal(amount), "USD",
                idempotency_key=f"move-{i}",
            )

        balances = [await balance(db_session, a.id) for a in accounts]
        assert sum(balances) == 3 * 25000
        assert balances == [25000 - 1234 + 1 + 5050, 25000 + 1234 - 10000 - 5050, 25000 + 10000 - 1]

    async def test_available_balance_moves_with_balance(self, db_session, make_account):
        a = await make_account("10.00")
        b = await make_account("0.00")
        await TransferEngine(db_session).transfer(a.id, b.id, Decimal("4.00"), "USD", idempotency_key="k")

        store = AccountStore(db_session)
        sender = await store.get_account(a.id)
        recipient = await store.get_account(b.id)
        assert sender.available_balance_cents == sender.balance_cents == 600
        assert recipient.available_balance_cents == recipient.balance_cents == 400


class TestValidation:
    @pytest.mark.parametrize("amount", ["0", "-5.00", "1.001", "NaN"])
    async def test_bad_amounts(self, db_session, make_account, amount):
        a = await make_account("100.00")
        b = await make_account()
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal(amount), "USD", idempotency_key="bad"
            )
        assert await count_transactions(db_session) == 0

    async def test_absurdly_large_amount(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1e20"), "USD", idempotency_key="huge"
            )

    @pytest.mark.parametrize("key", ["", "   ", "k" * 256])
    async def test_bad_idempotency_keys(self, db_session, make_account, key):
        a = await make_account("100.00")
        b = await make_account()
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1.00"), "USD", idempotency_key=key
            )

    async def test_description_limit(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        engine = TransferEngine(db_session)
        with pytest.raises(TransferValidationError):
            await engine.transfer(
                a.id, b.id, Decimal("1.00"), "USD",
                idempotency_key="long", description="d" * 256,
            )
        assert await count_transactions(db_session) == 0

        result = await engine.transfer(
            a.id, b.id, Decimal("1.00"), "USD", idempotency_key="fits", description="d" * 255
        )
        assert (await only_transaction(db_session)).description == "d" * 255
        assert result.amount == Decimal("1.00")

    async def test_unsupported_currency(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1.00"), "XYZ", idempotency_key="ccy"
            )

    async def test_cross_currency_rejected(self, db_session, make_account):
        a = await make_account("100.00", currency="USD")
        b = await make_account(currency="GHS")
        with pytest.raises(TransferValidationError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1.00"), "USD", idempotency_key="cross"
            )
        assert await count_transactions(db_session) == 0

    async def test_currency_is_case_insensitive(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        result = await TransferEngine(db_session).transfer(
            a.id, b.id, Decimal("1.00"), "usd", idempotency_key="lower"
        )
        assert result.currency == "USD"

    async def test_unknown_recipient(self, db_session, make_account):
        a = await make_account("100.00")
        with pytest.raises(AccountNotFoundError):
            await TransferEngine(db_session).transfer(
                a.id, uuid.uuid4(), Decimal("1.00"), "USD", idempotency_key="ghost"
            )
        assert await count_transactions(db_session) == 0

    @pytest.mark.parametrize("status", [AccountStatus.SUSPENDED, AccountStatus.CLOSED])
    async def test_inactive_recipient(self, db_session, make_account, status):
        a = await make_account("100.00")
        b = await make_account()
        await AccountStore(db_session).set_status(b.id, status)
        await db_session.commit()

        with pytest.raises(AccountInactiveError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1.00"), "USD", idempotency_key="inactive"
            )
        assert await count_transactions(db_session) == 0


class TestReplays:
    async def test_key_reused_with_other_amount(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        engine = TransferEngine(db_session)
        await engine.transfer(a.id, b.id, Decimal("1.00"), "USD", idempotency_key="reuse")

        with pytest.raises(DuplicateRequestError):
            await engine.transfer(a.id, b.id, Decimal("2.00"), "USD", idempotency_key="reuse")
        assert await balance(db_session, a.id) == 9900

    async def test_find_replay_without_recipient(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        c = await make_account("100.00")
        engine = TransferEngine(db_session)

        assert await engine.find_replay(a.id, Decimal("1.00"), "USD", "lookup") is None

        original = await engine.transfer(a.id, b.id, Decimal("1.00"), "USD", idempotency_key="lookup")
        replay = await engine.find_replay(a.id, Decimal("1.00"), "usd", "lookup")
        assert replay.transaction_id == original.transaction_id
        assert replay.recipient_account_id == b.id
        assert replay.replayed

        with pytest.raises(DuplicateRequestError):
            await engine.find_replay(a.id, Decimal("2.00"), "USD", "lookup")
        with pytest.raises(DuplicateRequestError):
            await engine.find_replay(c.id, Decimal("1.00"), "USD", "lookup")
        assert await balance(db_session, a.id) == 9900

    async def test_failed_transfer_replays_its_failure(self, db_session, make_account):
        a = await make_account("5.00")
        b = await make_account()
        engine = TransferEngine(db_session)

        for _ in range(2):
            with pytest.raises(InsufficientFundsError):
                await engine.transfer(a.id, b.id, Decimal("10.00"), "USD", idempotency_key="poor")
        assert await count_transactions(db_session) == 1

    async def test_replay_after_funding_still_fails(self, db_session, make_account):
        """A key's outcome is fixed; a retry never re-executes."""
        a = await make_account("5.00")
        b = await make_account()
        engine = TransferEngine(db_session)
        with pytest.raises(InsufficientFundsError):
            await engine.transfer(a.id, b.id, Decimal("10.00"), "USD", idempotency_key="fixed")

        await db_session.execute(
            update(Account).where(Account.id == a.id).values(balance_cents=5000, available_balance_cents=5000)
        )
        await db_session.commit()

        with pytest.raises(InsufficientFundsError):
            await engine.transfer(a.id, b.id, Decimal("10.00"), "USD", idempotency_key="fixed")
        assert await balance(db_session, a.id) == 5000

    async def test_cancelled_transfer_replays_as_failed(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        engine = TransferEngine(db_session, accounts=BrokenCreditStore(db_session, disk_error()))
        with pytest.raises(StorageFailureError):
            await engine.transfer(a.id, b.id, Decimal("1.00"), "USD", idempotency_key="cancel")

        txn = await only_transaction(db_session)
        await TransactionLedger(db_session).close(txn.id, TransactionStatus.CANCELLED)
        await db_session.commit()

        with pytest.raises(TransferFailedError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("1.00"), "USD", idempotency_key="cancel"
            )

    async def test_category_and_metadata_recorded(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account()
        await TransferEngine(db_session).transfer(
            a.id, b.id, Decimal("1.00"), "USD", idempotency_key="meta",
            category=TransactionCategory.UTILITIES, metadata={"bill": "electric"},
        )
        txn = await only_transaction(db_session)
        assert txn.category == TransactionCategory.UTILITIES
        assert txn.meta == {"bill": "electric"}


class BrokenCreditStore(AccountStore):
    """Raises `error` on the credit leg, after the debit has been applied."""

    def __init__(self, db, error: Exception):
        super().__init__(db)
        self.error = error

    async def adjust_balances(self, account_id, balance_delta, available_balance_delta):
        if balance_delta > 0:
            raise self.error
        return await super().adjust_balances(account_id, balance_delta, available_balance_delta)


class SuspendingStore(AccountStore):
    """Suspends the recipient right after taking the locks."""

    def __init__(self, db, recipient_id):
        super().__init__(db)
        self.recipient_id = recipient_id

    async def lock_accounts(self, account_ids):
        locked = await super().lock_accounts(account_ids)
        await self.db.execute(
            update(Account)
            .where(Account.id == self.recipient_id)
            .values(status=AccountStatus.SUSPENDED)
        )
        return locked


class BrokenFinalizeLedger(TransactionLedger):
    async def finalize(self, transaction_id, outcome, *args, **kwargs):
        if outcome is TransactionStatus.COMPLETED:
            raise disk_error()
        return await super().finalize(transaction_id, outcome, *args, **kwargs)


class TestFailureInjection:
    async def test_storage_error_mid_transfer_leaves_pending(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account("0.00")
        engine = TransferEngine(db_session, accounts=BrokenCreditStore(db_session, disk_error()))

        with pytest.raises(StorageFailureError):
            await engine.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="io")

        # The debit was rolled back with the rest of the balance transaction
        assert await balance(db_session, a.id) == 10000
        assert await balance(db_session, b.id) == 0
        assert (await only_transaction(db_session)).status == TransactionStatus.PENDING

    async def test_storage_error_on_finalize_leaves_pending(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account("0.00")
        engine = TransferEngine(db_session, ledger=BrokenFinalizeLedger(db_session))

        with pytest.raises(StorageFailureError):
            await engine.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="fin")

        assert await balance(db_session, a.id) == 10000
        assert await balance(db_session, b.id) == 0
        assert (await only_transaction(db_session)).status == TransactionStatus.PENDING

    async def test_retry_while_pending_is_in_progress(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account("0.00")
        broken = TransferEngine(db_session, accounts=BrokenCreditStore(db_session, disk_error()))
        with pytest.raises(StorageFailureError):
            await broken.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="retry")

        guard = IdempotencyGuard(db_session, wait_seconds=0.05, poll_interval_seconds=0.01)
        with pytest.raises(TransferInProgressError):
            await TransferEngine(db_session, guard=guard).transfer(
                a.id, b.id, Decimal("30.00"), "USD", idempotency_key="retry"
            )

    async def test_sweep_resolves_stuck_transfer(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account("0.00")
        broken = TransferEngine(db_session, accounts=BrokenCreditStore(db_session, disk_error()))
        with pytest.raises(StorageFailureError):
            await broken.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="stuck")

        assert await reconcile_stale_pending(db_session, timeout_seconds=0) == 1
        await db_session.commit()

        txn = await only_transaction(db_session)
        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "reconciliation_timeout"
        with pytest.raises(TransferFailedError):
            await TransferEngine(db_session).transfer(
                a.id, b.id, Decimal("30.00"), "USD", idempotency_key="stuck"
            )
        assert await balance(db_session, a.id) == 10000

    async def test_unexpected_error_finalizes_failed(self, db_session, make_account):
        a = await make_account("100.00")
        b = await make_account("0.00")
        engine = TransferEngine(
            db_session, accounts=BrokenCreditStore(db_session, RuntimeError("boom"))
        )

        with pytest.raises(RuntimeError):
            await engine.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="boom")

        assert await balance(db_session, a.id) == 10000
        txn = await only_transaction(db_session)
        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "internal_error"

    async def test_recipient_suspended_under_lock(self, db_session, make_account):
        """The debit is undone when the credit leg finds the recipient inactive."""
        a = await make_account("100.00")
        b = await make_account("0.00")
        engine = TransferEngine(db_session, accounts=SuspendingStore(db_session, b.id))

        with pytest.raises(AccountInactiveError):
            await engine.transfer(a.id, b.id, Decimal("30.00"), "USD", idempotency_key="race")

        assert await balance(db_session, a.id) == 10000
        assert await balance(db_session, b.id) == 0
        # The suspension was part of the rolled back transaction too
        assert (await AccountStore(db_session).get_account(b.id)).status == AccountStatus.ACTIVE
        txn = await only_transaction(db_session)
        assert txn.status == TransactionStatus.FAILED
        assert txn.failure_reason == "account_inactive"
