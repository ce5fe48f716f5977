"""
Concurrency tests for the transfer engine.

Each transfer runs in its own session against a file-backed database, so
the requests really do compete for the same rows.

These tests verify:
  - Two debits racing for the same funds: exactly one wins, the balance
    never goes negative
  - The same idempotency key sent twice at once moves money once
  - Transfers in opposite directions between the same pair both complete
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from ledger_api.exceptions import InsufficientFundsError, TransferInProgressError
from ledger_api.models.transaction import Transaction, TransactionStatus
from ledger_api.services.account_store import AccountStore
from ledger_api.services.idempotency import IdempotencyGuard, request_fingerprint
from ledger_api.services.ledger import TransferIntent
from ledger_api.services.transfer_engine import TransferEngine


@pytest.fixture
def run_transfer(session_factory):
    """run_transfer(sender, recipient, "60.00", key) in a session of its own."""

    async def _run(sender_id, recipient_id, amount: str, key: str):
        async with session_factory() as session:
            return await TransferEngine(session).transfer(
                sender_id, recipient_id, Decimal(amount), "USD", idempotency_key=key
            )

    return _run


async def read_balance(session_factory, account_id) -> int:
    async with session_factory() as session:
        return (await AccountStore(session).get_account(account_id)).balance_cents


async def all_transactions(session_factory) -> list[Transaction]:
    async with session_factory() as session:
        return list((await session.execute(select(Transaction))).scalars().all())


class TestCompetingDebits:
    async def test_only_one_overlapping_debit_succeeds(
        self, session_factory, make_file_account, run_transfer
    ):
        """Balance 100, two transfers of 60 with different keys."""
        sender = await make_file_account("100.00")
        recipient = await make_file_account()

        outcomes = await asyncio.gather(
            run_transfer(sender.id, recipient.id, "60.00", "race-1"),
            run_transfer(sender.id, recipient.id, "60.00", "race-2"),
            return_exceptions=True,
        )

        succeeded = [o for o in outcomes if not isinstance(o, Exception)]
        rejected = [o for o in outcomes if isinstance(o, InsufficientFundsError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1

        assert await read_balance(session_factory, sender.id) == 4000
        assert await read_balance(session_factory, recipient.id) == 6000

        statuses = sorted(t.status.value for t in await all_transactions(session_factory))
        assert statuses == [TransactionStatus.COMPLETED.value, TransactionStatus.FAILED.value]

    async def test_opposite_directions_both_complete(
        self, session_factory, make_file_account, run_transfer
    ):
        a = await make_file_account("100.00")
        b = await make_file_account("100.00")

        first, second = await asyncio.gather(
            run_transfer(a.id, b.id, "30.00", "a-to-b"),
            run_transfer(b.id, a.id, "10.00", "b-to-a"),
        )

        assert first.status == TransactionStatus.COMPLETED
        assert second.status == TransactionStatus.COMPLETED
        assert await read_balance(session_factory, a.id) == 8000
        assert await read_balance(session_factory, b.id) == 12000


class TestConcurrentReplays:
    async def test_same_key_moves_money_once(
        self, session_factory, make_file_account, run_transfer
    ):
        sender = await make_file_account("100.00")
        recipient = await make_file_account()

        first, second = await asyncio.gather(
            run_transfer(sender.id, recipient.id, "25.00", "double-click"),
            run_transfer(sender.id, recipient.id, "25.00", "double-click"),
        )

        assert first.transaction_id == second.transaction_id
        assert first.reference == second.reference
        assert sorted([first.replayed, second.replayed]) == [False, True]
        assert await read_balance(session_factory, sender.id) == 7500
        assert await read_balance(session_factory, recipient.id) == 2500
        assert len(await all_transactions(session_factory)) == 1

    async def test_concurrent_reservations_have_one_winner(
        self, session_factory, make_file_account
    ):
        """The loser sees the winner's PENDING row and gives up after its wait."""
        sender = await make_file_account("100.00")
        recipient = await make_file_account()
        fingerprint = request_fingerprint(sender.id, recipient.id, 1000, "USD")
        intent = TransferIntent(
            sender_account_id=sender.id,
            recipient_account_id=recipient.id,
            amount_cents=1000,
            currency="USD",
            idempotency_key="reserve-race",
            request_fingerprint=fingerprint,
        )

        async def reserve():
            async with session_factory() as session:
                guard = IdempotencyGuard(session, wait_seconds=0.1, poll_interval_seconds=0.02)
                return await guard.check_and_reserve("reserve-race", fingerprint, intent)

        outcomes = await asyncio.gather(reserve(), reserve(), return_exceptions=True)

        winners = [o for o in outcomes if not isinstance(o, Exception) and o.is_new]
        waiting = [o for o in outcomes if isinstance(o, TransferInProgressError)]
        assert len(winners) == 1
        assert len(waiting) == 1

        rows = await all_transactions(session_factory)
        assert len(rows) == 1
        assert rows[0].status == TransactionStatus.PENDING
