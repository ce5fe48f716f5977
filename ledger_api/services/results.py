"""
TransferResult — the value returned by a transfer, first time or on replay.

A result is always rebuilt from the COMPLETED ledger row (amount, currency
and the balance snapshot taken inside the balance transaction), so the
first call and every idempotent replay produce equal results.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from ledger_api.models.transaction import Transaction, TransactionStatus
from ledger_api.money import from_minor_units


@dataclass(frozen=True)
class TransferResult:
    transaction_id: uuid.UUID
    reference: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    sender_account_id: uuid.UUID
    sender_new_balance: Decimal
    recipient_account_id: uuid.UUID
    recipient_new_balance: Decimal
    timestamp: datetime
    # True when returned for a retried request; not part of equality
    replayed: bool = field(default=False, compare=False)

    def as_replay(self) -> "TransferResult":
        return replace(self, replayed=True)


def result_from_transaction(txn: Transaction) -> TransferResult:
    """
    Build the result of a COMPLETED ledger row.

    Raises:
        ValueError: If the row is not COMPLETED.
    """
    if txn.status is not TransactionStatus.COMPLETED:
        raise ValueError(f"Transaction {txn.id} is {txn.status.value}, not COMPLETED")

    return TransferResult(
        transaction_id=txn.id,
        reference=txn.reference,
        amount=from_minor_units(txn.amount_cents, txn.currency),
        currency=txn.currency,
        status=txn.status,
        sender_account_id=txn.sender_account_id,
        sender_new_balance=from_minor_units(txn.sender_balance_after_cents, txn.currency),
        recipient_account_id=txn.recipient_account_id,
        recipient_new_balance=from_minor_units(txn.recipient_balance_after_cents, txn.currency),
        timestamp=txn.completed_at,
    )
