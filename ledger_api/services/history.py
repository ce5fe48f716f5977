"""
Transaction history as a member sees it.

Each ledger row touching one of the user's accounts is tagged SENT (the user
owns the sending account) or RECEIVED, and carries the counterparty's name
and email. A transfer between two of the user's own accounts shows as SENT.
"""

import enum
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.models.account import Account
from ledger_api.models.transaction import TransactionCategory, TransactionStatus
from ledger_api.models.user import User
from ledger_api.money import from_minor_units
from ledger_api.services.ledger import TransactionLedger


class Direction(str, enum.Enum):
    SENT = "SENT"
    RECEIVED = "RECEIVED"


@dataclass(frozen=True)
class HistoryItem:
    transaction_id: uuid.UUID
    reference: str
    direction: Direction
    amount: Decimal
    currency: str
    status: TransactionStatus
    category: TransactionCategory
    description: str | None
    account_id: uuid.UUID
    counterparty_account_id: uuid.UUID
    counterparty_name: str
    counterparty_email: str
    created_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class HistoryPage:
    items: list[HistoryItem]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


async def get_history(
    db: AsyncSession,
    user_id: uuid.UUID,
    page: int = 1,
    limit: int = 20,
) -> HistoryPage:
    """One page of the user's transactions, newest first."""
    rows, total = await TransactionLedger(db).list_for_user(user_id, page=page, page_size=limit)

    account_ids = {r.sender_account_id for r in rows} | {r.recipient_account_id for r in rows}
    owners = await _account_owners(db, account_ids)

    items = []
    for txn in rows:
        sent = owners[txn.sender_account_id].id == user_id
        own_account = txn.sender_account_id if sent else txn.recipient_account_id
        other_account = txn.recipient_account_id if sent else txn.sender_account_id
        counterparty = owners[other_account]
        items.append(
            HistoryItem(
                transaction_id=txn.id,
                reference=txn.reference,
                direction=Direction.SENT if sent else Direction.RECEIVED,
                amount=from_minor_units(txn.amount_cents, txn.currency),
                currency=txn.currency,
                status=txn.status,
                category=txn.category,
                description=txn.description,
                account_id=own_account,
                counterparty_account_id=other_account,
                counterparty_name=counterparty.full_name,
                counterparty_email=counterparty.email,
                created_at=txn.created_at,
                completed_at=txn.completed_at,
            )
        )
    return HistoryPage(items=items, page=max(page, 1), limit=limit, total=total)


async def _account_owners(db: AsyncSession, account_ids: set[uuid.UUID]) -> dict[uuid.UUID, User]:
    if not account_ids:
        return {}
    result = await db.execute(
        select(Account.id, User)
        .join(User, Account.user_id == User.id)
        .where(Account.id.in_(account_ids))
    )
    return {account_id: user for account_id, user in result.all()}
