"""
Transaction model — one ledger entry per attempted fund movement.

A transfer writes exactly one row, recording both parties, the amount and
the outcome. The row is written PENDING before any balance is touched and
driven to a terminal status by the transfer engine:

    PENDING ──> COMPLETED   balances moved, resulting balances recorded
            ├─> FAILED      nothing moved, failure_reason recorded
            ├─> CANCELLED   administrative exit
            └─> REFUNDED    administrative exit

Terminal statuses never change again. The ledger never computes balances;
sender_balance_after_cents / recipient_balance_after_cents are a snapshot
taken inside the balance transaction so that an idempotent replay can
return the original result verbatim.

Key fields:
  - idempotency_key: caller-supplied, unique — the retry gate
  - reference: system-generated, unique — for external reconciliation
  - request_fingerprint: hash of the transfer parameters, so a key reused
    with different parameters can be told apart from a genuine retry
  - amount_cents: always positive, in the currency's minor units
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column

from ledger_api.database import Base


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class TransactionCategory(str, enum.Enum):
    TRANSFER = "TRANSFER"
    FOOD = "FOOD"
    TRANSPORT = "TRANSPORT"
    SHOPPING = "SHOPPING"
    ENTERTAINMENT = "ENTERTAINMENT"
    UTILITIES = "UTILITIES"
    BILLS = "BILLS"
    OTHER = "OTHER"


class Transaction(Base):
    __tablename__ = "transactions"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transactions_positive_amount"),
        CheckConstraint(
            "sender_account_id <> recipient_account_id",
            name="ck_transactions_distinct_parties",
        ),
        # History queries: newest first, per side of the transfer
        Index("ix_transactions_sender_created", "sender_account_id", "created_at"),
        Index("ix_transactions_recipient_created", "recipient_account_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    idempotency_key: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )

    reference: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
    )

    request_fingerprint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    sender_account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
    )

    recipient_account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    category: Mapped[TransactionCategory] = mapped_column(
        Enum(TransactionCategory),
        nullable=False,
        default=TransactionCategory.TRANSFER,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )

    # error_type of the failure (e.g. "insufficient_funds"), FAILED rows only
    failure_reason: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )

    # Free-form key/value data supplied by the caller
    meta: Mapped[dict] = mapped_column(
        "metadata",
        JSON,
        nullable=False,
        default=dict,
    )

    # Snapshot of both balances right after a COMPLETED transfer
    sender_balance_after_cents: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )
    recipient_balance_after_cents: Mapped[int | None] = mapped_column(
        BigInteger,
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
