"""
PaymentRequest model — one member asking another for money.

The requester names the account to be credited, the payer, the amount and
an optional description. The payer settles it with an ordinary transfer, so
money only ever moves through the transfer engine and the ledger:

    PENDING ──> PAID        payer's transfer COMPLETED, transaction_id set
            ├─> CANCELLED   withdrawn by the requester or declined by the payer
            └─> EXPIRED     still unpaid at expires_at

Terminal statuses never change again. Expiry is applied when a request is
read or acted on; there is no background job.

pay_attempts numbers the idempotency key of each payment attempt. A failed
attempt (e.g. insufficient funds) leaves a FAILED ledger row under its key,
so the counter moves on and the next attempt gets a fresh key, while two
concurrent attempts still share one key and move money at most once.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_api.database import Base


class PaymentRequestStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payment_requests_positive_amount"),
        CheckConstraint(
            "requester_user_id <> payer_user_id",
            name="ck_payment_requests_distinct_parties",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    requester_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    # Credited when the request is paid
    requester_account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id"),
        nullable=False,
    )

    payer_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    amount_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    status: Mapped[PaymentRequestStatus] = mapped_column(
        Enum(PaymentRequestStatus),
        nullable=False,
        default=PaymentRequestStatus.PENDING,
        index=True,
    )

    pay_attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    # Ledger row of the transfer that paid the request
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=True,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    requester: Mapped["User"] = relationship(
        foreign_keys=[requester_user_id],
        lazy="joined",
    )
    payer: Mapped["User"] = relationship(
        foreign_keys=[payer_user_id],
        lazy="joined",
    )
