"""
Account model — a balance-holding record owned by a User.

Each account has:
  - A unique account number (randomly generated 10-digit string)
  - A type: PERSONAL or BUSINESS
  - A status: ACTIVE, SUSPENDED or CLOSED (never physically deleted)
  - Two balances in integer minor units:
      balance_cents            — ledger balance
      available_balance_cents  — spendable balance (<= balance when funds are reserved)
  - A currency code (ISO 4217); transfers never cross currencies
  - A version counter, bumped by every balance adjustment

Balance management:
  Balances are changed only through AccountStore.adjust_balances, a single
  conditional UPDATE, and only the transfer engine calls it. CHECK
  constraints at the database level are the final safety net: neither
  balance can go negative and available can never exceed the ledger balance.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import BigInteger, String, Integer, DateTime, Enum, ForeignKey, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_api.database import Base


class AccountType(str, enum.Enum):
    PERSONAL = "PERSONAL"
    BUSINESS = "BUSINESS"


class AccountStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"


class Account(Base):
    __tablename__ = "accounts"

    __table_args__ = (
        CheckConstraint(
            "balance_cents >= 0",
            name="ck_accounts_non_negative_balance",
        ),
        CheckConstraint(
            "available_balance_cents >= 0",
            name="ck_accounts_non_negative_available_balance",
        ),
        CheckConstraint(
            "available_balance_cents <= balance_cents",
            name="ck_accounts_available_within_balance",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id"),
        nullable=False,
        index=True,
    )

    account_type: Mapped[AccountType] = mapped_column(
        Enum(AccountType),
        nullable=False,
        default=AccountType.PERSONAL,
    )

    # Unique 10-digit account number (generated at creation time)
    account_number: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        nullable=False,
    )

    balance_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    available_balance_cents: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    # ISO 4217 currency code
    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    # --- Relationships ---
    user: Mapped["User"] = relationship(
        back_populates="accounts",
    )

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE
