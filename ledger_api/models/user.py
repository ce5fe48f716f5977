"""
User model — login identity and transfer counterparty profile.

Each User carries login credentials (email + Argon2 hash), a role, and the
profile fields other users see when they look up a recipient: name, email
and phone number.

Phone numbers are stored as digits only (punctuation and the leading "+"
stripped at signup) so that recipient lookup can compare digit strings.

User types:
  - ADMIN: Operator access — account suspension, ledger closure, reconciliation
  - MEMBER: Customer — the default role for signup
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, Boolean, DateTime, Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_api.database import Base


class UserType(str, enum.Enum):
    """
    Defines the role a user holds.

    Inherits from str so the enum value serializes naturally to JSON.
    """
    ADMIN = "admin"
    MEMBER = "member"


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )

    # Login identifier, stored lower-cased
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
        index=True,
    )

    # Digits only, country code included when the user supplied one
    phone_number: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        index=True,
    )

    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Argon2id hash of the password (never store plaintext!)
    hashed_password: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType),
        default=UserType.MEMBER,
        nullable=False,
    )

    # Soft-disable: deactivated users can't log in but their data is preserved
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
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
    accounts: Mapped[list["Account"]] = relationship(
        back_populates="user",
        order_by="Account.created_at",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
