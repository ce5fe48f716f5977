"""
IdempotencyRecord model — maps a caller-supplied key to the transfer it produced.

The primary key on `key` is the concurrency gate: two requests racing on
the same key both try to insert, the database lets exactly one through.
The record is inserted in the same commit as the PENDING ledger row and is
never updated. Records older than the retention window are purged by the
reconciliation sweep; the ledger row keeps its own unique idempotency_key,
so purging never re-opens a key that still has a transaction.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from ledger_api.database import Base


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
    )

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("transactions.id"),
        nullable=False,
        unique=True,
    )

    request_fingerprint: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True,
    )
