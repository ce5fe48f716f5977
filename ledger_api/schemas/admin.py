"""
Pydantic schemas for the admin (ledger operations) endpoints.

Admin views expose full ledger rows including failure reasons. Request
fingerprints are left out.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import field_validator

from ledger_api.models.account import AccountStatus, AccountType
from ledger_api.models.transaction import TransactionCategory, TransactionStatus
from ledger_api.schemas.common import CamelModel
from ledger_api.schemas.payments import Pagination


class AdminAccountResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    account_number: str
    account_type: AccountType
    currency: str
    status: AccountStatus
    balance: Decimal
    available_balance: Decimal
    version: int
    created_at: datetime
    updated_at: datetime


class AccountStatusUpdate(CamelModel):
    """Request body for PUT /admin/accounts/{id}/status."""
    status: AccountStatus


class LedgerEntryResponse(CamelModel):
    id: uuid.UUID
    idempotency_key: str
    reference: str
    sender_account_id: uuid.UUID
    recipient_account_id: uuid.UUID
    amount: Decimal
    currency: str
    category: TransactionCategory
    description: str | None
    status: TransactionStatus
    failure_reason: str | None
    metadata: dict
    created_at: datetime
    completed_at: datetime | None


class LedgerPageResponse(CamelModel):
    transactions: list[LedgerEntryResponse]
    pagination: Pagination


class TransactionCloseRequest(CamelModel):
    """Request body for PUT /admin/transactions/{id}/close."""
    status: TransactionStatus

    @field_validator("status")
    @classmethod
    def administrative_exit(cls, value: TransactionStatus) -> TransactionStatus:
        if value not in (TransactionStatus.CANCELLED, TransactionStatus.REFUNDED):
            raise ValueError("status must be CANCELLED or REFUNDED")
        return value


class SweepResponse(CamelModel):
    failed_count: int
    purged_count: int
