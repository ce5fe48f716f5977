"""
Pydantic schemas for the payments API.

Amounts are decimal strings on the way out ("800.00") and decimal numbers
or strings on the way in. They are never floats inside the service: the
transfer engine converts them to integer minor units, rejecting amounts
with more decimals than the currency allows.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import Field, model_validator

from ledger_api.models.account import AccountStatus, AccountType
from ledger_api.models.transaction import TransactionCategory, TransactionStatus
from ledger_api.schemas.common import CamelModel


class TransferRequest(CamelModel):
    """
    Request body for POST /payments/transfer.

    The recipient is given either as an account id or as an identifier
    (email or phone number) resolved through recipient lookup, in which
    case the recipient's first active account in the transfer currency is
    used.
    """
    sender_account_id: uuid.UUID
    recipient_account_id: uuid.UUID | None = None
    recipient_identifier: str | None = Field(default=None, min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=255)
    category: TransactionCategory = TransactionCategory.TRANSFER
    metadata: dict = Field(default_factory=dict)
    idempotency_key: str = Field(min_length=1, max_length=255)

    @model_validator(mode="after")
    def one_recipient(self):
        if (self.recipient_account_id is None) == (self.recipient_identifier is None):
            raise ValueError("Give exactly one of recipientAccountId or recipientIdentifier")
        return self

    @model_validator(mode="after")
    def accounts_must_differ(self):
        """Cannot transfer money to the same account."""
        if self.sender_account_id == self.recipient_account_id:
            raise ValueError("Cannot transfer to the same account")
        return self


class AccountBalance(CamelModel):
    id: uuid.UUID
    new_balance: Decimal


class TransferResponse(CamelModel):
    """Response body for a transfer, first execution and replay alike."""
    transaction_id: uuid.UUID
    reference: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    sender_account: AccountBalance
    recipient_account: AccountBalance
    timestamp: datetime
    replayed: bool = False


class LookupAccount(CamelModel):
    """Account details a sender may see about a recipient: no balances."""
    id: uuid.UUID
    account_number: str
    account_type: AccountType
    currency: str
    status: AccountStatus


class LookupResponse(CamelModel):
    """Response body for GET /payments/lookup/{identifier}."""
    user_id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    phone_number: str | None
    accounts: list[LookupAccount]


class AccountResponse(CamelModel):
    """An account as its owner sees it."""
    id: uuid.UUID
    user_id: uuid.UUID
    account_number: str
    account_type: AccountType
    currency: str
    status: AccountStatus
    balance: Decimal
    available_balance: Decimal
    created_at: datetime


class HistoryItemResponse(CamelModel):
    transaction_id: uuid.UUID
    reference: str
    direction: str
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


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class HistoryResponse(CamelModel):
    """Response body for GET /payments/transactions."""
    transactions: list[HistoryItemResponse]
    pagination: Pagination
