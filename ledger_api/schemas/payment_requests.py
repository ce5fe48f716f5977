"""
Pydantic schemas for payment requests.

Amounts follow the payments API: decimal strings out, decimal numbers or
strings in.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from ledger_api.models.payment_request import PaymentRequestStatus
from ledger_api.schemas.common import CamelModel
from ledger_api.schemas.payments import TransferResponse


class PaymentRequestCreate(CamelModel):
    """
    Request body for POST /payments/requests.

    accountId is the requester's account to be credited; the payer is named
    by email or phone number.
    """
    account_id: uuid.UUID
    payer_identifier: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    description: str | None = Field(default=None, max_length=255)


class PaymentRequestPay(CamelModel):
    """Request body for POST /payments/requests/{id}/pay."""
    payer_account_id: uuid.UUID


class Party(CamelModel):
    user_id: uuid.UUID
    first_name: str
    last_name: str
    email: str


class PaymentRequestResponse(CamelModel):
    id: uuid.UUID
    requester: Party
    requester_account_id: uuid.UUID
    payer: Party
    amount: Decimal
    currency: str
    description: str | None
    status: PaymentRequestStatus
    transaction_id: uuid.UUID | None
    expires_at: datetime
    paid_at: datetime | None
    created_at: datetime


class PaymentRequestPaid(CamelModel):
    """Response body for a pay call: the request and the transfer that paid it."""
    payment_request: PaymentRequestResponse
    transfer: TransferResponse
