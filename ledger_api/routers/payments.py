"""
Payments router — transfers, recipient lookup, balances and history.

Endpoints:
  POST /payments/transfer              — Move money to another account
  GET  /payments/lookup/{identifier}   — Resolve an email or phone to a recipient
  GET  /payments/accounts/{user_id}    — The caller's accounts and balances
  GET  /payments/transactions          — The caller's history, SENT/RECEIVED

Only members can use these endpoints (admins are blocked). The sending
account must belong to the caller; the recipient can be anyone.

Transfers are idempotent on idempotencyKey: a client that times out should
resend the same body with the same key. A completed original is returned
again (same transactionId and reference, replayed=true) without moving
money twice.
"""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.database import get_db
from ledger_api.dependencies import get_current_member, get_lookup_service, get_transfer_engine
from ledger_api.exceptions import UnauthorizedAccessError
from ledger_api.models.account import Account
from ledger_api.models.user import User
from ledger_api.money import from_minor_units
from ledger_api.schemas.payments import (
    AccountBalance,
    AccountResponse,
    HistoryItemResponse,
    HistoryResponse,
    LookupAccount,
    LookupResponse,
    Pagination,
    TransferRequest,
    TransferResponse,
)
from ledger_api.services.account_store import AccountStore
from ledger_api.services.history import get_history
from ledger_api.services.lookup_service import LookupService, pick_account
from ledger_api.services.results import TransferResult
from ledger_api.services.transfer_engine import TransferEngine

router = APIRouter()


def account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        user_id=account.user_id,
        account_number=account.account_number,
        account_type=account.account_type,
        currency=account.currency,
        status=account.status,
        balance=from_minor_units(account.balance_cents, account.currency),
        available_balance=from_minor_units(account.available_balance_cents, account.currency),
        created_at=account.created_at,
    )


def transfer_response(result: TransferResult) -> TransferResponse:
    return TransferResponse(
        transaction_id=result.transaction_id,
        reference=result.reference,
        amount=result.amount,
        currency=result.currency,
        status=result.status,
        sender_account=AccountBalance(
            id=result.sender_account_id, new_balance=result.sender_new_balance
        ),
        recipient_account=AccountBalance(
            id=result.recipient_account_id, new_balance=result.recipient_new_balance
        ),
        timestamp=result.timestamp,
        replayed=result.replayed,
    )


@router.post(
    "/transfer",
    response_model=TransferResponse,
    summary="Transfer money to another account",
)
async def transfer(
    request: TransferRequest,
    user: User = Depends(get_current_member),
    engine: TransferEngine = Depends(get_transfer_engine),
    lookup: LookupService = Depends(get_lookup_service),
    db: AsyncSession = Depends(get_db),
):
    """
    Transfer money from one of the caller's accounts.

    - **senderAccountId**: Must belong to the caller
    - **recipientAccountId** or **recipientIdentifier**: Target account, or
      an email/phone resolved to the recipient's first active account in
      the transfer currency
    - **amount**: Positive, at most the currency's decimal places
    - **currency**: Must match both accounts
    - **idempotencyKey**: Unique per intended transfer; reuse it on retry
    """
    sender = await AccountStore(db).get_account(request.sender_account_id)
    if sender.user_id != user.id:
        raise UnauthorizedAccessError("You do not have access to the sending account")

    result = None
    recipient_account_id = request.recipient_account_id
    if recipient_account_id is None:
        # A retry keeps the recipient it was first resolved to
        result = await engine.find_replay(
            request.sender_account_id, request.amount, request.currency, request.idempotency_key
        )
        if result is None:
            resolution = await lookup.resolve(request.recipient_identifier)
            recipient_account_id = pick_account(resolution, request.currency).id

    if result is None:
        result = await engine.transfer(
            sender_account_id=request.sender_account_id,
            recipient_account_id=recipient_account_id,
            amount=request.amount,
            currency=request.currency,
            idempotency_key=request.idempotency_key,
            description=request.description,
            category=request.category,
            metadata=request.metadata,
        )

    return transfer_response(result)


@router.get(
    "/lookup/{identifier}",
    response_model=LookupResponse,
    summary="Find a recipient by email or phone number",
)
async def lookup_recipient(
    identifier: str,
    user: User = Depends(get_current_member),
    lookup: LookupService = Depends(get_lookup_service),
):
    """Resolve a recipient. Balances are never included."""
    resolution = await lookup.resolve(identifier)
    return LookupResponse(
        user_id=resolution.user_id,
        first_name=resolution.first_name,
        last_name=resolution.last_name,
        email=resolution.email,
        phone_number=resolution.phone_number,
        accounts=[LookupAccount.model_validate(a) for a in resolution.accounts],
    )


@router.get(
    "/accounts/{user_id}",
    response_model=list[AccountResponse],
    summary="List the caller's accounts with balances",
)
async def list_accounts(
    user_id: uuid.UUID,
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    """Members may only list their own accounts."""
    if user_id != user.id:
        raise UnauthorizedAccessError()
    accounts = await AccountStore(db).get_accounts_for_user(user_id)
    return [account_response(a) for a in accounts]


@router.get(
    "/transactions",
    response_model=HistoryResponse,
    summary="The caller's transaction history",
)
async def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(get_current_member),
    db: AsyncSession = Depends(get_db),
):
    """Newest first. Each entry is tagged SENT or RECEIVED from the caller's side."""
    history = await get_history(db, user.id, page=page, limit=limit)
    return HistoryResponse(
        transactions=[
            HistoryItemResponse(
                transaction_id=item.transaction_id,
                reference=item.reference,
                direction=item.direction.value,
                amount=item.amount,
                currency=item.currency,
                status=item.status,
                category=item.category,
                description=item.description,
                account_id=item.account_id,
                counterparty_account_id=item.counterparty_account_id,
                counterparty_name=item.counterparty_name,
                counterparty_email=item.counterparty_email,
                created_at=item.created_at,
                completed_at=item.completed_at,
            )
            for item in history.items
        ],
        pagination=Pagination(
            page=history.page,
            limit=history.limit,
            total=history.total,
            total_pages=history.total_pages,
        ),
    )
