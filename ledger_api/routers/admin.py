"""
Admin router — ledger operations.

All endpoints require the ADMIN role. Admins never move money; they can
suspend, reactivate or close accounts, close stuck ledger rows, and run the
reconciliation sweep.

Endpoints:
  GET  /admin/accounts                         — List all accounts (optional ?status)
  PUT  /admin/accounts/{account_id}/status     — Change an account's status
  GET  /admin/transactions                     — List ledger rows (optional ?status)
  GET  /admin/transactions/{transaction_id}    — One ledger row
  PUT  /admin/transactions/{transaction_id}/close — PENDING -> CANCELLED/REFUNDED
  POST /admin/reconcile                        — Run the reconciliation sweep

All admin routes live in this one router to avoid ordering conflicts
between overlapping parameterized paths.
"""

import logging
import math
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.database import get_db
from ledger_api.dependencies import require_admin
from ledger_api.models.account import Account, AccountStatus
from ledger_api.models.transaction import Transaction, TransactionStatus
from ledger_api.models.user import User
from ledger_api.money import from_minor_units
from ledger_api.schemas.admin import (
    AccountStatusUpdate,
    AdminAccountResponse,
    LedgerEntryResponse,
    LedgerPageResponse,
    SweepResponse,
    TransactionCloseRequest,
)
from ledger_api.schemas.payments import Pagination
from ledger_api.services.account_store import AccountStore
from ledger_api.services.ledger import TransactionLedger
from ledger_api.services.reconciliation import run_sweep

logger = logging.getLogger(__name__)

router = APIRouter()


def admin_account_response(account: Account) -> AdminAccountResponse:
    return AdminAccountResponse(
        id=account.id,
        user_id=account.user_id,
        account_number=account.account_number,
        account_type=account.account_type,
        currency=account.currency,
        status=account.status,
        balance=from_minor_units(account.balance_cents, account.currency),
        available_balance=from_minor_units(account.available_balance_cents, account.currency),
        version=account.version,
        created_at=account.created_at,
        updated_at=account.updated_at,
    )


def ledger_entry_response(txn: Transaction) -> LedgerEntryResponse:
    return LedgerEntryResponse(
        id=txn.id,
        idempotency_key=txn.idempotency_key,
        reference=txn.reference,
        sender_account_id=txn.sender_account_id,
        recipient_account_id=txn.recipient_account_id,
        amount=from_minor_units(txn.amount_cents, txn.currency),
        currency=txn.currency,
        category=txn.category,
        description=txn.description,
        status=txn.status,
        failure_reason=txn.failure_reason,
        metadata=txn.meta or {},
        created_at=txn.created_at,
        completed_at=txn.completed_at,
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@router.get(
    "/accounts",
    response_model=list[AdminAccountResponse],
    summary="[Admin] List all accounts",
)
async def admin_list_accounts(
    status: AccountStatus | None = Query(default=None),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    accounts = await AccountStore(db).list_accounts(status=status)
    return [admin_account_response(a) for a in accounts]


@router.put(
    "/accounts/{account_id}/status",
    response_model=AdminAccountResponse,
    summary="[Admin] Suspend, reactivate or close an account",
)
async def admin_set_account_status(
    account_id: uuid.UUID,
    request: AccountStatusUpdate,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    ACTIVE <-> SUSPENDED, and either -> CLOSED. A closed account cannot be
    reopened. Suspended and closed accounts can neither send nor receive.
    """
    account = await AccountStore(db).set_status(account_id, request.status)
    logger.info("Admin %s set account %s to %s", admin.id, account_id, request.status.value)
    return admin_account_response(account)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@router.get(
    "/transactions",
    response_model=LedgerPageResponse,
    summary="[Admin] List ledger rows",
)
async def admin_list_transactions(
    status: TransactionStatus | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await TransactionLedger(db).list_all(status=status, page=page, page_size=limit)
    return LedgerPageResponse(
        transactions=[ledger_entry_response(t) for t in rows],
        pagination=Pagination(
            page=page, limit=limit, total=total, total_pages=math.ceil(total / limit)
        ),
    )


@router.get(
    "/transactions/{transaction_id}",
    response_model=LedgerEntryResponse,
    summary="[Admin] Get one ledger row",
)
async def admin_get_transaction(
    transaction_id: uuid.UUID,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return ledger_entry_response(await TransactionLedger(db).get_by_id(transaction_id))


@router.put(
    "/transactions/{transaction_id}/close",
    response_model=LedgerEntryResponse,
    summary="[Admin] Cancel or refund a PENDING ledger row",
)
async def admin_close_transaction(
    transaction_id: uuid.UUID,
    request: TransactionCloseRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Administrative exit for a row stuck in PENDING. No balances move: a
    PENDING row never has balance changes behind it. Terminal rows are
    rejected with 409.
    """
    txn = await TransactionLedger(db).close(transaction_id, request.status)
    logger.info("Admin %s closed transaction %s as %s", admin.id, transaction_id, request.status.value)
    return ledger_entry_response(txn)


@router.post(
    "/reconcile",
    response_model=SweepResponse,
    summary="[Admin] Run the reconciliation sweep",
)
async def admin_reconcile(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Finalize PENDING rows older than PENDING_TIMEOUT_SECONDS to FAILED and
    purge expired idempotency records.
    """
    report = await run_sweep(db)
    return SweepResponse(failed_count=report.failed_count, purged_count=report.purged_count)
