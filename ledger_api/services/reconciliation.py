"""
Reconciliation sweep — resolves ledger rows stuck in PENDING.

A row stays PENDING when the process died, or a storage error hit, between
the durability checkpoint and the balance commit. Balance changes and the
COMPLETED finalize commit together, so a PENDING row never has balance
changes behind it: finalizing it FAILED is always safe.

The sweep also purges idempotency records older than the retention window.
Ledger rows keep their idempotency_key, so a purged key still replays.

Run it from the admin endpoint (POST /admin/reconcile) or a scheduler.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.config import settings
from ledger_api.exceptions import InvalidTransitionError
from ledger_api.models.transaction import TransactionStatus
from ledger_api.services.idempotency import IdempotencyGuard
from ledger_api.services.ledger import TransactionLedger

logger = logging.getLogger(__name__)

RECONCILIATION_TIMEOUT_REASON = "reconciliation_timeout"


@dataclass(frozen=True)
class SweepReport:
    failed_count: int
    purged_count: int


async def reconcile_stale_pending(db: AsyncSession, timeout_seconds: int | None = None) -> int:
    """
    Finalize PENDING rows older than the timeout to FAILED. Does not commit.

    Rows finalized concurrently (by the engine or another sweep) are skipped.
    Returns the number of rows this call finalized.
    """
    if timeout_seconds is None:
        timeout_seconds = settings.PENDING_TIMEOUT_SECONDS
    cutoff = datetime.now(timezone.utc) - timedelta(seconds=timeout_seconds)

    ledger = TransactionLedger(db)
    stale_ids = [txn.id for txn in await ledger.list_stale_pending(cutoff)]

    failed = 0
    for transaction_id in stale_ids:
        try:
            await ledger.finalize(
                transaction_id,
                TransactionStatus.FAILED,
                reason=RECONCILIATION_TIMEOUT_REASON,
            )
        except InvalidTransitionError:
            logger.info("Transaction %s finalized concurrently, skipped", transaction_id)
            continue
        failed += 1
        logger.warning("Transaction %s stuck in PENDING, finalized FAILED", transaction_id)
    return failed


async def purge_expired_idempotency_records(
    db: AsyncSession,
    retention_hours: int | None = None,
) -> int:
    """Delete idempotency records past the retention window. Does not commit."""
    if retention_hours is None:
        retention_hours = settings.IDEMPOTENCY_RETENTION_HOURS
    cutoff = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    return await IdempotencyGuard(db).purge_expired(cutoff)


async def run_sweep(db: AsyncSession) -> SweepReport:
    """Run both reconciliation steps and commit."""
    failed = await reconcile_stale_pending(db)
    purged = await purge_expired_idempotency_records(db)
    await db.commit()
    logger.info("Reconciliation sweep: %d rows failed, %d idempotency records purged", failed, purged)
    return SweepReport(failed_count=failed, purged_count=purged)
