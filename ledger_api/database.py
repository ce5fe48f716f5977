"""
Async SQLAlchemy wiring for the ledger.

  - engine: one engine per process, built from settings.DATABASE_URL
  - AsyncSessionLocal: sessions that keep attributes loaded after commit
  - Base: declarative base for users, accounts, transactions and
    idempotency records
  - get_db(): one session per request, committed or rolled back on exit

Storage handle:
  Nothing in the service layer reaches for a module-level client. Each
  request's AsyncSession is the storage handle, passed explicitly into the
  AccountStore, TransactionLedger and IdempotencyGuard constructors. Tests
  substitute their own session through the get_db dependency override.

Session lifecycle:
  The transfer engine commits at its own checkpoints (the PENDING ledger row,
  then the balance transaction). get_db commits whatever is left when the
  request completes, commits on domain errors so audit rows survive, and
  rolls back on anything unexpected.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from ledger_api.config import settings
from ledger_api.exceptions import LedgerAPIError, StorageFailureError


# SQL echo follows DEBUG.
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
)

# Session factory: creates new AsyncSession instances.
# expire_on_commit=False prevents lazy-load errors after commit. Because
# committed objects are NOT expired, every balance read in the services uses
# populate_existing to bypass the identity map.
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""
    pass


async def get_db():
    """
    FastAPI dependency that provides a database session.

    Usage in a route:
        @router.get("/items")
        async def list_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except StorageFailureError:
            # The engine already rolled back; nothing here is trustworthy.
            await session.rollback()
            raise
        except LedgerAPIError:
            # Business logic errors (e.g., InsufficientFundsError) — commit the
            # session so audit-trail records (FAILED ledger rows) are persisted.
            await session.commit()
            raise
        except Exception:
            await session.rollback()
            raise
