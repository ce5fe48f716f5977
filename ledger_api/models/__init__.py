"""
SQLAlchemy ORM models package.

All models are imported here so that Base.metadata knows every table
before create_all runs, and so other modules can import from
ledger_api.models directly.
"""

from ledger_api.models.user import User, UserType  # noqa: F401
from ledger_api.models.account import Account, AccountStatus, AccountType  # noqa: F401
from ledger_api.models.transaction import (  # noqa: F401
    Transaction,
    TransactionCategory,
    TransactionStatus,
)
from ledger_api.models.idempotency import IdempotencyRecord  # noqa: F401
from ledger_api.models.payment_request import (  # noqa: F401
    PaymentRequest,
    PaymentRequestStatus,
)
