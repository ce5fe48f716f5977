"""
Custom exception classes and FastAPI exception handlers.

Services raise domain-specific errors (like InsufficientFundsError) without
importing HTTP concepts. The handler layer translates them into HTTP
responses with a consistent body: {"detail": ..., "error_type": ...}.

Exception hierarchy:
    LedgerAPIError (base)
    ├── TransferValidationError     — malformed transfer input (400)
    ├── AccountNotFoundError        — referenced account missing (404)
    ├── AccountInactiveError        — account suspended or closed (400)
    ├── InsufficientFundsError      — debit would go below zero (409)
    ├── DuplicateRequestError       — idempotency key reused with other input (409)
    ├── TransferInProgressError     — same key still executing, try again (409)
    ├── TransferFailedError         — replay of a transfer that already failed (409)
    ├── TransactionNotFoundError    — ledger entry missing (404)
    ├── InvalidTransitionError      — terminal or illegal status change (409)
    ├── RecipientNotFoundError      — lookup found no user (404)
    ├── RecipientHasNoAccountError  — lookup found a user with no account (404)
    ├── PaymentRequestNotFoundError — payment request missing (404)
    ├── StorageFailureError         — unexpected storage error (500)
    ├── UnauthorizedAccessError     — acting on another user's resource (403)
    ├── DuplicateEmailError         — signup with a registered email (409)
    └── InvalidCredentialsError     — bad login (401)

Each class carries `status_code` and `error_type`. `error_type` doubles as
the failure_reason recorded on FAILED ledger rows.
"""

import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Base exception
# ---------------------------------------------------------------------------

class LedgerAPIError(Exception):
    """Base exception for all Ledger API domain errors."""

    status_code: int = 400
    error_type: str = "ledger_error"

    def __init__(self, detail: str = "An error occurred"):
        self.detail = detail
        super().__init__(self.detail)


# ---------------------------------------------------------------------------
# Transfer errors
# ---------------------------------------------------------------------------

class TransferValidationError(LedgerAPIError):
    """Raised when transfer input is malformed. Nothing has been written."""

    error_type = "validation_error"


class AccountNotFoundError(LedgerAPIError):
    """Raised when a requested account does not exist."""

    status_code = 404
    error_type = "account_not_found"

    def __init__(self, account_id: uuid.UUID):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class AccountInactiveError(LedgerAPIError):
    """Raised when an account exists but is suspended or closed."""

    error_type = "account_inactive"

    def __init__(self, account_id: uuid.UUID, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} is {status.lower()}")


class InsufficientFundsError(LedgerAPIError):
    """
    Raised when a debit would drive the available balance below zero.

    Attributes:
        account_id: The account that lacks sufficient funds.
        requested_cents: The amount the transfer tried to debit.
        available_cents: The available balance at the time, when known.
    """

    status_code = 409
    error_type = "insufficient_funds"

    def __init__(
        self,
        account_id: uuid.UUID,
        requested_cents: int,
        available_cents: int | None = None,
    ):
        self.account_id = account_id
        self.requested_cents = requested_cents
        self.available_cents = available_cents
        super().__init__(f"Insufficient funds in account {account_id}")


class DuplicateRequestError(LedgerAPIError):
    """Raised when an idempotency key is reused with different transfer parameters."""

    status_code = 409
    error_type = "duplicate_request"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key {idempotency_key!r} was already used for a different request"
        )


class TransferInProgressError(LedgerAPIError):
    """Raised when a replay arrives while the original is still executing."""

    status_code = 409
    error_type = "transfer_in_progress"

    def __init__(self, idempotency_key: str):
        self.idempotency_key = idempotency_key
        super().__init__("A transfer with this idempotency key is still in progress, try again")


class TransferFailedError(LedgerAPIError):
    """Raised when replaying a key whose transfer ended FAILED for a non-funds reason."""

    status_code = 409
    error_type = "transfer_failed"

    def __init__(self, transaction_id: uuid.UUID, reason: str | None):
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(f"Transfer {transaction_id} failed: {reason or 'unknown reason'}")


class TransactionNotFoundError(LedgerAPIError):
    """Raised when a ledger entry does not exist."""

    status_code = 404
    error_type = "transaction_not_found"

    def __init__(self, transaction_id: uuid.UUID):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class InvalidTransitionError(LedgerAPIError):
    """Raised when a status change is not permitted from the current state."""

    status_code = 409
    error_type = "invalid_transition"

    def __init__(self, entity_id: uuid.UUID, current: str, target: str):
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {entity_id} from {current} to {target}")


class StorageFailureError(LedgerAPIError):
    """
    Raised for unexpected storage errors.

    The outcome of the failed write is unknown, so any in-flight ledger row
    stays PENDING for the reconciliation sweep. The caller should retry with
    the same idempotency key.
    """

    status_code = 500
    error_type = "storage_failure"

    def __init__(self, detail: str = "The transfer could not be completed, try again"):
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Lookup errors
# ---------------------------------------------------------------------------

class RecipientNotFoundError(LedgerAPIError):
    """Raised when no user matches a lookup identifier."""

    status_code = 404
    error_type = "recipient_not_found"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__("No user found for the given identifier")


class RecipientHasNoAccountError(LedgerAPIError):
    """Raised when the resolved user owns no accounts."""

    status_code = 404
    error_type = "recipient_has_no_account"

    def __init__(self, user_id: uuid.UUID):
        self.user_id = user_id
        super().__init__("The recipient does not have an account")


# ---------------------------------------------------------------------------
# Payment request errors
# ---------------------------------------------------------------------------

class PaymentRequestNotFoundError(LedgerAPIError):
    """Raised when a payment request does not exist or is not visible to the caller."""

    status_code = 404
    error_type = "payment_request_not_found"

    def __init__(self, request_id: uuid.UUID):
        self.request_id = request_id
        super().__init__(f"Payment request {request_id} not found")


# ---------------------------------------------------------------------------
# Auth errors
# ---------------------------------------------------------------------------

class UnauthorizedAccessError(LedgerAPIError):
    """Raised when a user attempts to access a resource they don't own."""

    status_code = 403
    error_type = "unauthorized_access"

    def __init__(self, detail: str = "You do not have access to this resource"):
        super().__init__(detail)


class DuplicateEmailError(LedgerAPIError):
    """Raised when attempting to register with an email that's already in use."""

    status_code = 409
    error_type = "duplicate_email"

    def __init__(self, email: str):
        self.email = email
        super().__init__(f"Email {email} is already registered")


class InvalidCredentialsError(LedgerAPIError):
    """Raised when login credentials are incorrect."""

    status_code = 401
    error_type = "invalid_credentials"

    def __init__(self):
        super().__init__("Invalid email or password")


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------

def register_exception_handlers(app: FastAPI) -> None:
    """
    Register custom exception handlers with the FastAPI application.

    Every domain exception maps to its `status_code` and a JSON body with
    `detail` and `error_type`. Request-body validation failures are reported
    as 400 rather than FastAPI's default 422.

    This is called once during app startup in main.py.
    """

    @app.exception_handler(InsufficientFundsError)
    async def insufficient_funds_handler(
        request: Request, exc: InsufficientFundsError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "error_type": exc.error_type,
                "requested_cents": exc.requested_cents,
                "available_cents": exc.available_cents,
            },
        )

    @app.exception_handler(StorageFailureError)
    async def storage_failure_handler(
        request: Request, exc: StorageFailureError
    ) -> JSONResponse:
        # Never expose storage internals to the caller
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )

    @app.exception_handler(LedgerAPIError)
    async def ledger_error_handler(
        request: Request, exc: LedgerAPIError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "error_type": exc.error_type},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.info("Rejected malformed request to %s: %s", request.url.path, exc.errors())
        return JSONResponse(
            status_code=400,
            content={
                "detail": "Invalid request body",
                "error_type": "validation_error",
                "errors": jsonable_errors(exc),
            },
        )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Strip non-serializable context (e.g. the original ValueError) from pydantic errors."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
