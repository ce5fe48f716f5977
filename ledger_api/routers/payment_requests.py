"""
Payment requests router — asking another member for money.

Endpoints:
  POST /payments/requests                  — Request money from a member
  GET  /payments/requests                  — Requests the caller sent or received
  GET  /payments/requests/{request_id}     — One request
  PUT  /payments/requests/{request_id}/cancel — Withdraw or decline a request
  POST /payments/requests/{request_id}/pay — Pay a request (payer only)

Members only. A request is visible to its requester and its payer; anyone
else gets 404. Paying moves money with an ordinary transfer, so it shows up
in both parties' transaction history.
"""

import uuid

from fastapi import APIRouter, Depends, Query, status

from ledger_api.dependencies import get_current_member, get_payment_request_service
from ledger_api.models.payment_request import PaymentRequest, PaymentRequestStatus
from ledger_api.models.user import User
from ledger_api.money import from_minor_units
from ledger_api.routers.payments import transfer_response
from ledger_api.schemas.payment_requests import (
    Party,
    PaymentRequestCreate,
    PaymentRequestPaid,
    PaymentRequestPay,
    PaymentRequestResponse,
)
from ledger_api.services.payment_requests import PaymentRequestService

router = APIRouter()


def payment_request_response(request: PaymentRequest) -> PaymentRequestResponse:
    return PaymentRequestResponse(
        id=request.id,
        requester=Party(
            user_id=request.requester.id,
            first_name=request.requester.first_name,
            last_name=request.requester.last_name,
            email=request.requester.email,
        ),
        requester_account_id=request.requester_account_id,
        payer=Party(
            user_id=request.payer.id,
            first_name=request.payer.first_name,
            last_name=request.payer.last_name,
            email=request.payer.email,
        ),
        amount=from_minor_units(request.amount_cents, request.currency),
        currency=request.currency,
        description=request.description,
        status=request.status,
        transaction_id=request.transaction_id,
        expires_at=request.expires_at,
        paid_at=request.paid_at,
        created_at=request.created_at,
    )


@router.post(
    "",
    response_model=PaymentRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Request money from another member",
)
async def create_payment_request(
    body: PaymentRequestCreate,
    user: User = Depends(get_current_member),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    """
    - **accountId**: The caller's account to be credited
    - **payerIdentifier**: The payer's email or phone number
    - **amount** / **currency**: Currency must match the account
    """
    request = await service.create(
        requester_id=user.id,
        account_id=body.account_id,
        payer_identifier=body.payer_identifier,
        amount=body.amount,
        currency=body.currency,
        description=body.description,
    )
    return payment_request_response(request)


@router.get(
    "",
    response_model=list[PaymentRequestResponse],
    summary="Payment requests the caller sent or received",
)
async def list_payment_requests(
    status_filter: PaymentRequestStatus | None = Query(default=None, alias="status"),
    user: User = Depends(get_current_member),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    """Newest first, optionally filtered by status."""
    requests = await service.list_for_user(user.id, status=status_filter)
    return [payment_request_response(r) for r in requests]


@router.get(
    "/{request_id}",
    response_model=PaymentRequestResponse,
    summary="Get one payment request",
)
async def get_payment_request(
    request_id: uuid.UUID,
    user: User = Depends(get_current_member),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    return payment_request_response(await service.get(request_id, user.id))


@router.put(
    "/{request_id}/cancel",
    response_model=PaymentRequestResponse,
    summary="Withdraw or decline a pending payment request",
)
async def cancel_payment_request(
    request_id: uuid.UUID,
    user: User = Depends(get_current_member),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    return payment_request_response(await service.cancel(request_id, user.id))


@router.post(
    "/{request_id}/pay",
    response_model=PaymentRequestPaid,
    summary="Pay a payment request",
)
async def pay_payment_request(
    request_id: uuid.UUID,
    body: PaymentRequestPay,
    user: User = Depends(get_current_member),
    service: PaymentRequestService = Depends(get_payment_request_service),
):
    """
    Transfer the requested amount from **payerAccountId** to the requester.

    Safe to retry: paying a request that is already PAID returns the original
    transfer with replayed=true.
    """
    request, result = await service.pay(request_id, user.id, body.payer_account_id)
    return PaymentRequestPaid(
        payment_request=payment_request_response(request),
        transfer=transfer_response(result),
    )
