# backend/app/routes/v1/booking.py
"""
Booking routes - API v1

Booking attempts from slot reservation to a verified payment. All business
logic is delegated to BookingOrchestrator.

Endpoints:
    POST /start - Reserve a slot and open a Khalti payment
    POST /verify - Check the payment and finalize the booking once paid
    POST /cancel - Abandon an attempt that is still awaiting payment
"""

import asyncio
import logging
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, status

from ...api.dependencies import get_booking_orchestrator, require_client
from ...core.exceptions import CompensationRequiredException, DomainException
from ...principal import UserPrincipal
from ...schemas.booking import (
    BookingOutcomeResponse,
    StartBookingRequest,
    StartBookingResponse,
    TransactionRefRequest,
)
from ...services.booking_orchestrator import BookingOrchestrator, BookingOutcome

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["booking-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _outcome_response(outcome: BookingOutcome) -> BookingOutcomeResponse:
    return BookingOutcomeResponse(
        outcome=outcome.status,
        transaction_ref=outcome.transaction_ref,
        session_id=outcome.session_id,
        reason=outcome.reason,
    )


@router.post(
    "/start",
    response_model=StartBookingResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        404: {"description": "Slot not found"},
        409: {"description": "Slot already held or booked"},
        502: {"description": "Payment provider unavailable"},
    },
)
async def start_booking(
    payload: StartBookingRequest,
    client: UserPrincipal = Depends(require_client),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> StartBookingResponse:
    """
    Reserve the slot for the caller and return the payment page URL.

    Repeating the call while the attempt still awaits payment returns the
    same transaction reference.
    """
    customer_info = payload.customer_info.model_dump(exclude_none=True) if payload.customer_info else None
    try:
        result = await asyncio.to_thread(
            orchestrator.start_booking,
            client.user_id,
            payload.slot_id,
            payload.amount,
            customer_info=customer_info,
        )
    except DomainException as e:
        handle_domain_exception(e)
    return StartBookingResponse(
        transaction_ref=result.transaction_ref,
        redirect_url=result.redirect_url,
        order_ref=result.order_ref,
        slot_id=result.slot_id,
        hold_expires_at=result.hold_expires_at,
        resumed=result.resumed,
    )


@router.post(
    "/verify",
    response_model=BookingOutcomeResponse,
    responses={
        404: {"description": "Unknown transaction reference"},
        500: {"description": "Payment captured but booking not recorded"},
        502: {"description": "Payment provider unavailable"},
    },
)
async def verify_booking(
    payload: TransactionRefRequest,
    client: UserPrincipal = Depends(require_client),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> BookingOutcomeResponse:
    try:
        outcome = await asyncio.to_thread(
            orchestrator.poll_payment, payload.transaction_ref, client.user_id
        )
    except CompensationRequiredException as e:
        logger.error(
            "Verify surfaced a payment that needs reconciliation",
            extra={"transaction_ref": e.transaction_ref, "client_id": client.user_id},
        )
        handle_domain_exception(e)
    except DomainException as e:
        handle_domain_exception(e)
    return _outcome_response(outcome)


@router.post("/cancel", response_model=BookingOutcomeResponse)
async def cancel_booking_attempt(
    payload: TransactionRefRequest,
    client: UserPrincipal = Depends(require_client),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
) -> BookingOutcomeResponse:
    try:
        outcome = await asyncio.to_thread(
            orchestrator.cancel_attempt, payload.transaction_ref, client.user_id
        )
    except DomainException as e:
        handle_domain_exception(e)
    return _outcome_response(outcome)
