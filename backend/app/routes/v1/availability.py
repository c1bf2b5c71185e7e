# backend/app/routes/v1/availability.py
"""
Availability routes - API v1

Endpoints:
    GET /{therapist_id} - Open slots for a therapist (public)
    POST / - Open a slot on the caller's calendar (therapist)
    DELETE /{slot_id} - Remove an open slot (therapist)
    POST /{slot_id}/reopen - Put an unavailable slot back on the market (therapist)
"""

import asyncio
from datetime import date
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.params import Path

from ...api.dependencies import get_slot_ledger, require_therapist
from ...core.enums import TimeOfDay
from ...core.exceptions import DomainException
from ...principal import UserPrincipal
from ...schemas.availability import AvailableSlotsResponse, SlotCreate, SlotResponse
from ...services.slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["availability-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/{therapist_id}", response_model=AvailableSlotsResponse)
async def list_available_slots(
    therapist_id: str = Path(..., min_length=1, max_length=64),
    start_date: Optional[date] = Query(None, description="First clinic day, inclusive"),
    end_date: Optional[date] = Query(None, description="Last clinic day, inclusive"),
    time_of_day: Optional[TimeOfDay] = Query(None),
    ledger: SlotLedger = Depends(get_slot_ledger),
) -> AvailableSlotsResponse:
    """Open, future slots for a therapist ordered by start time."""
    try:
        slots = await asyncio.to_thread(
            ledger.list_available,
            therapist_id,
            start_date=start_date,
            end_date=end_date,
            time_of_day=time_of_day,
        )
    except DomainException as e:
        handle_domain_exception(e)
    return AvailableSlotsResponse(
        therapist_id=therapist_id,
        slots=[SlotResponse.model_validate(slot) for slot in slots],
        total=len(slots),
    )


@router.post("", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: SlotCreate,
    therapist: UserPrincipal = Depends(require_therapist),
    ledger: SlotLedger = Depends(get_slot_ledger),
) -> SlotResponse:
    try:
        slot = await asyncio.to_thread(
            ledger.create_slot, therapist.user_id, payload.start_time, payload.end_time
        )
    except DomainException as e:
        handle_domain_exception(e)
    return SlotResponse.model_validate(slot)


@router.delete("/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_slot(
    slot_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    therapist: UserPrincipal = Depends(require_therapist),
    ledger: SlotLedger = Depends(get_slot_ledger),
) -> Response:
    try:
        await asyncio.to_thread(ledger.delete_slot, therapist.user_id, slot_id)
    except DomainException as e:
        handle_domain_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{slot_id}/reopen", response_model=SlotResponse)
async def reopen_slot(
    slot_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    therapist: UserPrincipal = Depends(require_therapist),
    ledger: SlotLedger = Depends(get_slot_ledger),
) -> SlotResponse:
    try:
        slot = await asyncio.to_thread(ledger.reopen_slot, therapist.user_id, slot_id)
    except DomainException as e:
        handle_domain_exception(e)
    return SlotResponse.model_validate(slot)
