# backend/app/routes/v1/sessions.py
"""
Session routes - API v1

Endpoints:
    GET / - The caller's sessions (client or therapist view)
    GET /{session_id} - One session, parties only
    POST /cancel/{session_id} - Cancel a scheduled session
    POST /{session_id}/complete - Mark a session completed (therapist)
"""

import asyncio
import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.params import Path

from ...api.dependencies import get_current_principal, get_session_registry, require_therapist
from ...core.exceptions import DomainException
from ...models.therapy_session import SessionStatus
from ...principal import UserPrincipal
from ...schemas.session import SessionCancelRequest, SessionListResponse, SessionResponse
from ...services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["sessions-v1"])

ULID_PATH_PATTERN = r"^[0-9A-HJKMNP-TV-Z]{26}$"


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


# ============================================================================
# Static routes first (before dynamic routes with path parameters)
# ============================================================================


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    session_status: Optional[SessionStatus] = Query(None, alias="status"),
    principal: UserPrincipal = Depends(get_current_principal),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionListResponse:
    sessions = await asyncio.to_thread(registry.list_sessions, principal, session_status)
    return SessionListResponse(
        sessions=[SessionResponse.model_validate(s) for s in sessions],
        total=len(sessions),
    )


@router.post(
    "/cancel/{session_id}",
    response_model=SessionResponse,
    responses={404: {"description": "Session not found"}, 409: {"description": "Too late to cancel"}},
)
async def cancel_session(
    payload: SessionCancelRequest,
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: UserPrincipal = Depends(get_current_principal),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    """
    Cancel a scheduled session and return its slot to the market.

    Clients must cancel at least 24 hours ahead; therapists may cancel any time.
    """
    try:
        session = await asyncio.to_thread(
            registry.cancel,
            session_id,
            principal.as_cancelled_by(),
            payload.reason,
            principal,
        )
    except DomainException as e:
        handle_domain_exception(e)
    return SessionResponse.model_validate(session)


# ============================================================================
# Dynamic routes
# ============================================================================


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    principal: UserPrincipal = Depends(get_current_principal),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(registry.get_session, session_id, principal)
    except DomainException as e:
        handle_domain_exception(e)
    return SessionResponse.model_validate(session)


@router.post("/{session_id}/complete", response_model=SessionResponse)
async def complete_session(
    session_id: str = Path(..., pattern=ULID_PATH_PATTERN),
    therapist: UserPrincipal = Depends(require_therapist),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    try:
        session = await asyncio.to_thread(registry.mark_complete, session_id, therapist)
    except DomainException as e:
        handle_domain_exception(e)
    return SessionResponse.model_validate(session)
