# backend/app/errors.py
"""
Problem-document (RFC 7807) rendering for every error the API returns.

Body fields: type, title, status, detail, instance, plus ``code`` and
``errors`` when the error carries them.
"""

from http import HTTPStatus
import logging
from typing import Any, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .core.exceptions import DomainException

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def _title(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def problem_response(
    request: Request,
    status_code: int,
    detail: Optional[str],
    *,
    code: Optional[str] = None,
    errors: Any = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    body: dict[str, Any] = {
        "type": "about:blank",
        "title": _title(status_code),
        "status": status_code,
        "detail": detail or "",
        "instance": request.url.path,
    }
    if code:
        body["code"] = code
    if errors:
        body["errors"] = jsonable_encoder(errors)
    return JSONResponse(
        body,
        status_code=status_code,
        headers=dict(headers) if headers else None,
        media_type=PROBLEM_MEDIA_TYPE,
    )


def _unpack_http_detail(detail: Any) -> tuple[Optional[str], Optional[str], Any]:
    """Split an ``HTTPException.detail`` into (message, code, errors)."""
    if detail is None:
        return None, None, None
    if not isinstance(detail, dict):
        return str(detail), None, None
    message = detail.get("message") or detail.get("detail")
    code = detail.get("code")
    return (
        message if isinstance(message, str) else None,
        code if isinstance(code, str) else None,
        detail.get("details") or detail.get("errors"),
    )


def register_error_handlers(app: FastAPI) -> None:
    """
    Render every error as a problem document.

    Domain errors keep their ``code`` (``SLOT_UNAVAILABLE``, ``TOO_LATE``,
    ``GATEWAY_ERROR`` ...) so clients can branch without parsing messages.
    """

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        message, code, errors = _unpack_http_detail(exc.detail)
        return problem_response(
            request, exc.status_code, message, code=code, errors=errors, headers=exc.headers
        )

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error(
                "Domain error %s on %s", exc.code, request.url.path, exc_info=exc
            )
        return problem_response(
            request, exc.http_status, exc.message, code=exc.code, errors=exc.details
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return problem_response(
            request,
            422,
            "Request validation failed",
            code="validation_error",
            errors=exc.errors(),
        )
