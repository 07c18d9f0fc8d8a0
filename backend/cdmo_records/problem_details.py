"""RFC 7807 Problem Details helpers."""
from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.exc import IntegrityError

from .config import settings
from .domain_errors import DomainError

logger = logging.getLogger(__name__)

PROBLEM_MEDIA_TYPE = "application/problem+json"


def _problem_type(code: str) -> str:
    return f"{settings.API_BASE_URL.rstrip('/')}/problems/{code.lower()}"


def _problem_response(
    *,
    status_code: int,
    code: str,
    detail: str,
    details: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    try:
        title = HTTPStatus(status_code).phrase
    except ValueError:
        title = "Domain Error"

    payload: dict[str, object] = {
        "type": _problem_type(code),
        "title": title,
        "status": status_code,
        "detail": detail,
        "code": code,
    }
    if details is not None:
        payload["details"] = jsonable_encoder(details)

    return JSONResponse(
        status_code=status_code,
        content=payload,
        media_type=PROBLEM_MEDIA_TYPE,
        headers=headers,
    )


def build_problem_details_response(exc: DomainError) -> JSONResponse:
    """Render DomainError as RFC 7807 payload with stable domain code."""
    headers = {"WWW-Authenticate": "Bearer"} if exc.http_status == 401 else None
    return _problem_response(
        status_code=exc.http_status,
        code=exc.code,
        detail=exc.message,
        details=exc.details,
        headers=headers,
    )


async def handle_domain_error(_: Request, exc: DomainError) -> JSONResponse:
    return build_problem_details_response(exc)


async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
    return _problem_response(
        status_code=422,
        code="VALIDATION_ERROR",
        detail="Request validation failed",
        details={"errors": exc.errors()},
    )


async def handle_http_exception(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _problem_response(
        status_code=exc.status_code,
        code=f"HTTP_{exc.status_code}",
        detail=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def handle_integrity_error(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return _problem_response(
        status_code=409,
        code="DUPLICATE_KEY",
        detail="A record with the same unique key already exists",
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    """Outermost boundary: log once, answer with a safe Internal problem."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    details = None
    if not settings.is_production:
        details = {"error": str(exc), "exception": type(exc).__name__}
    return _problem_response(
        status_code=500,
        code="INTERNAL_ERROR",
        detail="Internal server error",
        details=details,
    )
