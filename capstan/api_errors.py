"""Standardised JSON error envelope for the Capstan gateway.

All errors returned by the gateway share the same shape::

    {"error": "<human-readable message>", "code": "<ERROR_CODE>", "status": <http_status>}

Broker errors use their public kind as ``code`` and their generic public
message as ``error``; the internal detail is logged, never returned.
Rate-limit rejections also carry ``retry_after`` and a ``Retry-After``
header.

Usage
-----
Raise ``CapstanAPIError`` anywhere inside an endpoint for gateway-level
failures, or let a :class:`~capstan.errors.BrokerError` propagate::

    from capstan.api_errors import CapstanAPIError

    raise CapstanAPIError("BROKER_NOT_READY", "Broker is not initialized", 503)

``register_error_handlers(app)`` wires the handlers into the FastAPI app.
"""

from __future__ import annotations

import logging
import math
from typing import Dict

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from capstan.errors import BrokerError, RateLimited

logger = logging.getLogger("Capstan.Gateway")


class CapstanAPIError(Exception):
    """Gateway-level failure (broker missing, bad query) with its own code."""

    def __init__(self, code: str, message: str, status: int = 400):
        self.code = code
        self.message = message
        self.status = status
        super().__init__(message)


def retry_headers(exc: BrokerError) -> Dict[str, str]:
    """``Retry-After`` (whole seconds, rounded up) for rate-limit errors."""
    if isinstance(exc, RateLimited):
        return {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
    return {}


def broker_error_response(exc: BrokerError) -> JSONResponse:
    content = {"error": exc.public_message, "code": exc.public_kind, "status": exc.status}
    if isinstance(exc, RateLimited):
        content["retry_after"] = round(exc.retry_after, 3)
    return JSONResponse(status_code=exc.status, content=content, headers=retry_headers(exc))


def register_error_handlers(app) -> None:
    """Attach the broker, gateway, HTTP and catch-all handlers to *app*.

    ``api.py`` calls this once, right after constructing the app.
    """

    @app.exception_handler(BrokerError)
    async def _broker_error_handler(request: Request, exc: BrokerError):
        logger.warning(
            "%s %s -> %s (%s: %s)",
            request.method,
            request.url.path,
            exc.status,
            exc.kind,
            exc.detail,
        )
        return broker_error_response(exc)

    @app.exception_handler(CapstanAPIError)
    async def _capstan_error_handler(request: Request, exc: CapstanAPIError):
        return JSONResponse(
            status_code=exc.status,
            content={"error": exc.message, "code": exc.code, "status": exc.status},
        )

    @app.exception_handler(HTTPException)
    async def _http_error_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": detail,
                "code": f"HTTP_{exc.status_code}",
                "status": exc.status_code,
            },
        )

    @app.exception_handler(Exception)
    async def _unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled gateway error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "code": "INTERNAL_ERROR",
                "status": 500,
            },
        )
