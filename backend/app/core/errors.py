"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for the broadcast engine
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.app.core.errors import (
        BroadcastEngineError,
        InvalidCoordinateError,
        NotFoundError,
        OutOfRangeError,
        register_error_handlers,
    )

    raise NotFoundError("Alert", id="ALR-3F2A9C01B7D4")

Propagation policy:
    Geometry and validation errors go straight back to the caller.
    Delivery failures never propagate out of a broadcast; the router
    folds them into its DeliveryReport.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class BroadcastEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class InvalidCoordinateError(BroadcastEngineError):
    """Malformed geometry input (422)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_COORDINATE",
            details=details,
        )


class NotFoundError(BroadcastEngineError):
    """Referenced entity is absent (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class UnknownSessionError(NotFoundError):
    """Session not registered or no longer active (404)."""

    def __init__(self, connection_id: str):
        super().__init__("Session", connection_id=connection_id)
        self.error_code = "UNKNOWN_SESSION"


class DuplicateConnectionError(BroadcastEngineError):
    """Connection id already registered (409)."""

    def __init__(self, connection_id: str):
        super().__init__(
            message=f"Connection {connection_id} is already registered",
            status_code=409,
            error_code="DUPLICATE_CONNECTION",
            details={"connection_id": connection_id},
        )


class OutOfRangeError(BroadcastEngineError):
    """
    Proximity gate failed (403).

    Non-fatal: carries the measured distance so the client can tell the
    user how far away they are.
    """

    def __init__(self, distance_km: float, max_distance_km: float):
        super().__init__(
            message=(
                f"You must be within {max_distance_km:g}km of the report "
                f"location to verify. Your distance: {distance_km:.2f}km"
            ),
            status_code=403,
            error_code="OUT_OF_RANGE",
            details={
                "distance_km": round(distance_km, 3),
                "max_distance_km": max_distance_km,
            },
        )
        self.distance_km = distance_km
        self.max_distance_km = max_distance_km


class InvalidTransitionError(BroadcastEngineError):
    """Illegal state change attempted (409). State is left unchanged."""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            message=f"{entity} cannot move from '{current}' to '{target}'",
            status_code=409,
            error_code="INVALID_TRANSITION",
            details={"entity": entity, "current": current, "target": target},
        )
        self.current = current
        self.target = target


class DeliveryFailedError(BroadcastEngineError):
    """A single push to one connection failed (502). Always local to that push."""

    def __init__(self, connection_id: str, reason: str = "send_failed", message: str = ""):
        super().__init__(
            message=f"Delivery to {connection_id} failed: {message or reason}",
            status_code=502,
            error_code="DELIVERY_FAILED",
            details={"connection_id": connection_id, "reason": reason},
        )
        self.connection_id = connection_id
        self.reason = reason


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(BroadcastEngineError)
    async def handle_engine_error(request: Request, exc: BroadcastEngineError):
        # Client-side mistakes are routine; only server faults are errors
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "Engine error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(500, "INTERNAL_ERROR", message, request=request)
