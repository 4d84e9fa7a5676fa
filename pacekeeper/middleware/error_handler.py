"""Global error hierarchy and FastAPI exception handlers.

All controller-specific errors extend PacekeeperError. The controller core
raises and classifies these; the status API's exception handlers render them
(plus unhandled exceptions) as the JSON envelope: { success, data, error, meta }.
"""

from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error hierarchy
# ---------------------------------------------------------------------------


class PacekeeperError(Exception):
    """Base error for all controller-specific errors."""

    status_code: int = 500
    message: str = "Internal controller error"

    def __init__(self, message: str | None = None, **kwargs: object) -> None:
        self.message = message or self.__class__.message
        self.details = kwargs
        super().__init__(self.message)


class DetectionSignalError(PacekeeperError):
    """The target signalled rate limiting or a verification challenge."""

    status_code = 429
    message = "Detection signal observed on target"


class FatalError(PacekeeperError):
    """Failure the core never retries — the run ends after saving progress."""

    status_code = 500
    message = "Fatal controller failure"


class AuthenticationLostError(FatalError):
    """No essential session cookie survived, or re-authentication failed."""

    status_code = 401
    message = "Authentication lost"


class CaptchaUnsolvableError(FatalError):
    """Challenge could not be solved within the polling budget."""

    status_code = 502
    message = "Captcha could not be solved"


class NoHealthyProxiesError(PacekeeperError):
    """No non-blacklisted proxy passed validation."""

    status_code = 503
    message = "No healthy proxies available"


class CaptchaServiceError(PacekeeperError):
    """The solving service rejected a request."""

    status_code = 502
    message = "Captcha service error"


class OrchestratorBusyError(PacekeeperError):
    """A run is already in progress for this orchestrator."""

    status_code = 409
    message = "A run is already in progress"


# ---------------------------------------------------------------------------
# FastAPI exception handlers
# ---------------------------------------------------------------------------


def _envelope(
    status_code: int,
    error: str,
    meta: dict | None = None,
) -> JSONResponse:
    """Build a JSON envelope error response."""
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": error,
            "meta": meta,
        },
    )


async def _pacekeeper_error_handler(_request: Request, exc: PacekeeperError) -> JSONResponse:
    """Handle PacekeeperError subclasses."""
    meta = exc.details if exc.details else None
    return _envelope(exc.status_code, exc.message, meta=meta)


async def _unhandled_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — log traceback, return generic 500."""
    logger.error(
        "Unhandled exception: %s\n%s",
        exc,
        traceback.format_exc(),
    )
    return _envelope(status_code=500, error="Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Wire up all exception handlers on the FastAPI application."""
    app.add_exception_handler(PacekeeperError, _pacekeeper_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _unhandled_error_handler)  # type: ignore[arg-type]
