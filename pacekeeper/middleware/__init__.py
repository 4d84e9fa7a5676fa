"""Middleware package — error hierarchy and API exception handlers."""

from pacekeeper.middleware.error_handler import (
    AuthenticationLostError,
    CaptchaServiceError,
    CaptchaUnsolvableError,
    DetectionSignalError,
    FatalError,
    NoHealthyProxiesError,
    OrchestratorBusyError,
    PacekeeperError,
    register_error_handlers,
)

__all__ = [
    "AuthenticationLostError",
    "CaptchaServiceError",
    "CaptchaUnsolvableError",
    "DetectionSignalError",
    "FatalError",
    "NoHealthyProxiesError",
    "OrchestratorBusyError",
    "PacekeeperError",
    "register_error_handlers",
]
