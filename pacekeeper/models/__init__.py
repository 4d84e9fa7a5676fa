"""Public models for the throttling controller."""

from pacekeeper.models.actions import (
    ActionStatus,
    PendingAction,
    ProcessedAction,
    RunSummary,
    StopReason,
)
from pacekeeper.models.responses import ApiResponse, HealthData, StatusData

__all__ = [
    "ActionStatus",
    "ApiResponse",
    "HealthData",
    "PendingAction",
    "ProcessedAction",
    "RunSummary",
    "StatusData",
    "StopReason",
]
