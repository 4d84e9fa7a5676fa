"""Pydantic record models for queued actions and in-memory run state."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionStatus(str, Enum):
    """Final status of a processed action."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PendingAction(BaseModel):
    """An action waiting to be attempted against the target."""

    action_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    queued_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> str:
        """De-duplication key: one action per category and target."""
        return f"{self.category}:{self.target}"


class ProcessedAction(PendingAction):
    """An action that left the queue, with its outcome."""

    status: ActionStatus
    processed_at: datetime = Field(default_factory=_utcnow)
    error: str | None = None


class StopReason(str, Enum):
    """Why a run ended."""

    QUEUE_EMPTY = "queue_empty"
    MAX_ACTIONS = "max_actions"
    OUTSIDE_OPERATING_HOURS = "outside_operating_hours"
    COOLDOWN = "cooldown"
    NO_HEALTHY_PROXIES = "no_healthy_proxies"
    FATAL = "fatal"


@dataclass
class RunSummary:
    """In-memory outcome of a single orchestrator run."""

    started_at: datetime
    finished_at: datetime | None = None
    stop_reason: StopReason | None = None
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    rate_limited: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "rate_limited": self.rate_limited,
            "error": self.error,
        }
