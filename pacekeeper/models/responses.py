"""Status API response models.

Every status API response is wrapped in the same envelope:
{ success: bool, data: T | None, error: str | None, meta: dict | None }
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """JSON envelope for all API responses."""

    success: bool
    data: T | None = None
    error: str | None = None
    meta: dict | None = None


class HealthData(BaseModel):
    status: str = "healthy"
    version: str
    running: bool


class StatusData(BaseModel):
    """Controller state: budgets per category, identities, session, last run."""

    running: bool
    budgets: dict[str, dict[str, Any]]
    proxy_pool: dict[str, Any] | None = None
    session: dict[str, Any]
    queue: dict[str, Any]
    last_run: dict[str, Any] | None = None
