"""Resilience components for the throttling controller."""

from pacekeeper.resilience.operating_hours import is_within_operating_hours
from pacekeeper.resilience.rate_budget import (
    ActionBudget,
    AdmissionDecision,
    BudgetState,
    DenialReason,
    RateBudget,
)
from pacekeeper.resilience.retry import ErrorClassification, RetryClassifier

__all__ = [
    "ActionBudget",
    "AdmissionDecision",
    "BudgetState",
    "DenialReason",
    "ErrorClassification",
    "RateBudget",
    "RetryClassifier",
    "is_within_operating_hours",
]
