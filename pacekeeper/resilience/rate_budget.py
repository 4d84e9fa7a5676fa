"""Per-category action budget with quotas, human-like pacing, and escalation.

Tracks daily/weekly quota consumption for each action category ("connect",
"message", ...), computes randomized inter-action delays, and escalates
defensive behavior when the target signals detection.

Key behaviors:
- try_admit() denies when a quota is exhausted, the local time is outside the
  operating window, or a cool-down is active. Denying never mutates state.
- compute_delay() draws a bell-shaped delay from [min, max], stretches it by
  the backoff multiplier and clamps it to an absolute ceiling.
- on_detection_signal() doubles the backoff multiplier (capped) and schedules
  a cool-down of base_cooldown * multiplier.
- reset_if_window_elapsed() resets daily counts at the local day boundary and
  weekly counts at the Monday boundary, and decays backoff after a
  detection-free window.

State machine per category:
- Normal → Cooldown: on_detection_signal()
- Cooldown → Backoff(n): cool-down elapses, multiplier still elevated
- Backoff(n) → Normal: detection-free windows decay the multiplier back to 1
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from pacekeeper.config.action_policies import ActionPolicy, OperatingHours
from pacekeeper.resilience.operating_hours import is_within_operating_hours

logger = logging.getLogger(__name__)

_DECAY_FACTOR = 0.75


class BudgetState(str, Enum):
    """Escalation state of a single action category."""

    NORMAL = "normal"
    BACKOFF = "backoff"
    COOLDOWN = "cooldown"


class DenialReason(str, Enum):
    """Why an admission check was denied."""

    COOLDOWN = "cooldown_active"
    DAILY_QUOTA = "daily_quota_exhausted"
    WEEKLY_QUOTA = "weekly_quota_exhausted"
    OUTSIDE_OPERATING_HOURS = "outside_operating_hours"


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of RateBudget.try_admit()."""

    category: str
    admitted: bool
    reason: DenialReason | None = None
    retry_after_seconds: float | None = None

    def __bool__(self) -> bool:
        return self.admitted


@dataclass
class ActionBudget:
    """Quota and escalation state for a single action category."""

    category: str
    daily_limit: int
    weekly_limit: int
    daily_count: int = 0
    weekly_count: int = 0
    day_anchor: date | None = None
    week_anchor: date | None = None
    consecutive_detections: int = 0
    backoff_multiplier: float = 1.0
    cooldown_until: datetime | None = None
    last_detection_at: datetime | None = None
    quiet_since: datetime | None = None  # Start of the current detection-free window

    def to_record(self) -> dict:
        """Serialize to a JSON-compatible dict for the persistence store."""
        return {
            "category": self.category,
            "daily_limit": self.daily_limit,
            "weekly_limit": self.weekly_limit,
            "daily_count": self.daily_count,
            "weekly_count": self.weekly_count,
            "day_anchor": _iso(self.day_anchor),
            "week_anchor": _iso(self.week_anchor),
            "consecutive_detections": self.consecutive_detections,
            "backoff_multiplier": self.backoff_multiplier,
            "cooldown_until": _iso(self.cooldown_until),
            "last_detection_at": _iso(self.last_detection_at),
            "quiet_since": _iso(self.quiet_since),
        }

    @classmethod
    def from_record(cls, record: dict) -> ActionBudget:
        return cls(
            category=record["category"],
            daily_limit=int(record["daily_limit"]),
            weekly_limit=int(record["weekly_limit"]),
            daily_count=int(record.get("daily_count", 0)),
            weekly_count=int(record.get("weekly_count", 0)),
            day_anchor=_parse_date(record.get("day_anchor")),
            week_anchor=_parse_date(record.get("week_anchor")),
            consecutive_detections=int(record.get("consecutive_detections", 0)),
            backoff_multiplier=float(record.get("backoff_multiplier", 1.0)),
            cooldown_until=_parse_datetime(record.get("cooldown_until")),
            last_detection_at=_parse_datetime(record.get("last_detection_at")),
            quiet_since=_parse_datetime(record.get("quiet_since")),
        )


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _week_start(day: date) -> date:
    """Monday of the week containing *day*."""
    return day - timedelta(days=day.weekday())


class RateBudget:
    """Per-category quota tracker and pacing controller.

    Args:
        policies: Category name → ActionPolicy. The "default" entry applies
            to categories without their own policy.
        operating_hours: Local hour window for admission; None disables it.
        min_delay_seconds: Lower bound of the inter-action delay range.
        max_delay_seconds: Upper bound of the inter-action delay range.
        delay_ceiling_seconds: Absolute ceiling after the backoff multiplier.
        backoff_cap: Maximum backoff multiplier.
        base_cooldown_seconds: Cool-down length at multiplier 1.
        detection_free_window_seconds: Quiet period after a cool-down before
            the multiplier starts decaying.
        clock: Returns the current local time.
        rng: Random source for delays; seed it for deterministic tests.
    """

    def __init__(
        self,
        policies: dict[str, ActionPolicy] | None = None,
        *,
        operating_hours: OperatingHours | None = None,
        min_delay_seconds: float = 45.0,
        max_delay_seconds: float = 180.0,
        delay_ceiling_seconds: float = 540.0,
        backoff_cap: float = 8.0,
        base_cooldown_seconds: float = 3600.0,
        detection_free_window_seconds: float = 3600.0,
        clock: Callable[[], datetime] = datetime.now,
        rng: random.Random | None = None,
    ) -> None:
        self._policies = dict(policies or {})
        self._policies.setdefault("default", ActionPolicy())
        self._operating_hours = operating_hours
        self._min_delay = min_delay_seconds
        self._max_delay = max(max_delay_seconds, min_delay_seconds)
        self._delay_ceiling = delay_ceiling_seconds
        self._backoff_cap = backoff_cap
        self._base_cooldown = base_cooldown_seconds
        self._quiet_window = detection_free_window_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._budgets: dict[str, ActionBudget] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Budget bookkeeping
    # ------------------------------------------------------------------

    def _policy_for(self, category: str) -> ActionPolicy:
        return self._policies.get(category, self._policies["default"])

    def _new_budget(self, category: str, now: datetime) -> ActionBudget:
        policy = self._policy_for(category)
        return ActionBudget(
            category=category,
            daily_limit=policy.daily_limit,
            weekly_limit=policy.weekly_limit,
            day_anchor=now.date(),
            week_anchor=_week_start(now.date()),
        )

    def _get_or_create_budget(self, category: str) -> ActionBudget:
        if category not in self._budgets:
            self._budgets[category] = self._new_budget(category, self._clock())
        return self._budgets[category]

    def get_budget(self, category: str) -> ActionBudget:
        """Return the live budget for a category, creating it on first use."""
        with self._lock:
            return self._get_or_create_budget(category)

    # ------------------------------------------------------------------
    # Window resets and decay
    # ------------------------------------------------------------------

    def reset_if_window_elapsed(self) -> None:
        """Reset counters whose calendar window has passed and decay backoff.

        Daily counts reset when the local date advances, weekly counts when a
        new Monday-anchored week starts. Anchors only move forward, so each
        boundary resets a counter at most once.
        """
        with self._lock:
            now = self._clock()
            today = now.date()
            this_week = _week_start(today)

            for budget in self._budgets.values():
                if budget.day_anchor is None or today > budget.day_anchor:
                    if budget.daily_count:
                        logger.info(
                            "Daily budget reset for %s (%d actions yesterday)",
                            budget.category,
                            budget.daily_count,
                        )
                    budget.daily_count = 0
                    budget.day_anchor = today

                if budget.week_anchor is None or this_week > budget.week_anchor:
                    budget.weekly_count = 0
                    budget.week_anchor = this_week
                    if budget.consecutive_detections:
                        budget.consecutive_detections //= 2
                        budget.backoff_multiplier = self._multiplier_for(
                            budget.consecutive_detections
                        )
                    logger.info("Weekly budget reset for %s", budget.category)

                self._decay_after_quiet_window(budget, now)

    def _decay_after_quiet_window(self, budget: ActionBudget, now: datetime) -> None:
        """Step the backoff down once per elapsed detection-free window."""
        if budget.consecutive_detections == 0 and budget.backoff_multiplier <= 1.0:
            return
        if budget.quiet_since is None or now < budget.quiet_since:
            return
        if self._quiet_window <= 0:
            steps = budget.consecutive_detections
        else:
            elapsed = (now - budget.quiet_since).total_seconds()
            steps = int(elapsed // self._quiet_window)
        if steps <= 0:
            return

        for _ in range(steps):
            budget.consecutive_detections = max(0, budget.consecutive_detections - 1)
            budget.backoff_multiplier = max(1.0, budget.backoff_multiplier * _DECAY_FACTOR)
            if budget.consecutive_detections == 0:
                budget.backoff_multiplier = 1.0
                break

        budget.quiet_since = budget.quiet_since + timedelta(seconds=steps * self._quiet_window)
        logger.info(
            "Backoff decayed for %s: detections=%d multiplier=%.2f",
            budget.category,
            budget.consecutive_detections,
            budget.backoff_multiplier,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def try_admit(self, category: str) -> AdmissionDecision:
        """Decide whether an action of *category* may be attempted now.

        Checks, in order: active cool-down, daily quota, weekly quota,
        operating hours. Never mutates state, whatever the outcome.
        """
        with self._lock:
            now = self._clock()
            budget = self._budgets.get(category) or self._new_budget(category, now)

            if budget.cooldown_until is not None and now < budget.cooldown_until:
                remaining = (budget.cooldown_until - now).total_seconds()
                return self._deny(category, DenialReason.COOLDOWN, remaining)

            if budget.daily_count >= budget.daily_limit:
                tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
                return self._deny(
                    category,
                    DenialReason.DAILY_QUOTA,
                    (tomorrow - now).total_seconds(),
                )

            if budget.weekly_count >= budget.weekly_limit:
                next_week = datetime.combine(
                    _week_start(now.date()) + timedelta(days=7), datetime.min.time()
                )
                return self._deny(
                    category,
                    DenialReason.WEEKLY_QUOTA,
                    (next_week - now).total_seconds(),
                )

            if not is_within_operating_hours(self._operating_hours, now.hour):
                return self._deny(
                    category,
                    DenialReason.OUTSIDE_OPERATING_HOURS,
                    self._seconds_until_open(now),
                )

            return AdmissionDecision(category=category, admitted=True)

    def _deny(
        self, category: str, reason: DenialReason, retry_after: float | None
    ) -> AdmissionDecision:
        logger.info(
            "Admission denied for %s: %s",
            category,
            reason.value,
            extra={"category": category, "denial_reason": reason.value},
        )
        return AdmissionDecision(
            category=category,
            admitted=False,
            reason=reason,
            retry_after_seconds=retry_after,
        )

    def _seconds_until_open(self, now: datetime) -> float | None:
        if self._operating_hours is None:
            return None
        opening = now.replace(hour=self._operating_hours.start, minute=0, second=0, microsecond=0)
        if opening <= now:
            opening += timedelta(days=1)
        return (opening - now).total_seconds()

    # ------------------------------------------------------------------
    # Pacing
    # ------------------------------------------------------------------

    def compute_delay(self, category: str | None = None) -> float:
        """Return the next inter-action delay in seconds.

        The sum of three uniform draws approximates a bell curve centred on
        the middle of [min, max]. The result is stretched by the category's
        backoff multiplier (the highest one when *category* is None) and
        clamped to [min_delay, delay_ceiling].
        """
        with self._lock:
            if category is not None and category in self._budgets:
                multiplier = self._budgets[category].backoff_multiplier
            else:
                multiplier = max(
                    (b.backoff_multiplier for b in self._budgets.values()), default=1.0
                )

            base = (self._min_delay + self._max_delay) / 2
            variance = (self._max_delay - self._min_delay) / 4
            spread = sum(self._rng.uniform(0, variance) for _ in range(3))
            delay = (base + spread - 1.5 * variance) * multiplier

            return max(self._min_delay, min(self._delay_ceiling, delay))

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_success(self, category: str) -> None:
        """Count a completed action against the daily and weekly quotas."""
        with self._lock:
            budget = self._get_or_create_budget(category)
            budget.daily_count += 1
            budget.weekly_count += 1
            logger.info(
                "Action count for %s: %d/%d daily, %d/%d weekly",
                category,
                budget.daily_count,
                budget.daily_limit,
                budget.weekly_count,
                budget.weekly_limit,
                extra={"category": category},
            )

    def on_detection_signal(self, category: str) -> float:
        """Escalate after a detection signal and schedule a cool-down.

        Returns:
            The cool-down length in seconds.
        """
        with self._lock:
            now = self._clock()
            budget = self._get_or_create_budget(category)
            budget.consecutive_detections += 1
            budget.backoff_multiplier = self._multiplier_for(budget.consecutive_detections)

            cooldown = self._base_cooldown * budget.backoff_multiplier
            budget.cooldown_until = now + timedelta(seconds=cooldown)
            budget.last_detection_at = now
            budget.quiet_since = budget.cooldown_until

            logger.warning(
                "Detection signal for %s (consecutive=%d), multiplier=%.0f, cooling down %.0fs",
                category,
                budget.consecutive_detections,
                budget.backoff_multiplier,
                cooldown,
                extra={"category": category},
            )
            return cooldown

    def _multiplier_for(self, detections: int) -> float:
        if detections <= 0:
            return 1.0
        return float(min(self._backoff_cap, 2 ** (detections - 1)))

    # ------------------------------------------------------------------
    # Introspection and persistence
    # ------------------------------------------------------------------

    def state(self, category: str) -> BudgetState:
        """Current escalation state for *category*."""
        with self._lock:
            budget = self._budgets.get(category)
            if budget is None:
                return BudgetState.NORMAL
            if budget.cooldown_until is not None and self._clock() < budget.cooldown_until:
                return BudgetState.COOLDOWN
            if budget.consecutive_detections > 0 or budget.backoff_multiplier > 1.0:
                return BudgetState.BACKOFF
            return BudgetState.NORMAL

    def get_stats(self) -> dict:
        """Return per-category budget statistics for the status endpoint."""
        with self._lock:
            categories = list(self._budgets)
        return {
            category: {
                "state": self.state(category).value,
                "daily_count": self._budgets[category].daily_count,
                "daily_limit": self._budgets[category].daily_limit,
                "weekly_count": self._budgets[category].weekly_count,
                "weekly_limit": self._budgets[category].weekly_limit,
                "consecutive_detections": self._budgets[category].consecutive_detections,
                "backoff_multiplier": self._budgets[category].backoff_multiplier,
                "cooldown_until": _iso(self._budgets[category].cooldown_until),
            }
            for category in categories
        }

    def snapshot(self) -> list[dict]:
        """Serialize every category budget for the persistence store."""
        with self._lock:
            return [budget.to_record() for budget in self._budgets.values()]

    def restore(self, records: list[dict]) -> None:
        """Load budgets saved by snapshot(); limits follow current policies.

        Malformed records are logged and skipped.
        """
        with self._lock:
            for record in records:
                try:
                    budget = ActionBudget.from_record(record)
                except (KeyError, TypeError, ValueError) as exc:
                    logger.error("Skipping malformed budget record %r: %s", record, exc)
                    continue
                policy = self._policy_for(budget.category)
                budget.daily_limit = policy.daily_limit
                budget.weekly_limit = policy.weekly_limit
                self._budgets[budget.category] = budget
            logger.info("Restored %d action budgets", len(self._budgets))
