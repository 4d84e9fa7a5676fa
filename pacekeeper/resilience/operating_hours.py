"""Operating-hours enforcement helper.

Actions are only attempted inside a configured local-time hour window.
"""

from __future__ import annotations

from datetime import datetime

from pacekeeper.config.action_policies import OperatingHours


def is_within_operating_hours(
    hours: OperatingHours | None,
    current_hour: int | None = None,
) -> bool:
    """Check if an action is permitted at the given local hour.

    If no operating window is configured, actions are always permitted.
    The window is interpreted as [start, end) in local hours (0-23).

    Args:
        hours: The operating window to check.
        current_hour: Local hour (0-23) to check against. If None, uses the
            current local hour from the system clock.

    Returns:
        True if an action is permitted at the given hour, False otherwise.
    """
    if hours is None:
        return True

    if current_hour is None:
        current_hour = datetime.now().hour

    start = hours.start
    end = hours.end

    if start == end:
        # Degenerate window: treat as "always open"
        return True

    if start < end:
        # Normal range: e.g. start=8, end=23 → [8, 23)
        return start <= current_hour < end
    else:
        # Wrapping range: e.g. start=22, end=6 → [22, 24) ∪ [0, 6)
        return current_hour >= start or current_hour < end
