"""Cron schedule helpers built on croniter."""

from __future__ import annotations

from datetime import datetime

from croniter import croniter


def next_run(expression: str | None, after: datetime) -> datetime | None:
    """Return the first fire time of a cron expression strictly after ``after``.

    Args:
        expression: Cron expression, or None for unscheduled rules.
        after: Reference time (timezone-aware).

    Returns:
        The next fire time, or None when there is no schedule.
    """
    if not expression:
        return None
    return croniter(expression, after).get_next(datetime)


def is_due(expression: str | None, last_run: datetime | None, now: datetime) -> bool:
    """Return True when a cron schedule fired between ``last_run`` and ``now``.

    A schedule that never ran is due immediately.
    """
    if not expression:
        return False
    if last_run is None:
        return True
    upcoming = next_run(expression, last_run)
    return upcoming is not None and upcoming <= now
