"""
Subtask Metric Calculator — durations and delay classification.

All three metrics are pure functions of a subtask's own timestamps and
status.  ``now`` is injectable so callers (and tests) get deterministic
results; it defaults to the current UTC time.

Naive datetimes (e.g. values read back from SQLite) are treated as UTC.
"""

from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timezone

from reqtrack.services.lifecycle_types import DelayStatus, Subtask, SubtaskStatus

_SECONDS_PER_HOUR = 3600


def as_utc(value: datetime | None) -> datetime | None:
    """Normalise a timestamp to an aware UTC datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def duration_hours(start: datetime | None, end: datetime | None) -> int:
    """Ceiling of |end - start| in whole hours; 0 if either side is missing."""
    start, end = as_utc(start), as_utc(end)
    if start is None or end is None:
        return 0
    seconds = abs((end - start).total_seconds())
    return math.ceil(seconds / _SECONDS_PER_HOUR)


def _compare(reference: datetime, estimated: datetime) -> DelayStatus:
    if reference > estimated:
        return DelayStatus.LATE
    if reference < estimated:
        return DelayStatus.EARLY
    return DelayStatus.ON_TIME


def delay_status(
    estimated_end: datetime | None,
    actual_end: datetime | None,
    status: SubtaskStatus,
    now: datetime | None = None,
) -> DelayStatus:
    """
    Classify delay against the estimated end.

    - no estimated end                      → unknown
    - actual end present                    → compare actual vs estimated
    - completed without an actual end       → compare now vs estimated
    - in progress and now past the estimate → late
    - anything else                         → unknown
    """
    estimated = as_utc(estimated_end)
    if estimated is None:
        return DelayStatus.UNKNOWN

    actual = as_utc(actual_end)
    if actual is not None:
        return _compare(actual, estimated)

    now = as_utc(now) or datetime.now(timezone.utc)
    if status == SubtaskStatus.COMPLETED:
        return _compare(now, estimated)
    if status == SubtaskStatus.IN_PROGRESS and now > estimated:
        return DelayStatus.LATE
    return DelayStatus.UNKNOWN


def recompute_metrics(subtask: Subtask, now: datetime | None = None) -> Subtask:
    """Return a copy of *subtask* with every derived metric recomputed."""
    return replace(
        subtask,
        estimated_duration=duration_hours(subtask.estimated_start, subtask.estimated_end),
        actual_duration=duration_hours(subtask.actual_start, subtask.actual_end),
        delay_status=delay_status(
            subtask.estimated_end, subtask.actual_end, subtask.status, now,
        ),
    )
