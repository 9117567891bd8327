"""
Status Derivation Engine — aggregate requirement status from its subtasks.

Rules, applied in order:
  1. No subtasks                       → awaiting-prototype
  2. Every subtask completed           → completed
  3. Phases from latest to earliest (only phases that have subtasks):
       - any subtask in progress       → <phase>-in-progress
       - nothing started, and the nearest earlier phase that has subtasks
         is fully completed (or there is none)
                                       → awaiting-<phase>
  4. Fallbacks: first in-progress subtask by list order decides the phase;
     otherwise, if anything is completed, development-in-progress
  5. Nothing started                   → awaiting-prototype

Subtasks classified as ``other`` never drive a phase, but they do count
toward rule 2.

Usage:
    from reqtrack.services.status_derivation import derive_status
    status = derive_status(requirement.subtasks)
"""

from __future__ import annotations

from collections.abc import Iterable

from reqtrack.services.lifecycle_types import (
    PHASE_ORDER,
    AggregateStatus,
    Phase,
    PhaseStats,
    Subtask,
    SubtaskStatus,
)

# Rule 4: an in-progress subtask with no recognised phase counts as development.
_FALLBACK_PHASE = Phase.DEVELOPMENT


def phase_breakdown(subtasks: Iterable[Subtask]) -> dict[Phase, PhaseStats]:
    """Count subtasks per delivery phase (``other`` excluded)."""
    counts = {phase: {"total": 0, "completed": 0, "in_progress": 0,
                      "not_started": 0, "paused": 0}
              for phase in PHASE_ORDER}
    for subtask in subtasks:
        bucket = counts.get(subtask.phase)
        if bucket is None:
            continue
        bucket["total"] += 1
        if subtask.status == SubtaskStatus.COMPLETED:
            bucket["completed"] += 1
        elif subtask.status == SubtaskStatus.IN_PROGRESS:
            bucket["in_progress"] += 1
        elif subtask.status == SubtaskStatus.NOT_STARTED:
            bucket["not_started"] += 1
        else:
            bucket["paused"] += 1
    return {phase: PhaseStats(**c) for phase, c in counts.items()}


def derive_status(subtasks: Iterable[Subtask]) -> AggregateStatus:
    """Compute the aggregate status for an ordered list of subtasks."""
    subtasks = tuple(subtasks)
    if not subtasks:
        return AggregateStatus.AWAITING_PROTOTYPE

    if all(s.status == SubtaskStatus.COMPLETED for s in subtasks):
        return AggregateStatus.COMPLETED

    stats = phase_breakdown(subtasks)
    present = [phase for phase in PHASE_ORDER if stats[phase].total]

    for idx in range(len(present) - 1, -1, -1):
        phase = present[idx]
        current = stats[phase]
        if current.in_progress:
            return AggregateStatus.in_progress(phase)
        if current.not_yet_started:
            previous = stats[present[idx - 1]] if idx > 0 else None
            if previous is None or previous.fully_completed:
                return AggregateStatus.awaiting(phase)

    first_active = next(
        (s for s in subtasks if s.status == SubtaskStatus.IN_PROGRESS), None,
    )
    if first_active is not None:
        phase = first_active.phase
        return AggregateStatus.in_progress(
            phase if phase in PHASE_ORDER else _FALLBACK_PHASE
        )

    # TODO: replace with a next-phase rule once product confirms semantics for
    # requirements where completed work sits beside unstarted earlier phases.
    if any(s.status == SubtaskStatus.COMPLETED for s in subtasks):
        return AggregateStatus.DEVELOPMENT_IN_PROGRESS

    return AggregateStatus.AWAITING_PROTOTYPE
