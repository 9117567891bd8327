"""
Mutation Coordinator — atomic snapshot → snapshot edits.

Every function here takes a Requirement snapshot and returns a new one in
which the edit is applied AND every dependent derived field is already
recomputed:

  - subtask metrics (durations, delay status) of the touched subtask
  - the requirement's aggregate status
  - the requirement's overall review verdict

Derived fields are always rebuilt from the current leaf values and never
merged, so the same final leaf state yields the same derived state no
matter which order the edits arrived in.

Usage:
    from reqtrack.services.mutation_coordinator import apply_subtask_edit

    req = apply_subtask_edit(req, "st-3", "status", "in-progress")
    req.aggregate_status   # already up to date
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from reqtrack.core.exceptions import NotFoundError, ValidationError
from reqtrack.services.lifecycle_types import (
    OverallReview,
    Requirement,
    ReviewLevel,
    ReviewStatus,
    Subtask,
    SubtaskKind,
    SubtaskStatus,
    VersionAssignment,
)
from reqtrack.services.review_gate import can_assign_version, evaluate_overall
from reqtrack.services.status_derivation import derive_status
from reqtrack.services.subtask_metrics import as_utc, recompute_metrics

logger = logging.getLogger(__name__)


SUBTASK_TIMESTAMP_FIELDS = frozenset({
    "estimated_start", "estimated_end", "actual_start", "actual_end",
})
SUBTASK_EDITABLE_FIELDS = SUBTASK_TIMESTAMP_FIELDS | {
    "name", "status", "executor_id", "department_id",
}
REVIEW_EDITABLE_FIELDS = frozenset({"status", "opinion", "reviewer_id"})

COPY_SUFFIX = " (copy)"


# ── Value coercion ───────────────────────────────────────────────────────────

def _coerce_timestamp(field: str, value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            return as_utc(datetime.fromisoformat(value))
        except ValueError:
            pass
    raise ValidationError(
        f"Invalid timestamp for '{field}': {value!r}",
        details={field: "expected ISO-8601 datetime"},
    )


def coerce_enum(enum_cls, field: str, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field} {value!r}. Must be one of: {allowed}",
            details={field: value},
        ) from None


def _coerce_subtask_value(field: str, value: Any) -> Any:
    if field in SUBTASK_TIMESTAMP_FIELDS:
        return _coerce_timestamp(field, value)
    if field == "status":
        return coerce_enum(SubtaskStatus, "status", value)
    if field == "name":
        return "" if value is None else str(value)
    return value


# ── Recompute ────────────────────────────────────────────────────────────────

def recompute(requirement: Requirement, now: datetime | None = None) -> Requirement:
    """Rebuild every derived field of *requirement* from its leaf values."""
    subtasks = tuple(recompute_metrics(s, now) for s in requirement.subtasks)
    return replace(
        requirement,
        subtasks=subtasks,
        aggregate_status=derive_status(subtasks),
        overall_review=evaluate_overall(requirement.review_levels),
    )


def _with_subtasks(requirement: Requirement, subtasks: tuple[Subtask, ...]) -> Requirement:
    return replace(
        requirement,
        subtasks=subtasks,
        aggregate_status=derive_status(subtasks),
        overall_review=evaluate_overall(requirement.review_levels),
    )


def _index_of(requirement: Requirement, subtask_id: str) -> int:
    for idx, subtask in enumerate(requirement.subtasks):
        if subtask.id == subtask_id:
            return idx
    raise NotFoundError(resource="Subtask", resource_id=subtask_id)


# ── Subtask edits ────────────────────────────────────────────────────────────

def apply_subtask_edit(
    requirement: Requirement,
    subtask_id: str,
    field: str,
    value: Any,
    now: datetime | None = None,
) -> Requirement:
    """Set one subtask field and return the fully recomputed requirement."""
    if field not in SUBTASK_EDITABLE_FIELDS:
        raise ValidationError(
            f"Subtask field '{field}' is not editable",
            details={"field": field, "editable": sorted(SUBTASK_EDITABLE_FIELDS)},
        )
    idx = _index_of(requirement, subtask_id)
    edited = replace(requirement.subtasks[idx], **{field: _coerce_subtask_value(field, value)})
    edited = recompute_metrics(edited, now)

    subtasks = requirement.subtasks[:idx] + (edited,) + requirement.subtasks[idx + 1:]
    updated = _with_subtasks(requirement, subtasks)
    if updated.aggregate_status != requirement.aggregate_status:
        logger.debug(
            "Aggregate status changed",
            extra={
                "requirement_id": requirement.id,
                "subtask_id": subtask_id,
                "aggregate_status": updated.aggregate_status.value,
            },
        )
    return updated


def new_subtask(
    name: str,
    *,
    kind: SubtaskKind = SubtaskKind.CUSTOM,
    subtask_id: str | None = None,
    **fields: Any,
) -> Subtask:
    """Build a subtask snapshot with coerced field values and no metrics yet."""
    unknown = set(fields) - SUBTASK_EDITABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown subtask fields: {', '.join(sorted(unknown))}",
            details={"fields": sorted(unknown)},
        )
    coerced = {k: _coerce_subtask_value(k, v) for k, v in fields.items()}
    return Subtask(id=subtask_id or str(uuid.uuid4()), name=name, kind=kind, **coerced)


def add_subtask(
    requirement: Requirement,
    subtask: Subtask,
    after_id: str | None = None,
    now: datetime | None = None,
) -> Requirement:
    """Append *subtask*, or insert it right after *after_id*."""
    subtask = recompute_metrics(subtask, now)
    if after_id is None:
        subtasks = requirement.subtasks + (subtask,)
    else:
        idx = _index_of(requirement, after_id)
        subtasks = requirement.subtasks[:idx + 1] + (subtask,) + requirement.subtasks[idx + 1:]
    return _with_subtasks(requirement, subtasks)


def copy_subtask(
    requirement: Requirement,
    subtask_id: str,
    new_id: str | None = None,
    now: datetime | None = None,
) -> Requirement:
    """Duplicate a subtask as a custom one, placed right after the source."""
    source = requirement.subtasks[_index_of(requirement, subtask_id)]
    duplicate = replace(
        source,
        id=new_id or str(uuid.uuid4()),
        name=f"{source.name}{COPY_SUFFIX}",
        kind=SubtaskKind.CUSTOM,
    )
    return add_subtask(requirement, duplicate, after_id=subtask_id, now=now)


def delete_subtask(requirement: Requirement, subtask_id: str) -> Requirement:
    idx = _index_of(requirement, subtask_id)
    subtasks = requirement.subtasks[:idx] + requirement.subtasks[idx + 1:]
    return _with_subtasks(requirement, subtasks)


# ── Review edits ─────────────────────────────────────────────────────────────

def apply_review_edit(
    requirement: Requirement,
    level: int,
    field: str,
    value: Any,
    now: datetime | None = None,
) -> Requirement:
    """Set one review-level field and return the recomputed requirement.

    A status change stamps ``reviewed_at`` with *now*.  If the edit takes
    the gate out of ``approved``, the planned version is cleared.  Who may
    make the edit is the caller's concern (see ``review_gate.reviewer_for``).
    """
    if field not in REVIEW_EDITABLE_FIELDS:
        raise ValidationError(
            f"Review field '{field}' is not editable",
            details={"field": field, "editable": sorted(REVIEW_EDITABLE_FIELDS)},
        )
    levels = requirement.review_levels
    idx = next((i for i, lv in enumerate(levels) if lv.level == level), None)
    if idx is None:
        raise NotFoundError(resource="ReviewLevel", resource_id=level)

    current = levels[idx]
    if field == "status":
        status = coerce_enum(ReviewStatus, "status", value)
        edited = current
        if status != current.status:
            stamp = as_utc(now) or datetime.now(timezone.utc)
            edited = replace(current, status=status, reviewed_at=stamp)
    elif field == "opinion":
        edited = replace(current, opinion="" if value is None else str(value))
    else:
        edited = replace(current, reviewer_id=value or None)

    updated_levels = levels[:idx] + (edited,) + levels[idx + 1:]
    overall = evaluate_overall(updated_levels)
    planned_version = requirement.planned_version
    # A version stays bound only while the gate is approved.
    if planned_version is not None and overall != OverallReview.APPROVED:
        logger.info(
            "Planned version released by review change",
            extra={
                "requirement_id": requirement.id,
                "review_level": level,
                "planned_version": planned_version,
                "overall_review": overall.value,
            },
        )
        planned_version = None
    return replace(
        requirement,
        review_levels=updated_levels,
        overall_review=overall,
        planned_version=planned_version,
        aggregate_status=derive_status(requirement.subtasks),
    )


def build_review_levels(count: int, reviewer_ids: dict[int, str] | None = None) -> tuple[ReviewLevel, ...]:
    """Create *count* pending review levels numbered from 1."""
    if count not in (0, 1, 2):
        raise ValidationError(
            f"Review level count must be 0, 1 or 2, got {count}",
            details={"review_levels": count},
        )
    reviewer_ids = reviewer_ids or {}
    return tuple(
        ReviewLevel(level=n, reviewer_id=reviewer_ids.get(n)) for n in range(1, count + 1)
    )


# ── Version assignment ───────────────────────────────────────────────────────

def apply_version_assignment(requirement: Requirement, version: str | None) -> VersionAssignment:
    """Bind *requirement* to a release version if the review gate allows it.

    Clearing the version (``None``) is always accepted.  A refused
    assignment returns the requirement unchanged with ``accepted=False``.
    """
    requirement = replace(requirement, overall_review=evaluate_overall(requirement.review_levels))
    if version is None:
        return VersionAssignment(accepted=True, requirement=replace(requirement, planned_version=None))

    if not can_assign_version(requirement):
        return VersionAssignment(
            accepted=False,
            requirement=requirement,
            reason=f"Review gate is '{requirement.overall_review.value}', not 'approved'",
        )
    return VersionAssignment(accepted=True, requirement=replace(requirement, planned_version=version))
