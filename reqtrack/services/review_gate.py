"""
Review Gate — two-level scheduling approval.

A requirement may only be bound to a release version once both review
levels have approved it.  Rejection at any level dominates: an approval
elsewhere never overrides it.

    level 1      level 2        overall
    ─────────    ───────────    ─────────────────
    rejected     *              rejected
    *            rejected       rejected
    approved     approved       approved
    approved     pending        awaiting-level-2
    approved     (absent)       awaiting-level-2
    pending      *              pending

A requirement configured with a single level therefore stops at
``awaiting-level-2`` once level 1 approves.

Editing a level is reserved for its assigned reviewer.  The gate does not
authenticate anyone; it exposes ``reviewer_for`` so the caller can check.
"""

from __future__ import annotations

from collections.abc import Iterable

from reqtrack.services.lifecycle_types import (
    OverallReview,
    Requirement,
    ReviewLevel,
    ReviewStatus,
)

# Allowed manual status changes per current status (same status = no-op).
REVIEW_TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING: frozenset({ReviewStatus.APPROVED, ReviewStatus.REJECTED}),
    ReviewStatus.APPROVED: frozenset({ReviewStatus.REJECTED}),
    ReviewStatus.REJECTED: frozenset({ReviewStatus.APPROVED, ReviewStatus.PENDING}),
}

REVIEW_STATUS_LABELS = {
    ReviewStatus.PENDING: "Pending review",
    ReviewStatus.APPROVED: "Approved",
    ReviewStatus.REJECTED: "Rejected",
}

OVERALL_REVIEW_LABELS = {
    OverallReview.PENDING: "Awaiting level-1 review",
    OverallReview.AWAITING_LEVEL_2: "Awaiting level-2 review",
    OverallReview.APPROVED: "Review approved",
    OverallReview.REJECTED: "Review rejected",
}


def get_level(levels: Iterable[ReviewLevel], level: int) -> ReviewLevel | None:
    return next((lv for lv in levels if lv.level == level), None)


def evaluate_overall(levels: Iterable[ReviewLevel]) -> OverallReview:
    """Compute the overall verdict from the individual level decisions."""
    levels = tuple(levels)
    if any(lv.status == ReviewStatus.REJECTED for lv in levels):
        return OverallReview.REJECTED

    first = get_level(levels, 1)
    if first is None or first.status != ReviewStatus.APPROVED:
        return OverallReview.PENDING

    second = get_level(levels, 2)
    if second is not None and second.status == ReviewStatus.APPROVED:
        return OverallReview.APPROVED
    return OverallReview.AWAITING_LEVEL_2


def can_assign_version(requirement: Requirement) -> bool:
    """True iff the review gate is fully approved."""
    return evaluate_overall(requirement.review_levels) == OverallReview.APPROVED


def reviewer_for(requirement: Requirement, level: int) -> str | None:
    """Reviewer allowed to edit *level*, or None when unassigned / absent."""
    found = get_level(requirement.review_levels, level)
    return found.reviewer_id if found else None


def requires_level(requirement: Requirement, level: int) -> bool:
    return get_level(requirement.review_levels, level) is not None


def reviewers(requirement: Requirement) -> list[str]:
    """Distinct assigned reviewers, in level order."""
    seen: list[str] = []
    for lv in sorted(requirement.review_levels, key=lambda x: x.level):
        if lv.reviewer_id and lv.reviewer_id not in seen:
            seen.append(lv.reviewer_id)
    return seen


def is_valid_review_transition(current: ReviewStatus, new: ReviewStatus) -> bool:
    if current == new:
        return True
    return new in REVIEW_TRANSITIONS.get(current, frozenset())
