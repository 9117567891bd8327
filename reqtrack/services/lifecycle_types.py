"""
Requirement Lifecycle — snapshot types and closed enumerations.

Every derived field in the lifecycle engine is typed by one of the enums
below.  Values are the exact strings persisted in the store and shown as
labels, so they must never be renamed.

Snapshots are frozen dataclasses: the engine only ever builds new ones
with ``dataclasses.replace``; it never mutates its input.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class Phase(str, Enum):
    """Delivery phase of a subtask, in delivery order (OTHER last)."""
    PROTOTYPE = "prototype"
    UI = "ui"
    DEVELOPMENT = "development"
    TESTING = "testing"
    ACCEPTANCE = "acceptance"
    OTHER = "other"


# Ordered phases that take part in aggregation (OTHER excluded).
PHASE_ORDER: tuple[Phase, ...] = (
    Phase.PROTOTYPE,
    Phase.UI,
    Phase.DEVELOPMENT,
    Phase.TESTING,
    Phase.ACCEPTANCE,
)


class SubtaskStatus(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    PAUSED = "paused"


class SubtaskKind(str, Enum):
    PREDEFINED = "predefined"
    CUSTOM = "custom"


class DelayStatus(str, Enum):
    ON_TIME = "on-time"
    LATE = "late"
    EARLY = "early"
    UNKNOWN = "unknown"


class AggregateStatus(str, Enum):
    """Requirement status derived from its subtasks, in phase order."""
    AWAITING_PROTOTYPE = "awaiting-prototype"
    PROTOTYPE_IN_PROGRESS = "prototype-in-progress"
    AWAITING_UI = "awaiting-ui"
    UI_IN_PROGRESS = "ui-in-progress"
    AWAITING_DEVELOPMENT = "awaiting-development"
    DEVELOPMENT_IN_PROGRESS = "development-in-progress"
    AWAITING_TESTING = "awaiting-testing"
    TESTING_IN_PROGRESS = "testing-in-progress"
    AWAITING_ACCEPTANCE = "awaiting-acceptance"
    ACCEPTANCE_IN_PROGRESS = "acceptance-in-progress"
    COMPLETED = "completed"

    @classmethod
    def awaiting(cls, phase: Phase) -> "AggregateStatus":
        return cls(f"awaiting-{phase.value}")

    @classmethod
    def in_progress(cls, phase: Phase) -> "AggregateStatus":
        return cls(f"{phase.value}-in-progress")


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class OverallReview(str, Enum):
    PENDING = "pending"
    AWAITING_LEVEL_2 = "awaiting-level-2"
    APPROVED = "approved"
    REJECTED = "rejected"


# ═════════════════════════════════════════════════════════════════════════════
# Snapshots
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Subtask:
    """One delivery step of a requirement.

    ``phase`` is not a field: it is always recomputed from ``name`` so the
    two can never disagree.
    """
    id: str
    name: str
    status: SubtaskStatus = SubtaskStatus.NOT_STARTED
    kind: SubtaskKind = SubtaskKind.CUSTOM
    executor_id: str | None = None
    department_id: str | None = None
    estimated_start: datetime | None = None
    estimated_end: datetime | None = None
    actual_start: datetime | None = None
    actual_end: datetime | None = None
    # Derived: written only by subtask_metrics.recompute_metrics
    estimated_duration: int = 0
    actual_duration: int = 0
    delay_status: DelayStatus = DelayStatus.UNKNOWN

    @property
    def phase(self) -> Phase:
        from reqtrack.services.phase_classifier import classify
        return classify(self.name)


@dataclass(frozen=True)
class ReviewLevel:
    """One approval step of the review gate."""
    level: int
    reviewer_id: str | None = None
    status: ReviewStatus = ReviewStatus.PENDING
    opinion: str = ""
    reviewed_at: datetime | None = None


@dataclass(frozen=True)
class Requirement:
    """Requirement snapshot: owns its subtasks and review levels by value."""
    id: str
    title: str
    priority: str = "medium"
    planned_version: str | None = None
    subtasks: tuple[Subtask, ...] = ()
    review_levels: tuple[ReviewLevel, ...] = ()
    # Derived: written only by the mutation coordinator
    aggregate_status: AggregateStatus = AggregateStatus.AWAITING_PROTOTYPE
    overall_review: OverallReview = OverallReview.PENDING


@dataclass(frozen=True)
class VersionAssignment:
    """Outcome of binding a requirement to a release version."""
    accepted: bool
    requirement: Requirement
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "requirement_id": self.requirement.id,
            "planned_version": self.requirement.planned_version,
            "overall_review": self.requirement.overall_review.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PhaseStats:
    """Per-phase subtask counts used by the status derivation engine."""
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    not_started: int = 0
    paused: int = 0

    @property
    def fully_completed(self) -> bool:
        return self.total > 0 and self.completed == self.total

    @property
    def not_yet_started(self) -> bool:
        return self.total > 0 and self.not_started == self.total
