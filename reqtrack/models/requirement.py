"""
Requirement Tracker
Requirement domain models.

Chain:  Requirement → Subtask (ordered, owned)
        Requirement → ReviewLevel (level 1, optional level 2, owned)

Models:
    - Requirement:  feature / bug / change request tracked through delivery.
    - Subtask:      one delivery step; its phase is derived from its name.
    - ReviewLevel:  one step of the two-level scheduling review.

Derived columns (aggregate_status, overall_review, durations, delay_status)
are persisted for listing and filtering only.  They are written exclusively
from lifecycle engine output through ``Requirement.apply_snapshot``.
"""

import uuid
from datetime import datetime, timezone

from reqtrack.models import db
from reqtrack.services.lifecycle_types import (
    AggregateStatus,
    DelayStatus,
    OverallReview,
    Requirement as RequirementSnapshot,
    ReviewLevel as ReviewLevelSnapshot,
    ReviewStatus,
    Subtask as SubtaskSnapshot,
    SubtaskKind,
    SubtaskStatus,
)
from reqtrack.services.review_gate import OVERALL_REVIEW_LABELS, REVIEW_STATUS_LABELS
from reqtrack.services.subtask_metrics import as_utc


__all__ = ["Requirement", "Subtask", "ReviewLevel", "REQUIREMENT_PRIORITIES"]


# ── Helpers ──────────────────────────────────────────────────────────────────

def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    value = as_utc(value)
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

REQUIREMENT_PRIORITIES = {"low", "medium", "high", "urgent"}


class Requirement(db.Model):
    """
    A tracked requirement.  Owns its subtasks and review levels; neither
    has an independent lifecycle.
    """

    __tablename__ = "requirements"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(
        db.String(20), nullable=False, default="medium",
        comment="low | medium | high | urgent",
    )
    planned_version = db.Column(
        db.String(50), nullable=True,
        comment="Release version; only set once the review gate is approved",
    )
    aggregate_status = db.Column(
        db.String(30), nullable=False, default=AggregateStatus.AWAITING_PROTOTYPE.value,
        comment="Derived from subtasks — never written directly",
    )
    overall_review = db.Column(
        db.String(20), nullable=False, default=OverallReview.PENDING.value,
        comment="Derived from review levels — never written directly",
    )
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=_utcnow, onupdate=_utcnow,
    )

    # ── Relationships
    subtasks = db.relationship(
        "Subtask", order_by="Subtask.position",
        cascade="all, delete-orphan", lazy="select",
    )
    review_levels = db.relationship(
        "ReviewLevel", order_by="ReviewLevel.level",
        cascade="all, delete-orphan", lazy="select",
    )

    # ── Snapshot bridge

    def to_snapshot(self) -> RequirementSnapshot:
        return RequirementSnapshot(
            id=self.id,
            title=self.title,
            priority=self.priority,
            planned_version=self.planned_version,
            subtasks=tuple(s.to_snapshot() for s in self.subtasks),
            review_levels=tuple(lv.to_snapshot() for lv in self.review_levels),
            aggregate_status=AggregateStatus(self.aggregate_status),
            overall_review=OverallReview(self.overall_review),
        )

    def apply_snapshot(self, snapshot: RequirementSnapshot) -> None:
        """Write an engine snapshot back onto this row and its children.

        Subtasks missing from the snapshot are deleted (delete-orphan);
        new ones are created; order follows the snapshot.
        """
        self.title = snapshot.title
        self.priority = snapshot.priority
        self.planned_version = snapshot.planned_version
        self.aggregate_status = snapshot.aggregate_status.value
        self.overall_review = snapshot.overall_review.value

        existing = {s.id: s for s in self.subtasks}
        rows = []
        for position, snap in enumerate(snapshot.subtasks):
            row = existing.get(snap.id) or Subtask(id=snap.id)
            row.update_from_snapshot(snap, position)
            rows.append(row)
        self.subtasks = rows

        levels = {lv.level: lv for lv in self.review_levels}
        level_rows = []
        for snap in snapshot.review_levels:
            row = levels.get(snap.level) or ReviewLevel(level=snap.level)
            row.update_from_snapshot(snap)
            level_rows.append(row)
        self.review_levels = level_rows

    def to_dict(self, include_children=True):
        d = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "planned_version": self.planned_version,
            "aggregate_status": self.aggregate_status,
            "overall_review": self.overall_review,
            "overall_review_label": OVERALL_REVIEW_LABELS[OverallReview(self.overall_review)],
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_children:
            d["subtasks"] = [s.to_dict() for s in self.subtasks]
            d["review_levels"] = [lv.to_dict() for lv in self.review_levels]
        return d

    def __repr__(self):
        return f"<Requirement {self.id}: {self.title[:40]}>"


class Subtask(db.Model):
    """
    One delivery step of a requirement.

    ``phase`` is stored for filtering but always recomputed from ``name``.
    Executor and department are non-owning references to an external
    directory.
    """

    __tablename__ = "subtasks"
    __table_args__ = (
        db.Index("ix_subtasks_requirement_position", "requirement_id", "position"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    requirement_id = db.Column(
        db.String(36), db.ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    name = db.Column(db.String(300), nullable=False, default="")
    kind = db.Column(
        db.String(20), nullable=False, default=SubtaskKind.CUSTOM.value,
        comment="predefined | custom",
    )
    phase = db.Column(
        db.String(20), nullable=False, default="other",
        comment="Derived from name — prototype | ui | development | testing | acceptance | other",
    )
    status = db.Column(
        db.String(20), nullable=False, default=SubtaskStatus.NOT_STARTED.value,
        comment="not-started | in-progress | completed | paused",
    )
    executor_id = db.Column(db.String(64), nullable=True)
    department_id = db.Column(db.String(64), nullable=True)

    estimated_start = db.Column(db.DateTime(timezone=True), nullable=True)
    estimated_end = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_start = db.Column(db.DateTime(timezone=True), nullable=True)
    actual_end = db.Column(db.DateTime(timezone=True), nullable=True)

    estimated_duration = db.Column(db.Integer, nullable=False, default=0, comment="hours")
    actual_duration = db.Column(db.Integer, nullable=False, default=0, comment="hours")
    delay_status = db.Column(
        db.String(20), nullable=False, default=DelayStatus.UNKNOWN.value,
        comment="on-time | late | early | unknown",
    )

    def to_snapshot(self) -> SubtaskSnapshot:
        return SubtaskSnapshot(
            id=self.id,
            name=self.name or "",
            status=SubtaskStatus(self.status),
            kind=SubtaskKind(self.kind),
            executor_id=self.executor_id,
            department_id=self.department_id,
            estimated_start=as_utc(self.estimated_start),
            estimated_end=as_utc(self.estimated_end),
            actual_start=as_utc(self.actual_start),
            actual_end=as_utc(self.actual_end),
            estimated_duration=self.estimated_duration or 0,
            actual_duration=self.actual_duration or 0,
            delay_status=DelayStatus(self.delay_status),
        )

    def update_from_snapshot(self, snap: SubtaskSnapshot, position: int) -> None:
        self.position = position
        self.name = snap.name
        self.kind = snap.kind.value
        self.phase = snap.phase.value
        self.status = snap.status.value
        self.executor_id = snap.executor_id
        self.department_id = snap.department_id
        self.estimated_start = snap.estimated_start
        self.estimated_end = snap.estimated_end
        self.actual_start = snap.actual_start
        self.actual_end = snap.actual_end
        self.estimated_duration = snap.estimated_duration
        self.actual_duration = snap.actual_duration
        self.delay_status = snap.delay_status.value

    def to_dict(self):
        return {
            "id": self.id,
            "requirement_id": self.requirement_id,
            "position": self.position,
            "name": self.name,
            "kind": self.kind,
            "phase": self.phase,
            "status": self.status,
            "executor_id": self.executor_id,
            "department_id": self.department_id,
            "estimated_start": _iso(self.estimated_start),
            "estimated_end": _iso(self.estimated_end),
            "actual_start": _iso(self.actual_start),
            "actual_end": _iso(self.actual_end),
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "delay_status": self.delay_status,
        }

    def __repr__(self):
        return f"<Subtask {self.id}: {self.name[:40]} [{self.status}]>"


class ReviewLevel(db.Model):
    """One level of the scheduling review; editable only by its reviewer."""

    __tablename__ = "review_levels"
    __table_args__ = (
        db.UniqueConstraint("requirement_id", "level", name="uq_review_level_per_requirement"),
    )

    id = db.Column(db.Integer, primary_key=True)
    requirement_id = db.Column(
        db.String(36), db.ForeignKey("requirements.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False, comment="1 | 2")
    reviewer_id = db.Column(db.String(64), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default=ReviewStatus.PENDING.value,
        comment="pending | approved | rejected",
    )
    opinion = db.Column(db.Text, default="")
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_snapshot(self) -> ReviewLevelSnapshot:
        return ReviewLevelSnapshot(
            level=self.level,
            reviewer_id=self.reviewer_id,
            status=ReviewStatus(self.status),
            opinion=self.opinion or "",
            reviewed_at=as_utc(self.reviewed_at),
        )

    def update_from_snapshot(self, snap: ReviewLevelSnapshot) -> None:
        self.level = snap.level
        self.reviewer_id = snap.reviewer_id
        self.status = snap.status.value
        self.opinion = snap.opinion
        self.reviewed_at = snap.reviewed_at

    def to_dict(self):
        return {
            "level": self.level,
            "reviewer_id": self.reviewer_id,
            "status": self.status,
            "status_label": REVIEW_STATUS_LABELS[ReviewStatus(self.status)],
            "opinion": self.opinion,
            "reviewed_at": _iso(self.reviewed_at),
        }

    def __repr__(self):
        return f"<ReviewLevel {self.requirement_id}#{self.level}: {self.status}>"
