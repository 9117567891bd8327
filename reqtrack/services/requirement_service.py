"""
Requirement Service — store-backed requirement operations.

Each public function loads a Requirement row, turns it into an engine
snapshot, runs exactly one Mutation Coordinator call, writes the resulting
snapshot back and appends an audit row, all inside one transaction.  No
caller ever sees a row whose derived fields lag behind its leaf fields.

Business rules enforced here (not in the engine):
    - Only the assigned reviewer may edit a review level.
    - Review status changes follow REVIEW_TRANSITIONS.
    - A refused version assignment is reported, not raised, and leaves the
      stored requirement untouched.

Usage:
    from reqtrack.services import requirement_service as svc

    req = svc.create_requirement("Order export", reviewer_ids={1: "u-7"})
    svc.update_subtask(req["id"], req["subtasks"][0]["id"], "status", "in-progress")
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from flask import current_app
from sqlalchemy import select

from reqtrack.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from reqtrack.models import db
from reqtrack.models.audit import AuditLog, write_audit
from reqtrack.models.requirement import REQUIREMENT_PRIORITIES, Requirement
from reqtrack.services import mutation_coordinator as mc
from reqtrack.services.lifecycle_types import (
    Requirement as RequirementSnapshot,
    ReviewStatus,
    SubtaskKind,
)
from reqtrack.services.review_gate import get_level, is_valid_review_transition, reviewer_for

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _load(requirement_id: str) -> Requirement:
    req = db.session.get(Requirement, requirement_id)
    if req is None:
        raise NotFoundError(resource="Requirement", resource_id=requirement_id)
    return req


def _derived_diff(before: RequirementSnapshot, after: RequirementSnapshot) -> dict:
    """old→new pairs for requirement-level derived fields that changed."""
    diff = {}
    if before.aggregate_status != after.aggregate_status:
        diff["aggregate_status"] = {
            "old": before.aggregate_status.value, "new": after.aggregate_status.value,
        }
    if before.overall_review != after.overall_review:
        diff["overall_review"] = {
            "old": before.overall_review.value, "new": after.overall_review.value,
        }
    if before.planned_version != after.planned_version:
        diff["planned_version"] = {"old": before.planned_version, "new": after.planned_version}
    return diff


def _commit(
    req: Requirement,
    before: RequirementSnapshot,
    after: RequirementSnapshot,
    *,
    action: str,
    entity_type: str,
    entity_id: str | int,
    actor: str | None,
    diff: dict | None = None,
) -> dict:
    req.apply_snapshot(after)
    write_audit(
        requirement_id=req.id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor=actor,
        diff={**(diff or {}), **_derived_diff(before, after)},
    )
    db.session.commit()
    logger.info(
        "Requirement %s",
        action,
        extra={
            "requirement_id": req.id,
            "aggregate_status": after.aggregate_status.value,
            "overall_review": after.overall_review.value,
            "actor": actor,
        },
    )
    return req.to_dict()


def _subtask_field(snapshot: RequirementSnapshot, subtask_id: str, field: str):
    for subtask in snapshot.subtasks:
        if subtask.id == subtask_id:
            return getattr(subtask, field, None)
    return None


# ── Public API ─────────────────────────────────────────────────────────────────


def create_requirement(
    title: str,
    *,
    priority: str = "medium",
    description: str = "",
    created_by: str | None = None,
    review_levels: int | None = None,
    reviewer_ids: dict[int, str] | None = None,
    subtask_names: list[str] | None = None,
    now: datetime | None = None,
) -> dict:
    """Create a requirement with template subtasks and pending review levels.

    Args:
        review_levels: Number of review levels (0-2). Defaults to the
                       DEFAULT_REVIEW_LEVELS setting.
        reviewer_ids:  {level: reviewer_id} for the created levels.
        subtask_names: Overrides the SUBTASK_TEMPLATE setting. Template
                       subtasks are created as ``predefined``.

    Raises:
        ValidationError: empty title, unknown priority or bad level count.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required", details={"title": "required"})
    if priority not in REQUIREMENT_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'. Must be one of: {', '.join(sorted(REQUIREMENT_PRIORITIES))}",
            details={"priority": priority},
        )

    if review_levels is None:
        review_levels = current_app.config.get("DEFAULT_REVIEW_LEVELS", 2)
    names = subtask_names if subtask_names is not None else current_app.config["SUBTASK_TEMPLATE"]
    levels = mc.build_review_levels(review_levels, reviewer_ids)

    req = Requirement(title=title, priority=priority, description=description, created_by=created_by)
    db.session.add(req)
    db.session.flush()

    snapshot = RequirementSnapshot(
        id=req.id,
        title=title,
        priority=priority,
        subtasks=tuple(mc.new_subtask(name, kind=SubtaskKind.PREDEFINED) for name in names),
        review_levels=levels,
    )
    snapshot = mc.recompute(snapshot, now)
    return _commit(
        req, snapshot, snapshot,
        action="requirement.create", entity_type="requirement", entity_id=req.id,
        actor=created_by,
        diff={"subtasks": len(snapshot.subtasks), "review_levels": len(snapshot.review_levels)},
    )


def get_requirement(requirement_id: str) -> dict:
    return _load(requirement_id).to_dict()


def list_requirements(*, aggregate_status: str | None = None,
                      overall_review: str | None = None) -> list[dict]:
    """Return requirements, newest first, optionally filtered by derived status."""
    stmt = select(Requirement).order_by(Requirement.created_at.desc())
    if aggregate_status:
        stmt = stmt.where(Requirement.aggregate_status == aggregate_status)
    if overall_review:
        stmt = stmt.where(Requirement.overall_review == overall_review)
    rows = db.session.execute(stmt).scalars().all()
    return [r.to_dict(include_children=False) for r in rows]


def update_subtask(
    requirement_id: str,
    subtask_id: str,
    field: str,
    value: Any,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Edit one subtask field and persist the recomputed requirement."""
    req = _load(requirement_id)
    before = req.to_snapshot()
    after = mc.apply_subtask_edit(before, subtask_id, field, value, now)
    return _commit(
        req, before, after,
        action="subtask.update", entity_type="subtask", entity_id=subtask_id,
        actor=actor,
        diff={field: {
            "old": _subtask_field(before, subtask_id, field),
            "new": _subtask_field(after, subtask_id, field),
        }},
    )


def add_subtask(
    requirement_id: str,
    name: str,
    *,
    after_id: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
    **fields: Any,
) -> dict:
    """Add an ad-hoc subtask at the end or right after *after_id*."""
    req = _load(requirement_id)
    before = req.to_snapshot()
    subtask = mc.new_subtask(name, **fields)
    after = mc.add_subtask(before, subtask, after_id=after_id, now=now)
    return _commit(
        req, before, after,
        action="subtask.add", entity_type="subtask", entity_id=subtask.id,
        actor=actor, diff={"name": {"old": None, "new": name}},
    )


def copy_subtask(
    requirement_id: str,
    subtask_id: str,
    *,
    actor: str | None = None,
    now: datetime | None = None,
) -> dict:
    req = _load(requirement_id)
    before = req.to_snapshot()
    after = mc.copy_subtask(before, subtask_id, now=now)
    new_ids = {s.id for s in after.subtasks} - {s.id for s in before.subtasks}
    return _commit(
        req, before, after,
        action="subtask.copy", entity_type="subtask", entity_id=new_ids.pop(),
        actor=actor, diff={"source_id": subtask_id},
    )


def delete_subtask(requirement_id: str, subtask_id: str, *, actor: str | None = None) -> dict:
    req = _load(requirement_id)
    before = req.to_snapshot()
    after = mc.delete_subtask(before, subtask_id)
    return _commit(
        req, before, after,
        action="subtask.delete", entity_type="subtask", entity_id=subtask_id,
        actor=actor, diff={"name": {"old": _subtask_field(before, subtask_id, "name"), "new": None}},
    )


def assign_reviewer(
    requirement_id: str,
    level: int,
    reviewer_id: str | None,
    *,
    actor: str | None = None,
) -> dict:
    """Set or clear the reviewer of a level.  Not a reviewer-scoped edit."""
    req = _load(requirement_id)
    before = req.to_snapshot()
    previous = get_level(before.review_levels, level)
    after = mc.apply_review_edit(before, level, "reviewer_id", reviewer_id)
    return _commit(
        req, before, after,
        action="review.assign_reviewer", entity_type="review_level", entity_id=level,
        actor=actor,
        diff={"reviewer_id": {"old": previous.reviewer_id if previous else None, "new": reviewer_id}},
    )


def update_review(
    requirement_id: str,
    level: int,
    *,
    user_id: str,
    status: str | None = None,
    opinion: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Record a reviewer's decision and/or opinion on one level.

    Raises:
        NotFoundError:    requirement or level does not exist.
        PermissionDenied: *user_id* is not the level's assigned reviewer.
        ValidationError:  nothing to update, or a disallowed status change.
    """
    if status is None and opinion is None:
        raise ValidationError("Nothing to update: pass status and/or opinion")

    req = _load(requirement_id)
    before = req.to_snapshot()
    current = get_level(before.review_levels, level)
    if current is None:
        raise NotFoundError(resource="ReviewLevel", resource_id=level)
    reviewer = reviewer_for(before, level)
    if reviewer is None or reviewer != user_id:
        raise PermissionDenied(user_id, "review.update", level)

    after = before
    diff = {}
    if status is not None:
        new_status = mc.coerce_enum(ReviewStatus, "status", status)
        if not is_valid_review_transition(current.status, new_status):
            raise ValidationError(
                f"Cannot change review level {level} from '{current.status.value}' "
                f"to '{new_status.value}'",
                details={"from": current.status.value, "to": new_status.value},
            )
        after = mc.apply_review_edit(after, level, "status", new_status, now)
        diff["status"] = {"old": current.status.value, "new": new_status.value}
    if opinion is not None:
        after = mc.apply_review_edit(after, level, "opinion", opinion, now)
        diff["opinion"] = {"old": current.opinion, "new": opinion}

    return _commit(
        req, before, after,
        action="review.update", entity_type="review_level", entity_id=level,
        actor=user_id, diff=diff,
    )


def batch_update_review(
    requirement_ids: list[str],
    level: int,
    status: str,
    *,
    user_id: str,
    now: datetime | None = None,
) -> dict:
    """
    Apply the same review decision to many requirements. Partial success allowed.

    Returns:
        {"success": [...], "errors": [...]}
    """
    results = {"success": [], "errors": []}

    for req_id in requirement_ids:
        try:
            updated = update_review(req_id, level, user_id=user_id, status=status, now=now)
            results["success"].append({
                "requirement_id": req_id,
                "overall_review": updated["overall_review"],
            })
        except (NotFoundError, PermissionDenied, ValidationError) as e:
            db.session.rollback()
            results["errors"].append({
                "requirement_id": req_id,
                "error": str(e),
                "error_type": type(e).__name__,
            })

    logger.info(
        "Batch review update: %d ok, %d failed",
        len(results["success"]), len(results["errors"]),
        extra={"review_level": level, "actor": user_id},
    )
    return results


def assign_version(requirement_id: str, version: str, *, actor: str | None = None) -> dict:
    """
    Bind a requirement to a release version.

    Returns:
        {"accepted", "requirement_id", "planned_version", "overall_review", "reason"}
        A refused assignment has accepted=False and changes nothing.
    """
    version = (version or "").strip()
    if not version:
        raise ValidationError("version is required", details={"version": "required"})

    req = _load(requirement_id)
    before = req.to_snapshot()
    outcome = mc.apply_version_assignment(before, version)
    if not outcome.accepted:
        logger.info(
            "Version assignment refused",
            extra={"requirement_id": req.id, "overall_review": outcome.requirement.overall_review.value},
        )
        return outcome.to_dict()

    _commit(
        req, before, outcome.requirement,
        action="requirement.assign_version", entity_type="requirement", entity_id=req.id,
        actor=actor,
    )
    return outcome.to_dict()


def clear_version(requirement_id: str, *, actor: str | None = None) -> dict:
    req = _load(requirement_id)
    before = req.to_snapshot()
    outcome = mc.apply_version_assignment(before, None)
    return _commit(
        req, before, outcome.requirement,
        action="requirement.clear_version", entity_type="requirement", entity_id=req.id,
        actor=actor,
    )


def recompute_all(*, now: datetime | None = None, commit: bool = True) -> dict:
    """
    Re-derive every stored requirement from its leaf values.

    Delay status depends on the current time, so in-progress subtasks turn
    late without any edit; this refreshes the persisted derived columns.

    Returns:
        {"total": N, "changed": [requirement_id, ...]}
    """
    rows = db.session.execute(select(Requirement)).scalars().all()
    changed = []
    for req in rows:
        before = req.to_snapshot()
        after = mc.recompute(before, now)
        if after == before:
            continue
        changed.append(req.id)
        req.apply_snapshot(after)
        write_audit(
            requirement_id=req.id, entity_type="requirement", entity_id=req.id,
            action="requirement.recompute", diff=_derived_diff(before, after),
        )

    if commit:
        db.session.commit()
    else:
        db.session.rollback()
    logger.info("Recomputed requirements", extra={"count": len(changed)})
    return {"total": len(rows), "changed": changed}


def get_requirement_history(requirement_id: str) -> list[dict]:
    """Audit trail for a requirement, oldest first."""
    _load(requirement_id)
    rows = db.session.execute(
        select(AuditLog)
        .where(AuditLog.requirement_id == requirement_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    ).scalars().all()
    return [r.to_dict() for r in rows]
