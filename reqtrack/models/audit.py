"""
Requirement Tracker
Audit domain model.

Models:
    - AuditLog: immutable, append-only trail of committed requirement edits.
"""

import json
from datetime import UTC, datetime

from reqtrack.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"requirement", "subtask", "review_level"}

AUDIT_ACTIONS = {
    "requirement.create",
    "requirement.assign_version",
    "requirement.clear_version",
    "requirement.recompute",
    "subtask.add",
    "subtask.copy",
    "subtask.update",
    "subtask.delete",
    "review.assign_reviewer",
    "review.update",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every committed mutation.

    One row per action.  ``diff_json`` carries the old→new values of the
    edited field plus any derived field the edit changed.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_requirement", "requirement_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    requirement_id = db.Column(
        db.String(36), nullable=False,
        comment="Owning requirement (kept after the requirement is deleted)",
    )
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="requirement | subtask | review_level",
    )
    entity_id = db.Column(db.String(36), nullable=False)
    action = db.Column(
        db.String(60), nullable=False,
        comment="subtask.update | review.update | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requirement_id": self.requirement_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_audit(
    *,
    requirement_id: str,
    entity_type: str,
    entity_id: str | int,
    action: str,
    actor: str | None = None,
    diff: dict | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.
    """
    if action not in AUDIT_ACTIONS or entity_type not in AUDIT_ENTITY_TYPES:
        raise ValueError(f"Unknown audit action {action!r} on {entity_type!r}")
    log = AuditLog(
        requirement_id=requirement_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
