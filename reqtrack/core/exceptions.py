"""
Platform-wide exception hierarchy.

Services raise these types; the hosting layer maps them once to whatever
its surface needs.  The lifecycle engine itself never raises on degraded
data (missing timestamps, unmatched names, absent reviewers).  It only
raises here when the caller breaks the contract: an unknown subtask id, a
field that is not editable, or a value that cannot be coerced.

Usage:
    from reqtrack.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Subtask", resource_id="st-1")
    raise ValidationError("Unknown subtask field", details={"field": "phase"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Requirement", "Subtask").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class PermissionDenied(Exception):
    """Raised when a user edits a review level they are not assigned to."""

    def __init__(self, user_id: str | None, action: str, level: int | None = None):
        level_msg = f" on review level {level}" if level is not None else ""
        super().__init__(
            f"User {user_id} does not have permission for '{action}'{level_msg}"
        )
        self.user_id = user_id
        self.action = action
        self.level = level
