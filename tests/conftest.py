"""
Shared pytest fixtures for the Requirement Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - make_subtask / make_requirement: snapshot builders for engine tests
    - NOW: fixed reference time for delay calculations
"""

from datetime import datetime, timezone

import pytest

from reqtrack import create_app
from reqtrack.models import db as _db
from reqtrack.services.lifecycle_types import (
    Requirement,
    ReviewLevel,
    ReviewStatus,
    Subtask,
    SubtaskStatus,
)
from reqtrack.services.mutation_coordinator import recompute

NOW = datetime(2024, 4, 26, 12, 0, tzinfo=timezone.utc)

# Canonical name per phase, matching the default subtask template.
PHASE_NAMES = {
    "prototype": "Prototype design",
    "ui": "Visual design",
    "development": "Backend development",
    "testing": "Testing",
    "acceptance": "Product acceptance",
    "other": "Kick-off meeting",
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Snapshot builders ────────────────────────────────────────────────────


def _status(value):
    return value if isinstance(value, SubtaskStatus) else SubtaskStatus(value)


@pytest.fixture()
def make_subtask():
    """Build a Subtask snapshot; ``phase`` picks a canonical name."""
    counter = {"n": 0}

    def _make(phase="other", status="not-started", *, name=None, **fields):
        counter["n"] += 1
        return Subtask(
            id=fields.pop("id", f"st-{counter['n']}"),
            name=name or PHASE_NAMES[phase],
            status=_status(status),
            **fields,
        )

    return _make


@pytest.fixture()
def make_requirement(make_subtask):
    """Build a recomputed Requirement snapshot.

    ``pairs`` is a list of (phase, status); ``levels`` a list of
    (status, reviewer_id) per review level.
    """

    def _make(pairs=(), levels=(("pending", "rev-1"), ("pending", "rev-2")), **fields):
        subtasks = tuple(make_subtask(phase, status) for phase, status in pairs)
        review_levels = tuple(
            ReviewLevel(level=i, status=ReviewStatus(st), reviewer_id=rev)
            for i, (st, rev) in enumerate(levels, start=1)
        )
        req = Requirement(
            id=fields.pop("id", "req-1"),
            title=fields.pop("title", "Order export"),
            subtasks=subtasks,
            review_levels=review_levels,
            **fields,
        )
        return recompute(req, NOW)

    return _make
