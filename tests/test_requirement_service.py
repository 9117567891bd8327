"""
Requirement Service Tests — store-backed operations:
  - create from the subtask template with pending review levels
  - subtask edits persist leaf + derived columns together
  - only the assigned reviewer may decide a level
  - batch review decisions with partial success
  - version assignment gated on the review outcome
  - recompute_all refreshes time-dependent delay status
  - audit history per requirement
"""

from datetime import datetime, timezone

import pytest

from reqtrack.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from reqtrack.services import requirement_service as svc

NOW = datetime(2024, 4, 26, 12, 0, tzinfo=timezone.utc)


def _create(**kw):
    kw.setdefault("reviewer_ids", {1: "alice", 2: "bob"})
    kw.setdefault("now", NOW)
    return svc.create_requirement(kw.pop("title", "Order export"), **kw)


def _approve_all(req):
    svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)
    return svc.update_review(req["id"], 2, user_id="bob", status="approved", now=NOW)


# ═════════════════════════════════════════════════════════════════════════════
# Create / read
# ═════════════════════════════════════════════════════════════════════════════


class TestCreateRequirement:

    def test_template_subtasks(self):
        req = _create()
        assert [s["name"] for s in req["subtasks"]] == [
            "Prototype design", "Visual design", "Frontend development",
            "Backend development", "Testing", "Product acceptance",
        ]
        assert [s["phase"] for s in req["subtasks"]] == [
            "prototype", "ui", "development", "development", "testing", "acceptance",
        ]
        assert {s["kind"] for s in req["subtasks"]} == {"predefined"}
        assert [s["position"] for s in req["subtasks"]] == list(range(6))

    def test_initial_derived_state(self):
        req = _create()
        assert req["aggregate_status"] == "awaiting-prototype"
        assert req["overall_review"] == "pending"
        assert req["planned_version"] is None
        assert req["overall_review_label"] == "Awaiting level-1 review"
        assert [(lv["level"], lv["reviewer_id"], lv["status"]) for lv in req["review_levels"]] == [
            (1, "alice", "pending"),
            (2, "bob", "pending"),
        ]

    def test_custom_subtasks_and_single_level(self):
        req = _create(subtask_names=["Testing"], review_levels=1, reviewer_ids={1: "alice"})
        assert len(req["subtasks"]) == 1
        assert req["aggregate_status"] == "awaiting-testing"
        assert len(req["review_levels"]) == 1

    def test_no_subtasks(self):
        req = _create(subtask_names=[])
        assert req["subtasks"] == []
        assert req["aggregate_status"] == "awaiting-prototype"

    @pytest.mark.parametrize("title", ["", "   ", None])
    def test_title_required(self, title):
        with pytest.raises(ValidationError):
            svc.create_requirement(title)

    def test_invalid_priority(self):
        with pytest.raises(ValidationError):
            _create(priority="critical")

    def test_invalid_review_level_count(self):
        with pytest.raises(ValidationError):
            _create(review_levels=3)

    def test_get_missing(self):
        with pytest.raises(NotFoundError):
            svc.get_requirement("no-such-id")


class TestListRequirements:

    def test_filter_by_derived_status(self):
        first = _create(title="Order export")
        _create(title="Invoice search")
        svc.update_subtask(first["id"], first["subtasks"][0]["id"], "status", "in-progress", now=NOW)

        active = svc.list_requirements(aggregate_status="prototype-in-progress")
        assert [r["title"] for r in active] == ["Order export"]
        assert "subtasks" not in active[0]
        assert len(svc.list_requirements(overall_review="pending")) == 2


# ═════════════════════════════════════════════════════════════════════════════
# Subtask edits
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdateSubtask:

    def test_status_edit_persists_aggregate(self):
        req = _create()
        proto_id = req["subtasks"][0]["id"]
        svc.update_subtask(req["id"], proto_id, "status", "completed", now=NOW)

        stored = svc.get_requirement(req["id"])
        assert stored["subtasks"][0]["status"] == "completed"
        assert stored["aggregate_status"] == "awaiting-ui"

    def test_timestamps_persist_metrics(self):
        req = _create()
        sid = req["subtasks"][3]["id"]
        for field, value in [
            ("status", "completed"),
            ("estimated_start", "2024-04-22T09:00"),
            ("estimated_end", "2024-04-25T18:00"),
            ("actual_start", "2024-04-23T10:15"),
            ("actual_end", "2024-04-28T17:30"),
        ]:
            svc.update_subtask(req["id"], sid, field, value, now=NOW)

        st = svc.get_requirement(req["id"])["subtasks"][3]
        assert st["estimated_duration"] == 81
        assert st["actual_duration"] == 128
        assert st["delay_status"] == "late"
        assert st["estimated_end"].startswith("2024-04-25T18:00")

    def test_rename_updates_stored_phase(self):
        req = _create()
        sid = req["subtasks"][0]["id"]
        updated = svc.update_subtask(req["id"], sid, "name", "Kick-off meeting", now=NOW)
        assert updated["subtasks"][0]["phase"] == "other"

    def test_not_editable_field(self):
        req = _create()
        with pytest.raises(ValidationError):
            svc.update_subtask(req["id"], req["subtasks"][0]["id"], "delay_status", "late")

    def test_unknown_subtask(self):
        req = _create()
        with pytest.raises(NotFoundError):
            svc.update_subtask(req["id"], "missing", "status", "completed")


class TestSubtaskStructure:

    def test_add_after(self):
        req = _create()
        first_id = req["subtasks"][0]["id"]
        updated = svc.add_subtask(req["id"], "Security review", after_id=first_id, actor="alice", now=NOW)
        names = [s["name"] for s in updated["subtasks"]]
        assert len(names) == 7
        assert names[1] == "Security review"
        assert updated["subtasks"][1]["kind"] == "custom"

    def test_add_with_fields(self):
        req = _create(subtask_names=[])
        updated = svc.add_subtask(req["id"], "Testing", status="in-progress", now=NOW)
        assert updated["aggregate_status"] == "testing-in-progress"

    def test_copy(self):
        req = _create()
        updated = svc.copy_subtask(req["id"], req["subtasks"][4]["id"], now=NOW)
        copy = updated["subtasks"][5]
        assert copy["name"] == "Testing (copy)"
        assert copy["kind"] == "custom"
        assert copy["id"] != req["subtasks"][4]["id"]
        assert len(updated["subtasks"]) == 7

    def test_delete(self):
        req = _create(subtask_names=["Prototype design", "Visual design"])
        svc.update_subtask(req["id"], req["subtasks"][0]["id"], "status", "completed", now=NOW)
        updated = svc.delete_subtask(req["id"], req["subtasks"][1]["id"])
        assert [s["name"] for s in updated["subtasks"]] == ["Prototype design"]
        assert updated["aggregate_status"] == "completed"


# ═════════════════════════════════════════════════════════════════════════════
# Review gate
# ═════════════════════════════════════════════════════════════════════════════


class TestUpdateReview:

    def test_assigned_reviewer_can_approve(self):
        req = _create()
        updated = svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)
        assert updated["overall_review"] == "awaiting-level-2"
        assert updated["review_levels"][0]["reviewed_at"].startswith("2024-04-26T12:00")

    def test_level_two_rejection_wins(self):
        req = _create()
        svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)
        updated = svc.update_review(req["id"], 2, user_id="bob", status="rejected",
                                    opinion="Out of scope for Q2", now=NOW)
        assert updated["overall_review"] == "rejected"
        assert updated["review_levels"][1]["opinion"] == "Out of scope for Q2"

    def test_other_user_is_denied(self):
        req = _create()
        with pytest.raises(PermissionDenied):
            svc.update_review(req["id"], 1, user_id="bob", status="approved")
        assert svc.get_requirement(req["id"])["review_levels"][0]["status"] == "pending"

    def test_unassigned_level_is_locked(self):
        req = _create(review_levels=1, reviewer_ids={})
        with pytest.raises(PermissionDenied):
            svc.update_review(req["id"], 1, user_id="alice", status="approved")

        svc.assign_reviewer(req["id"], 1, "carol", actor="admin")
        updated = svc.update_review(req["id"], 1, user_id="carol", status="approved", now=NOW)
        assert updated["review_levels"][0]["status"] == "approved"
        assert updated["overall_review"] == "awaiting-level-2"

    def test_disallowed_transition(self):
        req = _create()
        svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)
        with pytest.raises(ValidationError):
            svc.update_review(req["id"], 1, user_id="alice", status="pending")

    def test_rejected_can_be_reopened(self):
        req = _create()
        svc.update_review(req["id"], 1, user_id="alice", status="rejected", now=NOW)
        updated = svc.update_review(req["id"], 1, user_id="alice", status="pending", now=NOW)
        assert updated["overall_review"] == "pending"

    def test_opinion_only(self):
        req = _create()
        updated = svc.update_review(req["id"], 1, user_id="alice", opinion="Needs estimates")
        assert updated["review_levels"][0]["opinion"] == "Needs estimates"
        assert updated["review_levels"][0]["reviewed_at"] is None

    def test_nothing_to_update(self):
        req = _create()
        with pytest.raises(ValidationError):
            svc.update_review(req["id"], 1, user_id="alice")

    def test_missing_level(self):
        req = _create(review_levels=1, reviewer_ids={1: "alice"})
        with pytest.raises(NotFoundError):
            svc.update_review(req["id"], 2, user_id="bob", status="approved")

    def test_invalid_status_value(self):
        req = _create()
        with pytest.raises(ValidationError):
            svc.update_review(req["id"], 1, user_id="alice", status="ok")


class TestBatchUpdateReview:

    def test_partial_success(self):
        mine_a = _create(title="Order export")
        mine_b = _create(title="Invoice search")
        theirs = _create(title="Audit dashboard", reviewer_ids={1: "dave", 2: "bob"})

        result = svc.batch_update_review(
            [mine_a["id"], mine_b["id"], theirs["id"], "missing"],
            1, "approved", user_id="alice", now=NOW,
        )
        assert [r["requirement_id"] for r in result["success"]] == [mine_a["id"], mine_b["id"]]
        assert {r["overall_review"] for r in result["success"]} == {"awaiting-level-2"}
        assert [e["error_type"] for e in result["errors"]] == ["PermissionDenied", "NotFoundError"]
        assert svc.get_requirement(theirs["id"])["overall_review"] == "pending"


# ═════════════════════════════════════════════════════════════════════════════
# Version assignment
# ═════════════════════════════════════════════════════════════════════════════


class TestAssignVersion:

    def test_refused_before_approval(self):
        req = _create()
        svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)
        history_before = len(svc.get_requirement_history(req["id"]))

        outcome = svc.assign_version(req["id"], "v2.4")
        assert outcome["accepted"] is False
        assert outcome["overall_review"] == "awaiting-level-2"
        assert outcome["reason"]
        assert svc.get_requirement(req["id"])["planned_version"] is None
        assert len(svc.get_requirement_history(req["id"])) == history_before

    def test_accepted_after_approval(self):
        req = _create()
        _approve_all(req)
        outcome = svc.assign_version(req["id"], "v2.4", actor="pm")
        assert outcome["accepted"] is True
        assert svc.get_requirement(req["id"])["planned_version"] == "v2.4"

    def test_refused_without_levels(self):
        req = _create(review_levels=0, reviewer_ids={})
        assert svc.assign_version(req["id"], "v2.4")["accepted"] is False

    def test_refused_with_single_approved_level(self):
        req = _create(review_levels=1, reviewer_ids={1: "alice"})
        svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)

        outcome = svc.assign_version(req["id"], "v2.4")
        assert outcome["accepted"] is False
        assert outcome["overall_review"] == "awaiting-level-2"
        assert svc.get_requirement(req["id"])["planned_version"] is None

    def test_version_required(self):
        req = _create()
        with pytest.raises(ValidationError):
            svc.assign_version(req["id"], "  ")

    def test_later_rejection_clears_version(self):
        req = _create()
        _approve_all(req)
        svc.assign_version(req["id"], "v2.4")

        updated = svc.update_review(req["id"], 2, user_id="bob", status="rejected", now=NOW)
        assert updated["overall_review"] == "rejected"
        assert updated["planned_version"] is None

        history = svc.get_requirement_history(req["id"])
        assert history[-1]["diff"]["planned_version"] == {"old": "v2.4", "new": None}

    def test_clear_version(self):
        req = _create()
        _approve_all(req)
        svc.assign_version(req["id"], "v2.4")
        cleared = svc.clear_version(req["id"], actor="pm")
        assert cleared["planned_version"] is None


# ═════════════════════════════════════════════════════════════════════════════
# Recompute + history
# ═════════════════════════════════════════════════════════════════════════════


class TestRecomputeAll:

    def _in_progress_with_deadline(self):
        req = _create()
        sid = req["subtasks"][0]["id"]
        svc.update_subtask(req["id"], sid, "status", "in-progress", now=NOW)
        svc.update_subtask(req["id"], sid, "estimated_end", "2024-04-27T09:00", now=NOW)
        return req

    def test_deadline_passing_turns_late(self):
        req = self._in_progress_with_deadline()
        assert svc.get_requirement(req["id"])["subtasks"][0]["delay_status"] == "unknown"

        later = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        result = svc.recompute_all(now=later)
        assert result == {"total": 1, "changed": [req["id"]]}
        assert svc.get_requirement(req["id"])["subtasks"][0]["delay_status"] == "late"

        assert svc.recompute_all(now=later)["changed"] == []

    def test_dry_run_changes_nothing(self):
        req = self._in_progress_with_deadline()
        later = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
        result = svc.recompute_all(now=later, commit=False)
        assert result["changed"] == [req["id"]]
        assert svc.get_requirement(req["id"])["subtasks"][0]["delay_status"] == "unknown"


class TestHistory:

    def test_actions_in_order(self):
        req = _create(created_by="pm")
        svc.update_subtask(req["id"], req["subtasks"][0]["id"], "status", "in-progress",
                           actor="dev-1", now=NOW)
        svc.update_review(req["id"], 1, user_id="alice", status="approved", now=NOW)

        history = svc.get_requirement_history(req["id"])
        assert [h["action"] for h in history] == [
            "requirement.create", "subtask.update", "review.update",
        ]
        assert [h["actor"] for h in history] == ["pm", "dev-1", "alice"]

        edit = history[1]["diff"]
        assert edit["status"] == {"old": "not-started", "new": "in-progress"}
        assert edit["aggregate_status"] == {
            "old": "awaiting-prototype", "new": "prototype-in-progress",
        }
        assert history[2]["diff"]["overall_review"] == {"old": "pending", "new": "awaiting-level-2"}

    def test_missing_requirement(self):
        with pytest.raises(NotFoundError):
            svc.get_requirement_history("nope")
