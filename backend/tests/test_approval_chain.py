# tests/test_approval_chain.py — Approval levels, SLA targets and policy loading
from datetime import datetime, timedelta, timezone

import pytest

from approval_chain import (
    ApprovalRecord, clock_stopped_at, compute_due_by, next_step, out_of_order_reason,
    sla_target_hours, sla_tracking,
)
from lifecycle_engine import EntityKind, Priority, create_entity, transition
from policy_config import PolicyTables, default_policy, get_policy, load_policy, set_policy

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestNextStep:
    def test_first_level(self):
        step = next_step("Access Request", [])
        assert step.next_level == "supervisor"
        assert step.is_complete is False
        assert step.progress == 0.0

    def test_progress_and_completion(self):
        half = next_step("Access Request", ["supervisor"])
        assert half.next_level == "security_manager"
        assert half.progress == 0.5
        done = next_step("Access Request", ["supervisor", "security_manager"])
        assert done.is_complete is True
        assert done.next_level is None
        assert done.progress == 1.0

    def test_duplicates_and_extras_ignored(self):
        step = next_step("Access Request", ["supervisor", "supervisor", "cfo"])
        assert step.next_level == "security_manager"
        assert step.progress == 0.5

    def test_idempotent(self):
        approvals = [ApprovalRecord("supervisor", "u1", T0)]
        assert next_step("Normal", approvals) == next_step("Normal", approvals)

    def test_accepts_serialised_records(self):
        stored = [ApprovalRecord("supervisor", "u1", T0).to_dict()]
        assert next_step("Normal", stored).next_level == "change_manager"

    def test_unknown_category_falls_back_to_supervisor(self):
        step = next_step("Coffee Machine", [])
        assert step.required_levels == ("supervisor",)

    def test_empty_chain_is_complete(self):
        policy = PolicyTables.build({"Auto": []}, {})
        step = next_step("Auto", [], policy)
        assert step.is_complete is True
        assert step.progress == 1.0


class TestOutOfOrder:
    def test_skipping_a_level(self):
        reason = out_of_order_reason("Normal", [], "change_manager")
        assert "supervisor" in reason

    def test_next_level_allowed(self):
        assert out_of_order_reason("Normal", ["supervisor"], "change_manager") is None

    def test_repeat_and_courtesy_levels_allowed(self):
        assert out_of_order_reason("Normal", ["supervisor"], "supervisor") is None
        assert out_of_order_reason("Normal", [], "cfo") is None


class TestSLATargets:
    def test_lookup(self):
        assert sla_target_hours("Access Request", "High") == 4
        assert sla_target_hours("Training Request", "Low") == 672

    def test_critical_uses_high_row(self):
        assert sla_target_hours("Software Request", "Critical") == 8

    def test_unknown_category_uses_other_row(self):
        assert sla_target_hours("Coffee Machine", "Medium") == 72

    def test_missing_priority_defaults_to_medium(self):
        assert sla_target_hours("Access Request", None) == 8

    def test_compute_due_by(self):
        assert compute_due_by("Account Management", "High", T0) == T0 + timedelta(hours=2)


class TestSLATracking:
    def test_open_request_within_target(self):
        tracking = sla_tracking(T0, T0 + timedelta(hours=8), T0 + timedelta(hours=2))
        assert tracking.elapsed_hours == 2
        assert tracking.remaining_hours == 6
        assert tracking.progress == 0.25
        assert tracking.is_breached is False

    def test_breached_and_capped(self):
        tracking = sla_tracking(T0, T0 + timedelta(hours=4), T0 + timedelta(hours=10))
        assert tracking.is_breached is True
        assert tracking.remaining_hours == 0
        assert tracking.progress == 1.0

    def test_clock_stops_at_completion(self):
        tracking = sla_tracking(
            T0, T0 + timedelta(hours=4), T0 + timedelta(days=3),
            completed_at=T0 + timedelta(hours=3),
        )
        assert tracking.elapsed_hours == 3
        assert tracking.is_breached is False

    def test_rejected_request_stops_the_clock(self, operator_actor):
        request = create_entity(
            EntityKind.SERVICE_REQUEST, "VPN access", "user-1",
            category="Access Request", priority=Priority.HIGH, now=T0,
        )
        rejected = transition(request, "reject", operator_actor, now=T0 + timedelta(hours=1)).entity
        tracking = sla_tracking(
            rejected.timestamps["requested"], rejected.due_by, T0 + timedelta(days=10),
            completed_at=clock_stopped_at(rejected.timestamps),
        )
        assert tracking.elapsed_hours == 1
        assert tracking.is_breached is False
        assert tracking.remaining_hours == 3

    def test_earliest_closing_instant_wins(self):
        stamps = {"requested": T0, "closed": T0 + timedelta(hours=5), "completed": T0 + timedelta(hours=2)}
        assert clock_stopped_at(stamps) == T0 + timedelta(hours=2)
        assert clock_stopped_at({"requested": T0}) is None

    def test_naive_datetimes_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        tracking = sla_tracking(naive, T0 + timedelta(hours=4), T0 + timedelta(hours=1))
        assert tracking.elapsed_hours == 1
        assert tracking.to_dict()["sla_target_hours"] == 4


class TestPolicyLoading:
    def test_yaml_overlay(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            "approval_levels:\n"
            "  Access Request: [security_manager]\n"
            "  Lab Booking: [lab_lead]\n"
            "sla_hours:\n"
            "  Lab Booking: {High: 1, Medium: 2, Low: 3}\n"
            "default_sla_hours: 48\n"
        )
        policy = load_policy(str(path))
        assert policy.levels_for("Access Request") == ("security_manager",)
        assert policy.levels_for("Lab Booking") == ("lab_lead",)
        assert policy.levels_for("Hardware Request") == ("supervisor", "it_manager")
        assert sla_target_hours("Lab Booking", "Low", policy) == 3
        assert policy.default_sla_hours == 48
        assert policy.source == str(path)

    def test_duplicate_levels_rejected(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("approval_levels:\n  Other: [supervisor, supervisor]\n")
        with pytest.raises(ValueError):
            load_policy(str(path))

    def test_non_positive_hours_rejected(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("sla_hours:\n  Other: {High: 0}\n")
        with pytest.raises(ValueError):
            load_policy(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_policy(str(tmp_path / "absent.yaml"))

    def test_tables_are_read_only(self):
        policy = default_policy()
        with pytest.raises(TypeError):
            policy.approval_levels["Other"] = ("nobody",)

    def test_set_policy_replaces_process_tables(self):
        custom = PolicyTables.build({"Other": ["duty_manager"]}, {})
        set_policy(custom)
        assert get_policy() is custom
        assert next_step("Other", []).next_level == "duty_manager"
