# tests/test_lifecycle_engine.py — State machine guards, side effects and deletion rules
from datetime import timedelta

import pytest

from approval_chain import ApprovalRecord
from itsm_errors import HasDependents, IllegalTransition, InvalidState, TerminalState, Unauthorized
from lifecycle_engine import (
    LIFECYCLES, Actor, EntityKind, LifecycleEntity, Priority,
    check_deletable, create_entity, get_lifecycle, transition,
)

ALL_ROLES = ("administrator", "operator", "user")


def change(state="Requested", category="Standard", approvals=None, **kwargs):
    return LifecycleEntity(
        kind=EntityKind.CHANGE, state=state, id=7, title="Patch kernel",
        category=category, requested_by="user-1", approvals=list(approvals or []), **kwargs,
    )


def all_actions(lifecycle):
    return lifecycle.actions + ["teleport"]


class TestTransitionTable:
    @pytest.mark.parametrize("kind", list(EntityKind))
    def test_undefined_pairs_are_rejected(self, kind, admin_actor):
        lifecycle = LIFECYCLES[kind]
        for state in sorted(lifecycle.states - lifecycle.terminal_states):
            entity = LifecycleEntity(kind=kind, state=state, id=1, category="Other")
            for action in all_actions(lifecycle):
                if lifecycle.find(state, action) is not None:
                    continue
                with pytest.raises(IllegalTransition) as exc:
                    transition(entity, action, admin_actor)
                assert exc.value.current_state == state
                assert exc.value.action == action
                assert entity.state == state

    @pytest.mark.parametrize("kind", list(EntityKind))
    def test_terminal_states_admit_nothing(self, kind, admin_actor):
        lifecycle = LIFECYCLES[kind]
        for state in sorted(lifecycle.terminal_states):
            entity = LifecycleEntity(kind=kind, state=state, id=1)
            for action in all_actions(lifecycle):
                with pytest.raises(TerminalState):
                    transition(entity, action, admin_actor)

    @pytest.mark.parametrize("kind", list(EntityKind))
    def test_cancel_reachable_from_every_open_state(self, kind):
        lifecycle = LIFECYCLES[kind]
        for state in lifecycle.states - lifecycle.terminal_states:
            assert lifecycle.find(state, "cancel") is not None

    def test_duplicate_pairs_rejected_at_definition(self):
        from lifecycle_engine import Lifecycle, TransitionDef, STAFF
        with pytest.raises(ValueError):
            Lifecycle(
                kind=EntityKind.CHANGE,
                initial_state="A",
                states=frozenset({"A", "B", "C"}),
                terminal_states=frozenset({"C"}),
                active_states=frozenset(),
                transitions=(
                    TransitionDef("go", frozenset({"A"}), "B", STAFF),
                    TransitionDef("go", frozenset({"A"}), "C", STAFF),
                ),
            )

    def test_get_lifecycle_accepts_strings(self):
        assert get_lifecycle("service_request").initial_state == "Submitted"


class TestRoleGuards:
    def test_user_cannot_approve(self, user_actor):
        with pytest.raises(Unauthorized) as exc:
            transition(change(), "approve", user_actor)
        assert exc.value.actor_role == "user"
        assert exc.value.required_roles == ["administrator", "operator"]

    def test_guard_runs_before_mutation(self, user_actor):
        entity = change()
        with pytest.raises(Unauthorized):
            transition(entity, "approve", user_actor, approval_level="supervisor")
        assert entity.approvals == []
        assert entity.version == 1

    def test_release_approval_is_admin_only(self, operator_actor, admin_actor):
        release = LifecycleEntity(kind=EntityKind.RELEASE, state="PendingApproval", id=3, category="Information Request")
        with pytest.raises(Unauthorized):
            transition(release, "approve", operator_actor)
        result = transition(release, "approve", admin_actor, approval_level="supervisor")
        assert result.entity.state == "Approved"

    def test_requester_may_cancel_service_request(self, user_actor):
        request = LifecycleEntity(kind=EntityKind.SERVICE_REQUEST, state="Submitted", id=9)
        assert transition(request, "cancel", user_actor).entity.state == "Cancelled"

    def test_user_cannot_cancel_change(self, user_actor):
        with pytest.raises(Unauthorized):
            transition(change(), "cancel", user_actor)


class TestApprovals:
    def test_standard_change_with_recorded_approval(self, operator_actor, now):
        prior = ApprovalRecord("supervisor", "sup-1", now - timedelta(hours=1))
        result = transition(change(approvals=[prior]), "approve", operator_actor, now=now)
        assert result.entity.state == "Approved"
        assert result.approval.is_complete is True
        assert result.entity.approved_by == "op-1"
        assert result.entity.timestamps["approved"] == now

    def test_second_approve_is_illegal(self, operator_actor, now):
        prior = ApprovalRecord("supervisor", "sup-1", now)
        approved = transition(change(approvals=[prior]), "approve", operator_actor, now=now).entity
        with pytest.raises(IllegalTransition):
            transition(approved, "approve", operator_actor, now=now)

    def test_incomplete_chain_parks_in_pending(self, operator_actor, now):
        result = transition(change(category="Normal"), "approve", operator_actor, approval_level="supervisor", now=now)
        assert result.entity.state == "PendingApproval"
        assert result.approval.next_level == "change_manager"
        assert result.approval.progress == 0.5
        assert result.entity.approved_by is None
        assert "approved" not in result.entity.timestamps
        assert [a.level for a in result.entity.approvals] == ["supervisor"]

    def test_chain_completes_across_calls(self, operator_actor, admin_actor, now):
        first = transition(change(category="Normal"), "approve", operator_actor, approval_level="supervisor", now=now)
        second = transition(first.entity, "approve", admin_actor, approval_level="change_manager", now=now)
        assert second.entity.state == "Approved"
        assert second.entity.approved_by == "admin-1"
        assert second.entity.version == 3

    def test_out_of_order_level_rejected(self, operator_actor):
        with pytest.raises(IllegalTransition) as exc:
            transition(change(category="Normal"), "approve", operator_actor, approval_level="change_manager")
        assert "supervisor" in str(exc.value)

    def test_courtesy_level_kept_in_history(self, operator_actor, now):
        result = transition(change(category="Normal"), "approve", operator_actor, approval_level="cfo", now=now)
        assert result.entity.state == "PendingApproval"
        assert result.approval.progress == 0.0
        assert result.entity.approvals[0].level == "cfo"

    def test_approve_without_level_on_open_chain(self, operator_actor, now):
        request = create_entity(
            EntityKind.SERVICE_REQUEST, "VPN access", "user-1", category="Access Request", now=now,
        )
        pending = transition(request, "approve", operator_actor, approval_level="supervisor", now=now).entity
        with pytest.raises(IllegalTransition) as exc:
            transition(pending, "approve", operator_actor, now=now)
        assert exc.value.current_state == "PendingApproval"
        assert "security_manager" in str(exc.value)
        assert pending.version == 2
        assert [a.level for a in pending.approvals] == ["supervisor"]

    def test_reject_from_pending(self, admin_actor):
        result = transition(change(state="PendingApproval"), "reject", admin_actor)
        assert result.entity.state == "Rejected"

    def test_reject_and_cancel_stamp_closed(self, operator_actor, now):
        rejected = transition(change(), "reject", operator_actor, now=now).entity
        assert rejected.timestamps["closed"] == now
        cancelled = transition(change(state="Scheduled"), "cancel", operator_actor, now=now).entity
        assert cancelled.timestamps["closed"] == now
        assert "completed" not in cancelled.timestamps


class TestSideEffects:
    def test_input_snapshot_untouched(self, operator_actor, now):
        entity = change(category="Normal")
        transition(entity, "approve", operator_actor, approval_level="supervisor", now=now)
        assert entity.state == "Requested"
        assert entity.approvals == []
        assert entity.timestamps == {}

    def test_full_change_path(self, operator_actor, now):
        entity = change(state="Approved")
        started = transition(entity, "start", operator_actor, now=now).entity
        assert started.state == "InProgress"
        assert started.implemented_by == "op-1"
        assert started.timestamps["started_implementation"] == now

        later = now + timedelta(hours=3)
        done = transition(started, "complete", operator_actor, now=later).entity
        assert done.state == "Implemented"
        assert done.timestamps["completed"] == later
        assert done.timestamps["started_implementation"] == now

    def test_schedule_then_start(self, operator_actor):
        scheduled = transition(change(state="Approved"), "schedule", operator_actor).entity
        assert transition(scheduled, "start", operator_actor).entity.state == "InProgress"

    def test_start_requires_approval(self, operator_actor):
        with pytest.raises(IllegalTransition):
            transition(change(state="Requested"), "start", operator_actor)

    def test_timestamps_never_overwritten(self, operator_actor, now):
        problem = LifecycleEntity(kind=EntityKind.PROBLEM, state="InProgress", id=2, timestamps={"resolved": now})
        later = now + timedelta(days=1)
        result = transition(problem, "resolve", operator_actor, now=later)
        assert result.entity.timestamps["resolved"] == now

    def test_completed_only_in_terminal_states(self, admin_actor, now):
        for kind, lifecycle in LIFECYCLES.items():
            for t in lifecycle.transitions:
                if "completed" in t.stamps:
                    assert t.target in lifecycle.terminal_states, (kind, t.action)

    def test_audit_record(self, operator_actor, now):
        result = transition(change(state="Approved"), "start", operator_actor, now=now)
        audit = result.audit
        assert (audit.entity_id, audit.from_state, audit.to_state) == (7, "Approved", "InProgress")
        assert audit.actor_id == "op-1"
        assert audit.timestamp == now
        assert audit.to_dict()["entity_kind"] == "change"

    def test_deterministic(self, operator_actor, now):
        entity = change(category="Normal")
        a = transition(entity, "approve", operator_actor, approval_level="supervisor", now=now)
        b = transition(entity, "approve", operator_actor, approval_level="supervisor", now=now)
        assert a.entity == b.entity
        assert a.audit == b.audit


class TestCreate:
    def test_initial_states(self, now):
        assert create_entity("change", "c", "u1", now=now).state == "Requested"
        assert create_entity("problem", "p", "u1", now=now).state == "Logged"
        assert create_entity("release", "r", "u1", now=now).state == "Planning"

    def test_service_request_due_by(self, now):
        entity = create_entity(
            EntityKind.SERVICE_REQUEST, "New laptop", "u1",
            category="Access Request", priority=Priority.HIGH, now=now,
        )
        assert entity.state == "Submitted"
        assert entity.timestamps["requested"] == now
        assert entity.due_by == now + timedelta(hours=4)

    def test_change_has_no_due_by(self, now):
        assert create_entity("change", "c", "u1", now=now).due_by is None


class TestDeletionGuard:
    def test_in_progress_problem_without_links(self):
        problem = LifecycleEntity(kind=EntityKind.PROBLEM, state="InProgress", id=4)
        with pytest.raises(InvalidState) as exc:
            check_deletable(problem, 0)
        assert exc.value.dependency_count == 0

    def test_resolved_problem_not_deletable(self):
        problem = LifecycleEntity(kind=EntityKind.PROBLEM, state="Resolved", id=4)
        with pytest.raises(InvalidState):
            check_deletable(problem, 0)

    def test_terminal_not_deletable(self):
        with pytest.raises(InvalidState):
            check_deletable(change(state="Implemented"), 0)

    def test_linked_problem_has_dependents(self):
        problem = LifecycleEntity(kind=EntityKind.PROBLEM, state="Logged", id=4)
        with pytest.raises(HasDependents) as exc:
            check_deletable(problem, 2)
        assert exc.value.dependency_count == 2

    def test_open_change_deletable(self):
        assert check_deletable(change(), 0) is None


def test_actor_roles_cover_every_guard():
    for lifecycle in LIFECYCLES.values():
        for t in lifecycle.transitions:
            assert t.roles <= set(ALL_ROLES)
            assert t.roles


def test_actor_is_hashable():
    assert len({Actor("a", "user"), Actor("a", "user")}) == 1
