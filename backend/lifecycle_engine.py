"""
ITSM — Lifecycle State Machine

One engine drives every request-like record (changes, problems, releases,
service requests). Each kind contributes only data: its states, its
transition table with role guards, and the timestamps/fields each transition
stamps. `transition` validates, consults the approval chain where a
transition requires sign-off, and returns the new snapshot together with an
audit record. Persisting either is the caller's job.

Callers must serialise transitions per entity (row lock or version check);
the store rejects a stale version with `Conflict`.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple
import logging

from approval_chain import ApprovalRecord, ApprovalStep, compute_due_by, next_step, out_of_order_reason
from itsm_errors import IllegalTransition, InvalidState, HasDependents, TerminalState, Unauthorized
from policy_config import PolicyTables

logger = logging.getLogger("itsm.lifecycle")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    CHANGE = "change"
    PROBLEM = "problem"
    RELEASE = "release"
    SERVICE_REQUEST = "service_request"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return {"Low": 1, "Medium": 2, "High": 3, "Critical": 4}[self.value]


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    OPERATOR = "operator"
    USER = "user"


ADMIN_ONLY = frozenset({Role.ADMINISTRATOR.value})
STAFF = frozenset({Role.ADMINISTRATOR.value, Role.OPERATOR.value})
ANYONE = frozenset(r.value for r in Role)


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str


@dataclass(frozen=True)
class TransitionDef:
    action: str
    sources: FrozenSet[str]
    target: str
    roles: FrozenSet[str]
    stamps: Tuple[str, ...] = ()
    assigns: Tuple[str, ...] = ()
    # Transitions that need sign-off land on `pending_target` until the chain completes
    requires_approval: bool = False
    pending_target: Optional[str] = None


@dataclass(frozen=True)
class Lifecycle:
    kind: EntityKind
    initial_state: str
    states: FrozenSet[str]
    terminal_states: FrozenSet[str]
    active_states: FrozenSet[str]
    transitions: Tuple[TransitionDef, ...]
    protected_states: FrozenSet[str] = frozenset()

    def __post_init__(self):
        seen = set()
        for t in self.transitions:
            unknown = (t.sources | {t.target}) - self.states
            if unknown:
                raise ValueError(f"{self.kind.value}: '{t.action}' references unknown states {sorted(unknown)}")
            if t.sources & self.terminal_states:
                raise ValueError(f"{self.kind.value}: '{t.action}' leaves a terminal state")
            for source in t.sources:
                if (source, t.action) in seen:
                    raise ValueError(f"{self.kind.value}: ({source}, {t.action}) defined twice")
                seen.add((source, t.action))

    def find(self, state: str, action: str) -> Optional[TransitionDef]:
        for t in self.transitions:
            if t.action == action and state in t.sources:
                return t
        return None

    @property
    def actions(self) -> List[str]:
        return sorted({t.action for t in self.transitions})

    def available_actions(self, state: str) -> List[str]:
        return sorted(t.action for t in self.transitions if state in t.sources)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states

    def is_deletable(self, state: str) -> bool:
        return state not in (self.terminal_states | self.active_states | self.protected_states)


def _cancel(states: FrozenSet[str], terminal: FrozenSet[str], roles: FrozenSet[str] = STAFF) -> TransitionDef:
    return TransitionDef("cancel", states - terminal, "Cancelled", roles, stamps=("closed",))


# ============================================================
# PER-KIND VOCABULARIES
# ============================================================

_CHANGE_STATES = frozenset({
    "Requested", "PendingApproval", "Approved", "Scheduled", "InProgress",
    "Implemented", "Failed", "Rejected", "Cancelled",
})
_CHANGE_TERMINAL = frozenset({"Implemented", "Failed", "Rejected", "Cancelled"})

CHANGE_LIFECYCLE = Lifecycle(
    kind=EntityKind.CHANGE,
    initial_state="Requested",
    states=_CHANGE_STATES,
    terminal_states=_CHANGE_TERMINAL,
    active_states=frozenset({"InProgress"}),
    transitions=(
        TransitionDef("submit", frozenset({"Requested"}), "PendingApproval", ANYONE),
        TransitionDef(
            "approve", frozenset({"Requested", "PendingApproval"}), "Approved", STAFF,
            stamps=("approved",), assigns=("approved_by",),
            requires_approval=True, pending_target="PendingApproval",
        ),
        TransitionDef("reject", frozenset({"Requested", "PendingApproval"}), "Rejected", STAFF, stamps=("closed",)),
        TransitionDef("schedule", frozenset({"Approved"}), "Scheduled", STAFF),
        TransitionDef(
            "start", frozenset({"Approved", "Scheduled"}), "InProgress", STAFF,
            stamps=("started_implementation",), assigns=("implemented_by",),
        ),
        TransitionDef("complete", frozenset({"InProgress"}), "Implemented", STAFF, stamps=("completed",)),
        TransitionDef("fail", frozenset({"InProgress"}), "Failed", STAFF, stamps=("completed",)),
        _cancel(_CHANGE_STATES, _CHANGE_TERMINAL),
    ),
)

_PROBLEM_STATES = frozenset({"Logged", "InProgress", "KnownError", "Resolved", "Closed", "Cancelled"})
_PROBLEM_TERMINAL = frozenset({"Closed", "Cancelled"})

PROBLEM_LIFECYCLE = Lifecycle(
    kind=EntityKind.PROBLEM,
    initial_state="Logged",
    states=_PROBLEM_STATES,
    terminal_states=_PROBLEM_TERMINAL,
    active_states=frozenset({"InProgress", "KnownError"}),
    protected_states=frozenset({"Resolved"}),
    transitions=(
        TransitionDef(
            "acknowledge", frozenset({"Logged"}), "InProgress", STAFF,
            stamps=("acknowledged",), assigns=("implemented_by",),
        ),
        TransitionDef("identify_root_cause", frozenset({"InProgress"}), "KnownError", STAFF, stamps=("known_error",)),
        TransitionDef("resolve", frozenset({"InProgress", "KnownError"}), "Resolved", STAFF, stamps=("resolved",)),
        TransitionDef("close", frozenset({"Resolved"}), "Closed", STAFF, stamps=("completed",)),
        _cancel(_PROBLEM_STATES, _PROBLEM_TERMINAL),
    ),
)

_RELEASE_STATES = frozenset({
    "Planning", "PendingApproval", "Approved", "Building", "Testing", "Deployed",
    "RolledBack", "Failed", "Rejected", "Cancelled", "Closed",
})
_RELEASE_TERMINAL = frozenset({"RolledBack", "Failed", "Rejected", "Cancelled", "Closed"})

RELEASE_LIFECYCLE = Lifecycle(
    kind=EntityKind.RELEASE,
    initial_state="Planning",
    states=_RELEASE_STATES,
    terminal_states=_RELEASE_TERMINAL,
    active_states=frozenset({"Building", "Testing"}),
    protected_states=frozenset({"Deployed"}),
    transitions=(
        TransitionDef("submit", frozenset({"Planning"}), "PendingApproval", STAFF),
        TransitionDef(
            "approve", frozenset({"Planning", "PendingApproval"}), "Approved", ADMIN_ONLY,
            stamps=("approved",), assigns=("approved_by",),
            requires_approval=True, pending_target="PendingApproval",
        ),
        TransitionDef("reject", frozenset({"Planning", "PendingApproval"}), "Rejected", ADMIN_ONLY, stamps=("closed",)),
        TransitionDef(
            "build", frozenset({"Approved"}), "Building", STAFF,
            stamps=("started_implementation",), assigns=("implemented_by",),
        ),
        TransitionDef("test", frozenset({"Building"}), "Testing", STAFF),
        TransitionDef("deploy", frozenset({"Testing"}), "Deployed", STAFF, stamps=("deployed",)),
        TransitionDef("fail", frozenset({"Building", "Testing"}), "Failed", STAFF, stamps=("completed",)),
        TransitionDef("roll_back", frozenset({"Deployed"}), "RolledBack", STAFF, stamps=("completed",)),
        TransitionDef("close", frozenset({"Deployed"}), "Closed", STAFF, stamps=("completed",)),
        _cancel(_RELEASE_STATES, _RELEASE_TERMINAL),
    ),
)

_REQUEST_STATES = frozenset({
    "Submitted", "PendingApproval", "Approved", "InProgress", "Fulfilled", "Rejected", "Cancelled",
})
_REQUEST_TERMINAL = frozenset({"Fulfilled", "Rejected", "Cancelled"})

SERVICE_REQUEST_LIFECYCLE = Lifecycle(
    kind=EntityKind.SERVICE_REQUEST,
    initial_state="Submitted",
    states=_REQUEST_STATES,
    terminal_states=_REQUEST_TERMINAL,
    active_states=frozenset({"InProgress"}),
    transitions=(
        TransitionDef(
            "approve", frozenset({"Submitted", "PendingApproval"}), "Approved", STAFF,
            stamps=("approved",), assigns=("approved_by",),
            requires_approval=True, pending_target="PendingApproval",
        ),
        TransitionDef("reject", frozenset({"Submitted", "PendingApproval"}), "Rejected", STAFF, stamps=("closed",)),
        TransitionDef(
            "start", frozenset({"Approved"}), "InProgress", STAFF,
            stamps=("started_implementation",), assigns=("implemented_by",),
        ),
        TransitionDef("fulfill", frozenset({"InProgress"}), "Fulfilled", STAFF, stamps=("completed",)),
        # requesters may withdraw their own request
        _cancel(_REQUEST_STATES, _REQUEST_TERMINAL, roles=ANYONE),
    ),
)

LIFECYCLES: Dict[EntityKind, Lifecycle] = {
    EntityKind.CHANGE: CHANGE_LIFECYCLE,
    EntityKind.PROBLEM: PROBLEM_LIFECYCLE,
    EntityKind.RELEASE: RELEASE_LIFECYCLE,
    EntityKind.SERVICE_REQUEST: SERVICE_REQUEST_LIFECYCLE,
}


def get_lifecycle(kind) -> Lifecycle:
    return LIFECYCLES[EntityKind(kind)]


# ============================================================
# ENTITY SNAPSHOT & AUDIT
# ============================================================

@dataclass
class LifecycleEntity:
    kind: EntityKind
    state: str
    id: Optional[int] = None
    title: str = ""
    description: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    category: Optional[str] = None
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    implemented_by: Optional[str] = None
    timestamps: Dict[str, datetime] = field(default_factory=dict)
    approvals: List[ApprovalRecord] = field(default_factory=list)
    due_by: Optional[datetime] = None
    version: int = 1

    def snapshot(self) -> "LifecycleEntity":
        return replace(self, timestamps=dict(self.timestamps), approvals=list(self.approvals))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "state": self.state,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "category": self.category,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "implemented_by": self.implemented_by,
            "timestamps": {k: v.isoformat() for k, v in self.timestamps.items()},
            "approvals": [a.to_dict() for a in self.approvals],
            "due_by": self.due_by.isoformat() if self.due_by else None,
            "version": self.version,
        }


@dataclass(frozen=True)
class AuditRecord:
    entity_id: Optional[int]
    entity_kind: EntityKind
    action: str
    from_state: str
    to_state: str
    actor_id: str
    actor_role: str
    timestamp: datetime
    approval_level: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "entity_kind": self.entity_kind.value,
            "action": self.action,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "timestamp": self.timestamp.isoformat(),
            "approval_level": self.approval_level,
        }


@dataclass(frozen=True)
class TransitionResult:
    entity: LifecycleEntity
    audit: AuditRecord
    approval: Optional[ApprovalStep] = None


# ============================================================
# OPERATIONS
# ============================================================

def create_entity(
    kind,
    title: str,
    requested_by: str,
    category: Optional[str] = None,
    priority: Priority = Priority.MEDIUM,
    description: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[PolicyTables] = None,
) -> LifecycleEntity:
    """New record in the kind's initial state; service requests get an SLA due-by"""
    lifecycle = get_lifecycle(kind)
    now = now or utcnow()
    priority = Priority(priority)
    entity = LifecycleEntity(
        kind=lifecycle.kind,
        state=lifecycle.initial_state,
        title=title,
        description=description,
        priority=priority,
        category=category,
        requested_by=requested_by,
        timestamps={"requested": now},
    )
    if lifecycle.kind == EntityKind.SERVICE_REQUEST:
        entity.due_by = compute_due_by(category, priority.value, now, policy)
    return entity


def transition(
    entity: LifecycleEntity,
    action: str,
    actor: Actor,
    approval_level: Optional[str] = None,
    now: Optional[datetime] = None,
    policy: Optional[PolicyTables] = None,
) -> TransitionResult:
    """Apply `action` to a snapshot of `entity`; the input is never mutated"""
    lifecycle = get_lifecycle(entity.kind)

    if lifecycle.is_terminal(entity.state):
        raise TerminalState(entity.state, action)

    definition = lifecycle.find(entity.state, action)
    if definition is None:
        raise IllegalTransition(entity.state, action)

    if actor.role not in definition.roles:
        raise Unauthorized(sorted(definition.roles), actor.role, action)

    now = now or utcnow()
    updated = entity.snapshot()
    target = definition.target
    step: Optional[ApprovalStep] = None

    if definition.requires_approval:
        if approval_level:
            reason = out_of_order_reason(entity.category, updated.approvals, approval_level, policy)
            if reason:
                raise IllegalTransition(entity.state, action, reason)
            updated.approvals.append(ApprovalRecord(approval_level, actor.actor_id, now))
        step = next_step(entity.category, updated.approvals, policy)
        if not step.is_complete and not approval_level:
            raise IllegalTransition(entity.state, action, f"approval level '{step.next_level}' required")
        if not step.is_complete:
            target = definition.pending_target

    if target == definition.target:
        for name in definition.stamps:
            updated.timestamps.setdefault(name, now)
        for attr in definition.assigns:
            setattr(updated, attr, actor.actor_id)

    updated.state = target
    updated.version = entity.version + 1

    audit = AuditRecord(
        entity_id=entity.id,
        entity_kind=entity.kind,
        action=action,
        from_state=entity.state,
        to_state=target,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        timestamp=now,
        approval_level=approval_level,
    )
    logger.debug("%s %s: %s -[%s]-> %s by %s", entity.kind.value, entity.id, entity.state, action, target, actor.actor_id)
    return TransitionResult(entity=updated, audit=audit, approval=step)


def check_deletable(entity: LifecycleEntity, dependency_count: int = 0) -> None:
    """Deletion guard: non-terminal, not under way, and nothing depending on it"""
    lifecycle = get_lifecycle(entity.kind)
    if not lifecycle.is_deletable(entity.state):
        raise InvalidState(entity.state, dependency_count)
    if dependency_count > 0:
        raise HasDependents(dependency_count)
