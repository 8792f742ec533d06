"""
ITSM — Approval Chain Resolver

Determines the next approval level a request needs from its category policy,
and derives SLA due dates and tracking figures for service requests.
Pure functions over immutable policy tables; no I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Set, Tuple

from policy_config import PolicyTables, get_policy


@dataclass(frozen=True)
class ApprovalRecord:
    level: str
    approver_id: str
    decided_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "approver_id": self.approver_id,
            "decided_at": self.decided_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ApprovalRecord":
        decided_at = data["decided_at"]
        if isinstance(decided_at, str):
            decided_at = datetime.fromisoformat(decided_at)
        return ApprovalRecord(level=data["level"], approver_id=str(data["approver_id"]), decided_at=decided_at)


@dataclass(frozen=True)
class ApprovalStep:
    next_level: Optional[str]
    is_complete: bool
    progress: float
    required_levels: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "next_level": self.next_level,
            "is_complete": self.is_complete,
            "progress": self.progress,
            "required_levels": list(self.required_levels),
        }


def _approved_levels(approvals: Iterable[Any]) -> Set[str]:
    levels = set()
    for approval in approvals:
        if isinstance(approval, str):
            levels.add(approval)
        elif isinstance(approval, dict):
            levels.add(approval["level"])
        else:
            levels.add(approval.level)
    return levels


def next_step(
    category: Optional[str],
    approvals_so_far: Iterable[Any],
    policy: Optional[PolicyTables] = None,
) -> ApprovalStep:
    """First policy level not yet approved, completion flag and progress.

    Approvals for levels outside the policy do not count towards progress,
    and duplicate approvals of one level count once.
    """
    policy = policy or get_policy()
    required = policy.levels_for(category)
    approved = _approved_levels(approvals_so_far)

    if not required:
        return ApprovalStep(next_level=None, is_complete=True, progress=1.0, required_levels=required)

    satisfied = sum(1 for level in required if level in approved)
    progress = min(1.0, max(0.0, satisfied / len(required)))
    for level in required:
        if level not in approved:
            return ApprovalStep(
                next_level=level, is_complete=False,
                progress=round(progress, 4), required_levels=required,
            )
    return ApprovalStep(next_level=None, is_complete=True, progress=1.0, required_levels=required)


def out_of_order_reason(
    category: Optional[str],
    approvals_so_far: Iterable[Any],
    level: str,
    policy: Optional[PolicyTables] = None,
) -> Optional[str]:
    """Why approving `level` now would skip a policy level, or None if allowed"""
    policy = policy or get_policy()
    approvals = list(approvals_so_far)
    if level not in policy.levels_for(category):
        return None
    if level in _approved_levels(approvals):
        return None
    step = next_step(category, approvals, policy)
    if step.next_level != level:
        return f"level '{level}' cannot be approved before '{step.next_level}'"
    return None


# ============================================================
# SLA TARGETS
# ============================================================

def sla_target_hours(
    category: Optional[str],
    priority: Optional[str],
    policy: Optional[PolicyTables] = None,
) -> float:
    policy = policy or get_policy()
    row = policy.sla_row(category)
    priority = priority or "Medium"
    if priority in row:
        return row[priority]
    if priority == "Critical" and "High" in row:
        return row["High"]
    return policy.default_sla_hours


def compute_due_by(
    category: Optional[str],
    priority: Optional[str],
    requested_at: datetime,
    policy: Optional[PolicyTables] = None,
) -> datetime:
    return requested_at + timedelta(hours=sla_target_hours(category, priority, policy))


@dataclass(frozen=True)
class SLATracking:
    target_hours: float
    elapsed_hours: float
    remaining_hours: float
    is_breached: bool
    progress: float
    due_by: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sla_target_hours": self.target_hours,
            "elapsed_hours": self.elapsed_hours,
            "remaining_hours": self.remaining_hours,
            "is_sla_breached": self.is_breached,
            "sla_progress": self.progress,
            "due_by": self.due_by.isoformat(),
        }


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# instants that end the SLA clock: fulfilment, or rejection/cancellation
CLOCK_STOP_STAMPS = ("completed", "closed")


def clock_stopped_at(timestamps: Dict[str, datetime]) -> Optional[datetime]:
    stops = [_utc(timestamps[name]) for name in CLOCK_STOP_STAMPS if name in timestamps]
    return min(stops) if stops else None


def sla_tracking(
    requested_at: datetime,
    due_by: datetime,
    now: datetime,
    completed_at: Optional[datetime] = None,
) -> SLATracking:
    """SLA figures computed on read; the clock stops at the closing instant"""
    requested_at, due_by, now = _utc(requested_at), _utc(due_by), _utc(now)
    end = _utc(completed_at) if completed_at else now
    target_hours = (due_by - requested_at).total_seconds() / 3600
    elapsed_hours = max(0.0, (end - requested_at).total_seconds() / 3600)
    progress = min(1.0, elapsed_hours / target_hours) if target_hours > 0 else 1.0
    return SLATracking(
        target_hours=round(target_hours, 4),
        elapsed_hours=round(elapsed_hours, 4),
        remaining_hours=round(max(0.0, target_hours - elapsed_hours), 4),
        is_breached=elapsed_hours > target_hours,
        progress=round(progress, 4),
        due_by=due_by,
    )
