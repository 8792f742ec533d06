# policy_config.py — Approval-level and SLA-hours policy tables
# Loaded once per process. Built-in defaults can be overridden by a YAML file
# named in ITSM_POLICY_FILE:
#
#   approval_levels:
#     Access Request: [supervisor, security_manager]
#   sla_hours:
#     Access Request: {High: 4, Medium: 8, Low: 24}
#   default_sla_hours: 72

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

logger = logging.getLogger("itsm.policy")

POLICY_FILE = os.getenv("ITSM_POLICY_FILE", "")

FALLBACK_CATEGORY = "Other"
FALLBACK_APPROVAL_LEVELS: Tuple[str, ...] = ("supervisor",)
FALLBACK_SLA_HOURS = 72.0

DEFAULT_APPROVAL_LEVELS: Dict[str, List[str]] = {
    # Service request catalogue
    "Hardware Request": ["supervisor", "it_manager"],
    "Software Request": ["supervisor", "it_manager"],
    "Access Request": ["supervisor", "security_manager"],
    "Account Management": ["it_manager"],
    "Training Request": ["supervisor", "hr_manager"],
    "Information Request": ["supervisor"],
    "Infrastructure Change": ["supervisor", "it_manager", "infrastructure_manager"],
    "Other": ["supervisor"],
    # Change classes
    "Standard": ["supervisor"],
    "Normal": ["supervisor", "change_manager"],
    "Emergency": ["change_manager"],
}

DEFAULT_SLA_HOURS: Dict[str, Dict[str, float]] = {
    "Hardware Request": {"High": 24, "Medium": 72, "Low": 168},
    "Software Request": {"High": 8, "Medium": 24, "Low": 72},
    "Access Request": {"High": 4, "Medium": 8, "Low": 24},
    "Account Management": {"High": 2, "Medium": 4, "Low": 8},
    "Training Request": {"High": 168, "Medium": 336, "Low": 672},
    "Information Request": {"High": 4, "Medium": 8, "Low": 24},
    "Infrastructure Change": {"High": 168, "Medium": 336, "Low": 672},
    "Other": {"High": 24, "Medium": 72, "Low": 168},
}


@dataclass(frozen=True)
class PolicyTables:
    """Immutable policy inputs consumed by the approval resolver and SLA lookup"""
    approval_levels: Mapping[str, Tuple[str, ...]]
    sla_hours: Mapping[str, Mapping[str, float]]
    default_sla_hours: float = FALLBACK_SLA_HOURS
    source: str = "built-in"

    def levels_for(self, category: Optional[str]) -> Tuple[str, ...]:
        return self.approval_levels.get(category or "", FALLBACK_APPROVAL_LEVELS)

    def sla_row(self, category: Optional[str]) -> Mapping[str, float]:
        row = self.sla_hours.get(category or "")
        if row is None:
            row = self.sla_hours.get(FALLBACK_CATEGORY, {})
        return row

    @staticmethod
    def build(
        approval_levels: Dict[str, List[str]],
        sla_hours: Dict[str, Dict[str, float]],
        default_sla_hours: float = FALLBACK_SLA_HOURS,
        source: str = "built-in",
    ) -> "PolicyTables":
        levels: Dict[str, Tuple[str, ...]] = {}
        for category, entries in approval_levels.items():
            if not isinstance(entries, (list, tuple)) or not all(isinstance(e, str) and e for e in entries):
                raise ValueError(f"approval_levels[{category!r}] must be a list of level names")
            if len(set(entries)) != len(entries):
                raise ValueError(f"approval_levels[{category!r}] lists a level twice")
            levels[category] = tuple(entries)

        hours: Dict[str, Mapping[str, float]] = {}
        for category, row in sla_hours.items():
            if not isinstance(row, dict):
                raise ValueError(f"sla_hours[{category!r}] must map priority to hours")
            clean: Dict[str, float] = {}
            for priority, value in row.items():
                if not isinstance(value, (int, float)) or value <= 0:
                    raise ValueError(f"sla_hours[{category!r}][{priority!r}] must be a positive number")
                clean[str(priority)] = float(value)
            hours[category] = MappingProxyType(clean)

        if not isinstance(default_sla_hours, (int, float)) or default_sla_hours <= 0:
            raise ValueError("default_sla_hours must be a positive number")

        return PolicyTables(
            approval_levels=MappingProxyType(levels),
            sla_hours=MappingProxyType(hours),
            default_sla_hours=float(default_sla_hours),
            source=source,
        )

    @classmethod
    def from_yaml(cls, data: Dict[str, Any], source: str = "yaml") -> "PolicyTables":
        """Overlay YAML tables on the built-in defaults"""
        if not isinstance(data, dict):
            raise ValueError("Policy file must contain a mapping")
        approval_levels = {**DEFAULT_APPROVAL_LEVELS, **(data.get("approval_levels") or {})}
        sla_hours = {**DEFAULT_SLA_HOURS, **(data.get("sla_hours") or {})}
        return cls.build(
            approval_levels,
            sla_hours,
            data.get("default_sla_hours", FALLBACK_SLA_HOURS),
            source=source,
        )


def default_policy() -> PolicyTables:
    return PolicyTables.build(DEFAULT_APPROVAL_LEVELS, DEFAULT_SLA_HOURS)


def load_policy(path: str) -> PolicyTables:
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")
    with policy_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return PolicyTables.from_yaml(data, source=str(policy_path))


# Process-wide singleton
_policy: Optional[PolicyTables] = None


def get_policy() -> PolicyTables:
    """Get or load the process policy tables"""
    global _policy
    if _policy is None:
        _policy = load_policy(POLICY_FILE) if POLICY_FILE else default_policy()
        logger.info(
            "Loaded approval policy from %s (%d categories)",
            _policy.source, len(_policy.approval_levels),
        )
    return _policy


def set_policy(policy: Optional[PolicyTables]) -> None:
    """Replace the cached tables; None forces a reload on next access"""
    global _policy
    _policy = policy
