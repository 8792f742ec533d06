"""
ITSM — Alert Aggregator

Turns compliance evaluations across a resource population into a prioritised,
deterministically ordered list of alerts. Performs no I/O: delivery and
audit of generated alerts belong to the caller.

Per-sample collection (`collect_alerts`) is independent between samples, so
callers may evaluate in parallel and join with `aggregate_evaluations`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from compliance_evaluator import (
    BREACH_STATUSES, CAUTION_STATUSES,
    ComplianceSample, ComplianceStatus, Evaluation, evaluate,
)


class AlertType(str, Enum):
    BREACHED = "Breached"
    PROJECTED_BREACH = "ProjectedBreach"
    HIGH_INCIDENT_RATE = "HighIncidentRate"
    AT_RISK = "AtRisk"
    MEASUREMENT_DUE = "MeasurementDue"
    STALE_DATA = "StaleData"


class AlertPriority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


# Output is grouped by type in exactly this order
GROUP_ORDER: List[AlertType] = [
    AlertType.BREACHED,
    AlertType.PROJECTED_BREACH,
    AlertType.HIGH_INCIDENT_RATE,
    AlertType.AT_RISK,
    AlertType.MEASUREMENT_DUE,
    AlertType.STALE_DATA,
]
_GROUP_INDEX = {t: i for i, t in enumerate(GROUP_ORDER)}

PRIORITY_BY_TYPE: Dict[AlertType, AlertPriority] = {
    AlertType.BREACHED: AlertPriority.CRITICAL,
    AlertType.PROJECTED_BREACH: AlertPriority.HIGH,
    AlertType.HIGH_INCIDENT_RATE: AlertPriority.HIGH,
    AlertType.AT_RISK: AlertPriority.MEDIUM,
    AlertType.MEASUREMENT_DUE: AlertPriority.MEDIUM,
    AlertType.STALE_DATA: AlertPriority.LOW,
}

HIGH_INCIDENT_TOTAL = 5
HIGH_INCIDENT_MAJOR = 2

MESSAGE_TEMPLATES: Dict[AlertType, str] = {
    AlertType.BREACHED: (
        "{status}: {subject} {metric} is outside its target "
        "(actual {actual}{unit}, target {target}{unit})"
    ),
    AlertType.PROJECTED_BREACH: (
        "Projected breach: {subject} {metric} is forecast to cross its target within {horizon} "
        "(projected {projected}{unit}, target {target}{unit})"
    ),
    AlertType.HIGH_INCIDENT_RATE: (
        "High incident rate: {subject} recorded {total_incidents} incidents ({major_incidents} major)"
    ),
    AlertType.AT_RISK: (
        "{status}: {subject} {metric} has reached its warning level "
        "(actual {actual}{unit}, target {target}{unit})"
    ),
    AlertType.MEASUREMENT_DUE: "Measurement due: {subject} {metric} has no recorded value",
    AlertType.STALE_DATA: "Stale data: {subject} {metric} has not been measured for {days_old} days",
}


@dataclass
class Alert:
    type: AlertType
    priority: AlertPriority
    subject: str
    message: str
    metric: str = ""
    severity: float = 0.0
    horizon_days: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "priority": self.priority.value,
            "subject": self.subject,
            "metric": self.metric,
            "message": self.message,
            "details": self.details,
        }


def render_message(alert_type: AlertType, **fields: Any) -> str:
    """Pure template rendering over the alert fields"""
    return MESSAGE_TEMPLATES[alert_type].format(**fields)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _make_alert(alert_type: AlertType, sample: ComplianceSample, severity: float,
                horizon_days: Optional[int] = None, **fields: Any) -> Alert:
    context = {
        "subject": sample.subject,
        "metric": sample.metric or "metric",
        "unit": sample.unit,
        "actual": sample.actual,
        "target": sample.target,
        **fields,
    }
    return Alert(
        type=alert_type,
        priority=PRIORITY_BY_TYPE[alert_type],
        subject=sample.subject,
        metric=sample.metric,
        message=render_message(alert_type, **context),
        severity=severity,
        horizon_days=horizon_days,
        details={k: v for k, v in context.items() if k not in ("subject", "metric")},
    )


def collect_alerts(evaluation: Evaluation, stale_after: timedelta, now: datetime) -> List[Alert]:
    """All alerts raised by a single evaluated sample"""
    sample = evaluation.sample
    status = evaluation.status
    alerts: List[Alert] = []

    if status in BREACH_STATUSES:
        alerts.append(_make_alert(AlertType.BREACHED, sample, -evaluation.variance, status=status.value))
    elif status in CAUTION_STATUSES:
        alerts.append(_make_alert(AlertType.AT_RISK, sample, -evaluation.variance, status=status.value))
    elif status == ComplianceStatus.UNMEASURED:
        alerts.append(_make_alert(AlertType.MEASUREMENT_DUE, sample, 0.0))

    if evaluation.projected_breach is not None:
        overshoot = abs(evaluation.projected_value - sample.target)
        alerts.append(_make_alert(
            AlertType.PROJECTED_BREACH, sample, overshoot,
            horizon_days=evaluation.projected_horizon_days,
            horizon=evaluation.projected_breach,
            projected=evaluation.projected_value,
        ))

    total_incidents = sample.major_incidents + sample.minor_incidents
    if total_incidents > HIGH_INCIDENT_TOTAL or sample.major_incidents > HIGH_INCIDENT_MAJOR:
        alerts.append(_make_alert(
            AlertType.HIGH_INCIDENT_RATE, sample, float(total_incidents),
            total_incidents=total_incidents,
            major_incidents=sample.major_incidents,
        ))

    if sample.measured_at is not None:
        age = _as_utc(now) - _as_utc(sample.measured_at)
        if age > stale_after:
            days_old = age.days
            alerts.append(_make_alert(
                AlertType.STALE_DATA, sample, age.total_seconds() / 86400, days_old=days_old,
            ))

    return alerts


def order_alerts(alerts: Iterable[Alert]) -> List[Alert]:
    """Group order, then worst severity, then earliest horizon, then subject"""
    return sorted(
        alerts,
        key=lambda a: (
            _GROUP_INDEX[a.type],
            -a.severity,
            a.horizon_days if a.horizon_days is not None else 0,
            a.subject,
            a.metric,
        ),
    )


def aggregate_evaluations(
    evaluations: Iterable[Evaluation],
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> List[Alert]:
    now = now or datetime.now(timezone.utc)
    alerts: List[Alert] = []
    for evaluation in evaluations:
        alerts.extend(collect_alerts(evaluation, stale_after, now))
    return order_alerts(alerts)


def aggregate(
    samples: Iterable[ComplianceSample],
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> List[Alert]:
    """Evaluate every sample and return the ordered alert list"""
    return aggregate_evaluations((evaluate(s) for s in samples), stale_after, now)


def summarize(alerts: List[Alert]) -> Dict[str, Any]:
    by_type: Dict[str, int] = {}
    by_priority: Dict[str, int] = {}
    for alert in alerts:
        by_type[alert.type.value] = by_type.get(alert.type.value, 0) + 1
        by_priority[alert.priority.value] = by_priority.get(alert.priority.value, 0) + 1
    return {"total_alerts": len(alerts), "by_type": by_type, "by_priority": by_priority}
