"""
ITSM — Compliance Evaluator

Classifies a measured value against a target and warning/critical bands.
Two label families are supported:

- service-level metrics (SLA targets, availability): Met / AtRisk / Breached
- resource-usage metrics (capacity): Normal / Warning / Critical

Status is always recomputed from the raw inputs; nothing here is stored.
Forecast entries are scanned in chronological order and the first projected
crossing of the target wins. `project_linear` produces such forecasts from
measurement history with an ordinary least-squares fit.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import math
import statistics

from itsm_errors import InvalidSample

logger = logging.getLogger("itsm.compliance")


class Polarity(str, Enum):
    HIGHER_IS_BETTER = "higher_is_better"
    LOWER_IS_BETTER = "lower_is_better"


class MetricScale(str, Enum):
    SERVICE_LEVEL = "service_level"
    RESOURCE_USAGE = "resource_usage"


class ComplianceStatus(str, Enum):
    MET = "Met"
    AT_RISK = "AtRisk"
    BREACHED = "Breached"
    NORMAL = "Normal"
    WARNING = "Warning"
    CRITICAL = "Critical"
    UNMEASURED = "Unmeasured"

    @property
    def rank(self) -> int:
        """0 is the best outcome, 2 the worst; Unmeasured has no rank"""
        ranks = {
            "Met": 0, "Normal": 0,
            "AtRisk": 1, "Warning": 1,
            "Breached": 2, "Critical": 2,
        }
        return ranks.get(self.value, -1)


BREACH_STATUSES = frozenset({ComplianceStatus.BREACHED, ComplianceStatus.CRITICAL})
CAUTION_STATUSES = frozenset({ComplianceStatus.AT_RISK, ComplianceStatus.WARNING})

# Projection horizons used by the capacity intake and the forecast endpoint
DEFAULT_HORIZONS: Tuple[Tuple[str, int], ...] = (
    ("3 months", 90),
    ("6 months", 180),
    ("12 months", 365),
)


@dataclass(frozen=True)
class ForecastPoint:
    label: str
    value: float
    horizon_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "value": self.value, "horizon_days": self.horizon_days}


@dataclass
class ComplianceSample:
    """One measurement of one metric for one subject (service or resource)"""
    subject: str
    target: float
    polarity: Polarity
    actual: Optional[float] = None
    warning_band: Optional[float] = None
    critical_band: Optional[float] = None
    scale: MetricScale = MetricScale.SERVICE_LEVEL
    metric: str = ""
    unit: str = ""
    forecast: List[ForecastPoint] = field(default_factory=list)
    measured_at: Optional[datetime] = None
    major_incidents: int = 0
    minor_incidents: int = 0


@dataclass
class Evaluation:
    sample: ComplianceSample
    status: ComplianceStatus
    variance: Optional[float]
    projected_breach: Optional[str] = None
    projected_value: Optional[float] = None
    projected_horizon_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.sample.subject,
            "metric": self.sample.metric,
            "status": self.status.value,
            "variance": self.variance,
            "projected_breach": self.projected_breach,
            "projected_value": self.projected_value,
            "actual": self.sample.actual,
            "target": self.sample.target,
            "unit": self.sample.unit,
        }


# ============================================================
# COMPARISONS
# ============================================================

def is_worse(value: float, reference: float, polarity: Polarity) -> bool:
    """True when `value` lies strictly on the unfavourable side of `reference`"""
    if polarity == Polarity.HIGHER_IS_BETTER:
        return value < reference
    return value > reference


def _reaches(value: float, band: float, polarity: Polarity) -> bool:
    # Usage bands are inclusive: 90% usage against a 90% critical band is Critical
    if polarity == Polarity.HIGHER_IS_BETTER:
        return value <= band
    return value >= band


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


# ============================================================
# VALIDATION
# ============================================================

def validate_sample(sample: ComplianceSample) -> ComplianceSample:
    """Raise InvalidSample for malformed input; never defaults a missing field.

    Returns a copy with polarity coerced to `Polarity`; the argument is left as given.
    """
    if sample.polarity is None:
        raise InvalidSample("polarity", "polarity is required")
    if not isinstance(sample.polarity, Polarity):
        try:
            sample = replace(sample, polarity=Polarity(sample.polarity))
        except ValueError:
            raise InvalidSample("polarity", f"unknown polarity '{sample.polarity}'")

    if not _is_number(sample.target):
        raise InvalidSample("target", "target must be a finite number")
    if sample.target <= 0:
        raise InvalidSample("target", "target must be greater than zero")

    if sample.actual is not None and not _is_number(sample.actual):
        raise InvalidSample("actual", "actual must be a finite number when present")

    for name in ("warning_band", "critical_band"):
        value = getattr(sample, name)
        if value is not None and not _is_number(value):
            raise InvalidSample(name, f"{name} must be a finite number when present")

    if sample.scale == MetricScale.RESOURCE_USAGE:
        if sample.warning_band is None or sample.critical_band is None:
            raise InvalidSample("critical_band", "usage metrics need both warning and critical bands")
        # the warning band must be reached strictly before the critical one
        if sample.warning_band == sample.critical_band:
            raise InvalidSample("warning_band", "warning band equals the critical band")
        if is_worse(sample.warning_band, sample.critical_band, sample.polarity):
            raise InvalidSample("warning_band", "warning band lies beyond the critical band")

    for point in sample.forecast:
        if not _is_number(point.value):
            raise InvalidSample("forecast", f"forecast '{point.label}' has no numeric value")
    return sample


# ============================================================
# EVALUATION
# ============================================================

def _classify(sample: ComplianceSample) -> ComplianceStatus:
    actual = sample.actual
    if sample.scale == MetricScale.RESOURCE_USAGE:
        if _reaches(actual, sample.critical_band, sample.polarity):
            return ComplianceStatus.CRITICAL
        if _reaches(actual, sample.warning_band, sample.polarity):
            return ComplianceStatus.WARNING
        return ComplianceStatus.NORMAL

    if is_worse(actual, sample.target, sample.polarity):
        return ComplianceStatus.BREACHED
    if sample.warning_band is not None and is_worse(actual, sample.warning_band, sample.polarity):
        return ComplianceStatus.AT_RISK
    return ComplianceStatus.MET


def first_projected_breach(sample: ComplianceSample) -> Optional[ForecastPoint]:
    """Earliest forecast point on the unfavourable side of the target"""
    for point in sorted(sample.forecast, key=lambda p: p.horizon_days):
        if is_worse(point.value, sample.target, sample.polarity):
            return point
    return None


def evaluate(sample: ComplianceSample) -> Evaluation:
    sample = validate_sample(sample)
    breach = first_projected_breach(sample)
    projected_label = breach.label if breach else None
    projected_value = breach.value if breach else None
    projected_days = breach.horizon_days if breach else None

    if sample.actual is None:
        return Evaluation(
            sample=sample,
            status=ComplianceStatus.UNMEASURED,
            variance=None,
            projected_breach=projected_label,
            projected_value=projected_value,
            projected_horizon_days=projected_days,
        )

    if sample.polarity == Polarity.HIGHER_IS_BETTER:
        variance = sample.actual - sample.target
    else:
        variance = sample.target - sample.actual

    status = _classify(sample)
    logger.debug("Evaluated %s/%s -> %s (variance %.4f)", sample.subject, sample.metric, status.value, variance)
    return Evaluation(
        sample=sample,
        status=status,
        variance=round(variance, 6),
        projected_breach=projected_label,
        projected_value=projected_value,
        projected_horizon_days=projected_days,
    )


# ============================================================
# LINEAR FORECASTING
# ============================================================

def project_linear(
    history: Sequence[Tuple[datetime, float]],
    horizons: Sequence[Tuple[str, int]] = DEFAULT_HORIZONS,
) -> List[ForecastPoint]:
    """Least-squares projection of a measurement series.

    Horizons are counted in days from the most recent measurement. Returns an
    empty list when the history holds fewer than two distinct instants, since
    no slope can be fitted.
    """
    if len(history) < 2:
        return []
    ordered = sorted(history, key=lambda item: item[0])
    origin = ordered[0][0]
    xs = [(ts - origin).total_seconds() / 86400 for ts, _ in ordered]
    ys = [float(v) for _, v in ordered]
    if len(set(xs)) < 2:
        return []

    slope, intercept = statistics.linear_regression(xs, ys)
    last_x = xs[-1]
    return [
        ForecastPoint(label=label, value=round(intercept + slope * (last_x + days), 4), horizon_days=days)
        for label, days in sorted(horizons, key=lambda h: h[1])
    ]


# ============================================================
# SAMPLE BUILDERS: raw stored inputs to samples
# ============================================================

HIGHER_IS_BETTER_METRIC_TYPES = {"Availability", "Quality"}


def polarity_for_metric_type(metric_type: str) -> Polarity:
    """Availability and quality improve upward; response/resolution times downward"""
    if metric_type in HIGHER_IS_BETTER_METRIC_TYPES:
        return Polarity.HIGHER_IS_BETTER
    return Polarity.LOWER_IS_BETTER


def sla_sample(
    service_name: str,
    metric_name: str,
    metric_type: str,
    target_value: float,
    actual_value: Optional[float],
    warning_band: Optional[float] = None,
    unit: str = "",
    measured_at: Optional[datetime] = None,
) -> ComplianceSample:
    return ComplianceSample(
        subject=service_name,
        metric=metric_name,
        target=target_value,
        actual=actual_value,
        warning_band=warning_band,
        polarity=polarity_for_metric_type(metric_type),
        unit=unit,
        measured_at=measured_at,
    )


def availability_sample(
    service_name: str,
    uptime_percent: Optional[float],
    availability_target: float,
    warning_band: Optional[float] = None,
    measured_at: Optional[datetime] = None,
    major_incidents: int = 0,
    minor_incidents: int = 0,
) -> ComplianceSample:
    return ComplianceSample(
        subject=service_name,
        metric="availability",
        target=availability_target,
        actual=uptime_percent,
        warning_band=warning_band,
        polarity=Polarity.HIGHER_IS_BETTER,
        unit="%",
        measured_at=measured_at,
        major_incidents=major_incidents or 0,
        minor_incidents=minor_incidents or 0,
    )


def capacity_sample(
    resource_name: str,
    current_usage: Optional[float],
    max_capacity: float,
    threshold_warning: float,
    threshold_critical: float,
    forecasts: Optional[Dict[str, Tuple[int, Optional[float]]]] = None,
    measured_at: Optional[datetime] = None,
) -> ComplianceSample:
    """Usage is expressed as a percentage of `max_capacity` against a 100% target.

    `forecasts` maps a label to `(horizon_days, projected absolute usage)`;
    projected values are converted to the same percentage scale.
    """
    if not _is_number(max_capacity) or max_capacity <= 0:
        raise InvalidSample("max_capacity", "max capacity must be greater than zero")

    def pct(value: float) -> float:
        return round(value / max_capacity * 100, 4)

    forecast = [
        ForecastPoint(label=label, value=pct(value), horizon_days=days)
        for label, (days, value) in (forecasts or {}).items()
        if value is not None
    ]
    return ComplianceSample(
        subject=resource_name,
        metric="usage",
        target=100.0,
        actual=pct(current_usage) if current_usage is not None else None,
        warning_band=threshold_warning,
        critical_band=threshold_critical,
        polarity=Polarity.LOWER_IS_BETTER,
        scale=MetricScale.RESOURCE_USAGE,
        unit="%",
        forecast=forecast,
        measured_at=measured_at,
    )
