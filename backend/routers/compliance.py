# routers/compliance.py - SLA, availability and capacity compliance endpoints
# Stored rows hold raw measurements only; status is evaluated on every read.
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alert_aggregator import aggregate, aggregate_evaluations, summarize
from auth import CurrentUser, STAFF_ROLES, get_current_user, require_role
from compliance_evaluator import (
    DEFAULT_HORIZONS, ComplianceSample, ForecastPoint, MetricScale,
    availability_sample, capacity_sample, evaluate, first_projected_breach,
    project_linear, sla_sample, validate_sample,
)
from database import get_db_session
from itsm_errors import InvalidSample
from lifecycle_engine import utcnow
from logging_system import TimedOperation, get_logger
from models import (
    AuditEventType, AuditLog, AvailabilityRecord, CapacityRecord, SLAMeasurement,
)

router = APIRouter(prefix="/api/v1/compliance", tags=["Compliance"])
slog = get_logger()

STALE_AFTER_DAYS = int(os.getenv("STALE_AFTER_DAYS", "30"))


# --- Schemas ---

class ForecastIn(BaseModel):
    label: str
    value: float
    horizon_days: int = Field(..., gt=0)


class SampleIn(BaseModel):
    subject: str = Field(..., min_length=1)
    target: float
    polarity: Optional[str] = None
    actual: Optional[float] = None
    warning_band: Optional[float] = None
    critical_band: Optional[float] = None
    scale: MetricScale = MetricScale.SERVICE_LEVEL
    metric: str = ""
    unit: str = ""
    forecast: List[ForecastIn] = Field(default_factory=list)
    measured_at: Optional[datetime] = None
    major_incidents: int = Field(0, ge=0)
    minor_incidents: int = Field(0, ge=0)

    def to_sample(self) -> ComplianceSample:
        return ComplianceSample(
            subject=self.subject,
            target=self.target,
            polarity=self.polarity,
            actual=self.actual,
            warning_band=self.warning_band,
            critical_band=self.critical_band,
            scale=self.scale,
            metric=self.metric,
            unit=self.unit,
            forecast=[ForecastPoint(f.label, f.value, f.horizon_days) for f in self.forecast],
            measured_at=self.measured_at,
            major_incidents=self.major_incidents,
            minor_incidents=self.minor_incidents,
        )


class EvaluateRequest(BaseModel):
    samples: List[SampleIn] = Field(..., min_length=1)
    stale_after_days: int = Field(STALE_AFTER_DAYS, ge=0)


class HistoryPoint(BaseModel):
    timestamp: datetime
    value: float


class HorizonIn(BaseModel):
    label: str
    days: int = Field(..., gt=0)


class ForecastRequest(BaseModel):
    history: List[HistoryPoint]
    horizons: Optional[List[HorizonIn]] = None
    target: Optional[float] = None
    polarity: Optional[str] = None


class SLAMeasurementIn(BaseModel):
    service_name: str = Field(..., min_length=1)
    metric_name: str = Field(..., min_length=1)
    metric_type: str = Field(..., description="Availability | Response Time | Resolution Time | Quality")
    target_value: float
    actual_value: Optional[float] = None
    warning_band: Optional[float] = None
    unit: str = ""
    measured_at: Optional[datetime] = None


class AvailabilityIn(BaseModel):
    service_name: str = Field(..., min_length=1)
    availability_target: float
    uptime_percent: Optional[float] = None
    warning_band: Optional[float] = None
    major_incidents: int = Field(0, ge=0)
    minor_incidents: int = Field(0, ge=0)
    measured_at: Optional[datetime] = None


class CapacityIn(BaseModel):
    resource_name: str = Field(..., min_length=1)
    resource_type: Optional[str] = None
    current_usage: Optional[float] = None
    max_capacity: float
    threshold_warning: float = 80.0
    threshold_critical: float = 90.0
    forecast_3_months: Optional[float] = None
    forecast_6_months: Optional[float] = None
    forecast_12_months: Optional[float] = None
    measured_at: Optional[datetime] = None


# --- Row -> sample ---

def _sla_row_sample(row: SLAMeasurement) -> ComplianceSample:
    return sla_sample(
        row.service_name, row.metric_name, row.metric_type, row.target_value, row.actual_value,
        warning_band=row.warning_band, unit=row.unit or "", measured_at=row.measured_at,
    )


def _availability_row_sample(row: AvailabilityRecord) -> ComplianceSample:
    return availability_sample(
        row.service_name, row.uptime_percent, row.availability_target,
        warning_band=row.warning_band, measured_at=row.measured_at,
        major_incidents=row.major_incidents, minor_incidents=row.minor_incidents,
    )


def _capacity_forecasts(row) -> Dict[str, Tuple[int, Optional[float]]]:
    values = (row.forecast_3_months, row.forecast_6_months, row.forecast_12_months)
    return {label: (days, value) for (label, days), value in zip(DEFAULT_HORIZONS, values)}


def _capacity_row_sample(row, history: Optional[List[Tuple[datetime, float]]] = None) -> ComplianceSample:
    forecasts = _capacity_forecasts(row)
    if all(value is None for _, value in forecasts.values()) and history:
        # no explicit forecast recorded: project from the resource's usage history
        forecasts = {p.label: (p.horizon_days, p.value) for p in project_linear(history)}
    return capacity_sample(
        row.resource_name, row.current_usage, row.max_capacity,
        row.threshold_warning, row.threshold_critical,
        forecasts=forecasts, measured_at=row.measured_at,
    )


def _row_instant(row) -> datetime:
    return row.measured_at or row.created_at


def _latest_by(rows, key) -> Dict:
    latest: Dict = {}
    for row in sorted(rows, key=_row_instant):
        latest[key(row)] = row
    return latest


async def _record(db: AsyncSession, row, user: CurrentUser, request: Request, resource_type: str, details: dict):
    db.add(row)
    await db.flush()
    db.add(AuditLog(
        event_type=AuditEventType.MEASUREMENT_RECORDED,
        user_id=user.id,
        actor_role=user.role,
        resource_type=resource_type,
        resource_id=row.id,
        details=details,
        request_id=getattr(request.state, "request_id", None),
    ))
    await db.commit()
    await db.refresh(row)


# --- Stateless evaluation ---

@router.post("/evaluate")
async def evaluate_samples(body: EvaluateRequest, user: CurrentUser = Depends(get_current_user)):
    """Evaluate ad-hoc samples and return their statuses plus the ordered alerts"""
    evaluations = [evaluate(s.to_sample()) for s in body.samples]
    alerts = aggregate_evaluations(evaluations, timedelta(days=body.stale_after_days), utcnow())
    return {
        "evaluations": [e.to_dict() for e in evaluations],
        "alerts": [a.to_dict() for a in alerts],
        "summary": summarize(alerts),
    }


@router.post("/forecast")
async def forecast(body: ForecastRequest, user: CurrentUser = Depends(get_current_user)):
    horizons = [(h.label, h.days) for h in body.horizons] if body.horizons else DEFAULT_HORIZONS
    points = project_linear([(p.timestamp, p.value) for p in body.history], horizons)

    projected_breach = None
    if body.target is not None:
        if body.polarity is None:
            raise InvalidSample("polarity", "polarity is required to check the forecast against a target")
        probe = ComplianceSample(subject="forecast", target=body.target, polarity=body.polarity, forecast=points)
        probe = validate_sample(probe)
        breach = first_projected_breach(probe)
        projected_breach = breach.to_dict() if breach else None

    return {
        "forecast": [p.to_dict() for p in points],
        "projected_breach": projected_breach,
        "sufficient_history": bool(points),
    }


# --- Measurement intake ---

@router.post("/sla", status_code=201)
async def record_sla_measurement(
    body: SLAMeasurementIn,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_role(*STAFF_ROLES)),
):
    row = SLAMeasurement(**body.model_dump())
    evaluation = evaluate(_sla_row_sample(row))
    await _record(db, row, user, request, "sla_measurement", {"service": row.service_name, "metric": row.metric_name})
    return {"id": row.id, **evaluation.to_dict()}


@router.post("/availability", status_code=201)
async def record_availability(
    body: AvailabilityIn,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_role(*STAFF_ROLES)),
):
    row = AvailabilityRecord(**body.model_dump())
    evaluation = evaluate(_availability_row_sample(row))
    await _record(db, row, user, request, "availability_record", {"service": row.service_name})
    return {"id": row.id, **evaluation.to_dict()}


@router.post("/capacity", status_code=201)
async def record_capacity(
    body: CapacityIn,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_role(*STAFF_ROLES)),
):
    row = CapacityRecord(**body.model_dump())
    evaluation = evaluate(_capacity_row_sample(row))
    await _record(db, row, user, request, "capacity_record", {"resource": row.resource_name})
    return {"id": row.id, **evaluation.to_dict()}


# --- Alerts over the stored population ---

async def _current_samples(db: AsyncSession) -> List[ComplianceSample]:
    samples: List[ComplianceSample] = []

    sla_rows = (await db.execute(select(SLAMeasurement))).scalars().all()
    for row in _latest_by(sla_rows, lambda r: (r.service_name, r.metric_name)).values():
        samples.append(_sla_row_sample(row))

    availability_rows = (await db.execute(select(AvailabilityRecord))).scalars().all()
    for row in _latest_by(availability_rows, lambda r: r.service_name).values():
        samples.append(_availability_row_sample(row))

    capacity_rows = (await db.execute(select(CapacityRecord))).scalars().all()
    history: Dict[str, List[Tuple[datetime, float]]] = {}
    for row in capacity_rows:
        if row.current_usage is not None:
            history.setdefault(row.resource_name, []).append((_row_instant(row), row.current_usage))
    for name, row in _latest_by(capacity_rows, lambda r: r.resource_name).items():
        samples.append(_capacity_row_sample(row, history.get(name)))

    return samples


@router.get("/alerts")
async def get_alerts(
    stale_after_days: int = Query(STALE_AFTER_DAYS, ge=0),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    samples = await _current_samples(db)
    now = utcnow()
    with TimedOperation(slog, "compliance.aggregate", metadata={"samples": len(samples)}):
        alerts = aggregate(samples, timedelta(days=stale_after_days), now)
    summary = summarize(alerts)

    for alert_type, count in summary["by_type"].items():
        slog.compliance("population", alert_type, user_id=user.id, metadata={"count": count})

    return {
        "alerts": [a.to_dict() for a in alerts],
        "summary": summary,
        "samples_evaluated": len(samples),
        "generated_at": now.isoformat(),
    }
