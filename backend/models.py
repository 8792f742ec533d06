# models.py — Database models for the ITSM lifecycle & compliance service
# - String UUID keys for users and audit rows, integer ids for lifecycle records
# - One table per lifecycle kind, sharing the LifecycleRecordMixin columns
# - Compliance tables store raw inputs only; status is recomputed on read
# - Audit log is append-only

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Float,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMINISTRATOR = "administrator"
    OPERATOR = "operator"
    USER = "user"


class AuditEventType(str, PyEnum):
    ENTITY_CREATED = "lifecycle.entity.created"
    ENTITY_TRANSITIONED = "lifecycle.entity.transitioned"
    ENTITY_DELETED = "lifecycle.entity.deleted"
    PROBLEM_LINKED = "lifecycle.problem.linked"
    MEASUREMENT_RECORDED = "compliance.measurement.recorded"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    audit_logs = relationship("AuditLog", back_populates="user")


# ============================================================
# LIFECYCLE RECORDS (Change, Problem, Release, ServiceRequest)
# ============================================================

class LifecycleRecordMixin:
    """Columns every lifecycle table shares; `state` is only written by the engine"""

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    state = Column(String, nullable=False, index=True)
    priority = Column(String, nullable=False, default="Medium", index=True)
    category = Column(String, nullable=True, index=True)
    requested_by = Column(String, nullable=True)
    approved_by = Column(String, nullable=True)
    implemented_by = Column(String, nullable=True)
    timestamps = Column(JSON, nullable=False, default=dict)  # name -> ISO instant
    approvals = Column(JSON, nullable=False, default=list)  # append-only history
    due_by = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ChangeRecord(LifecycleRecordMixin, Base):
    __tablename__ = "changes"


class ProblemRecord(LifecycleRecordMixin, Base):
    __tablename__ = "problems"


class ReleaseRecord(LifecycleRecordMixin, Base):
    __tablename__ = "releases"


class ServiceRequestRecord(LifecycleRecordMixin, Base):
    __tablename__ = "service_requests"


class IncidentProblemLink(Base):
    __tablename__ = "incident_problem_links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False, index=True)
    incident_ref = Column(String, nullable=False)
    relationship_type = Column(String, nullable=False, default="caused_by")
    linked_by = Column(String, nullable=True)
    linked_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("problem_id", "incident_ref", name="uq_problem_incident"),
    )


# ============================================================
# AUDIT LOGS (append-only)
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    actor_role = Column(String, nullable=True)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    action = Column(String, nullable=True)
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=True)
    details = Column(JSON, nullable=True)
    request_id = Column(String, nullable=True, index=True)

    user = relationship("User", back_populates="audit_logs")

    __table_args__ = (
        Index("idx_audit_resource", "resource_type", "resource_id"),
        Index("idx_audit_event_timestamp", "event_type", "timestamp"),
    )


# ============================================================
# COMPLIANCE MEASUREMENTS (raw inputs only)
# ============================================================

class SLAMeasurement(Base):
    __tablename__ = "sla_measurements"

    id = Column(String, primary_key=True, default=new_uuid)
    service_name = Column(String, nullable=False, index=True)
    metric_name = Column(String, nullable=False)
    metric_type = Column(String, nullable=False)  # Availability, Response Time, Resolution Time, Quality
    target_value = Column(Float, nullable=False)
    actual_value = Column(Float, nullable=True)
    warning_band = Column(Float, nullable=True)
    unit = Column(String, nullable=False, default="")
    measured_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class AvailabilityRecord(Base):
    __tablename__ = "availability_records"

    id = Column(String, primary_key=True, default=new_uuid)
    service_name = Column(String, nullable=False, index=True)
    availability_target = Column(Float, nullable=False)
    uptime_percent = Column(Float, nullable=True)
    warning_band = Column(Float, nullable=True)
    major_incidents = Column(Integer, nullable=False, default=0)
    minor_incidents = Column(Integer, nullable=False, default=0)
    measured_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class CapacityRecord(Base):
    __tablename__ = "capacity_records"

    id = Column(String, primary_key=True, default=new_uuid)
    resource_name = Column(String, nullable=False, index=True)
    resource_type = Column(String, nullable=True)
    current_usage = Column(Float, nullable=True)
    max_capacity = Column(Float, nullable=False)
    threshold_warning = Column(Float, nullable=False, default=80.0)
    threshold_critical = Column(Float, nullable=False, default=90.0)
    forecast_3_months = Column(Float, nullable=True)
    forecast_6_months = Column(Float, nullable=True)
    forecast_12_months = Column(Float, nullable=True)
    measured_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
