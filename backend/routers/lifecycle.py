"""
Lifecycle Router — Changes, Problems, Releases, Service Requests
Thin HTTP surface over the lifecycle engine: every state change goes through
`transition`, every write goes through the entity store with a version check.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from approval_chain import clock_stopped_at, next_step, sla_tracking
from auth import CurrentUser, STAFF_ROLES, get_current_user, require_role
from database import get_db_session
from entity_store import SQLEntityStore
from lifecycle_engine import (
    EntityKind, Priority, check_deletable, create_entity, get_lifecycle, transition, utcnow,
)
from logging_system import get_logger
from models import IncidentProblemLink

router = APIRouter(prefix="/api/v1/lifecycle", tags=["lifecycle"])
slog = get_logger()


# ── Schemas ──────────────────────────────────────────────────

class EntityCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Priority = Priority.MEDIUM


class TransitionRequest(BaseModel):
    action: str = Field(..., min_length=1)
    approval_level: Optional[str] = None


class IncidentLinkCreate(BaseModel):
    incident_ref: str = Field(..., min_length=1, max_length=100)
    relationship_type: str = "caused_by"


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _entity_view(entity) -> dict:
    lifecycle = get_lifecycle(entity.kind)
    return {
        **entity.to_dict(),
        "is_terminal": lifecycle.is_terminal(entity.state),
        "available_actions": lifecycle.available_actions(entity.state),
    }


# ── Vocabulary ───────────────────────────────────────────────

@router.get("/{kind}/actions")
async def list_actions(kind: EntityKind, user: CurrentUser = Depends(get_current_user)):
    lifecycle = get_lifecycle(kind)
    return {
        "kind": kind.value,
        "initial_state": lifecycle.initial_state,
        "states": sorted(lifecycle.states),
        "terminal_states": sorted(lifecycle.terminal_states),
        "transitions": [
            {
                "action": t.action,
                "from": sorted(t.sources),
                "to": t.target,
                "roles": sorted(t.roles),
                "requires_approval": t.requires_approval,
            }
            for t in lifecycle.transitions
        ],
    }


# ── Records ──────────────────────────────────────────────────

@router.post("/{kind}", status_code=201)
async def create_record(
    kind: EntityKind,
    body: EntityCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    entity = create_entity(
        kind,
        title=body.title,
        requested_by=user.id,
        category=body.category,
        priority=body.priority,
        description=body.description,
    )
    await SQLEntityStore(db).insert(entity, user.as_actor(), request_id=_request_id(request))
    slog.audit("create", f"{kind.value}/{entity.id}", user_id=user.id, metadata={"state": entity.state})
    return _entity_view(entity)


@router.get("/{kind}")
async def list_records(
    kind: EntityKind,
    state: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    entities = await SQLEntityStore(db).list_entities(kind, state=state, limit=limit, offset=skip)
    return {"items": [_entity_view(e) for e in entities], "count": len(entities)}


@router.get("/{kind}/{entity_id}")
async def get_record(
    kind: EntityKind,
    entity_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    entity = await SQLEntityStore(db).fetch(kind, entity_id)
    return _entity_view(entity)


@router.post("/{kind}/{entity_id}/transitions")
async def apply_transition(
    kind: EntityKind,
    entity_id: int,
    body: TransitionRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    store = SQLEntityStore(db)
    entity = await store.fetch(kind, entity_id)
    result = transition(entity, body.action, user.as_actor(), approval_level=body.approval_level)
    await store.persist(result.entity, result.audit, request_id=_request_id(request))

    slog.transition(
        kind.value, entity_id, result.audit.from_state, result.audit.to_state, body.action,
        user_id=user.id,
    )
    return {
        "entity": _entity_view(result.entity),
        "audit": result.audit.to_dict(),
        "approval": result.approval.to_dict() if result.approval else None,
    }


@router.delete("/{kind}/{entity_id}")
async def delete_record(
    kind: EntityKind,
    entity_id: int,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_role(*STAFF_ROLES)),
):
    store = SQLEntityStore(db)
    entity = await store.fetch(kind, entity_id)
    check_deletable(entity, await store.dependency_count(kind, entity_id))
    await store.delete(entity, user.as_actor(), request_id=_request_id(request))
    slog.audit("delete", f"{kind.value}/{entity_id}", user_id=user.id, metadata={"state": entity.state})
    return {"deleted": True, "id": entity_id}


# ── Approval & SLA ───────────────────────────────────────────

@router.get("/{kind}/{entity_id}/approval")
async def get_approval_status(
    kind: EntityKind,
    entity_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    entity = await SQLEntityStore(db).fetch(kind, entity_id)
    step = next_step(entity.category, entity.approvals)
    return {
        **step.to_dict(),
        "category": entity.category,
        "approvals": [a.to_dict() for a in entity.approvals],
    }


@router.get("/{kind}/{entity_id}/sla")
async def get_sla_status(
    kind: EntityKind,
    entity_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    entity = await SQLEntityStore(db).fetch(kind, entity_id)
    if entity.due_by is None or "requested" not in entity.timestamps:
        raise HTTPException(404, f"No SLA target recorded for {kind.value} {entity_id}")
    tracking = sla_tracking(
        entity.timestamps["requested"],
        entity.due_by,
        utcnow(),
        completed_at=clock_stopped_at(entity.timestamps),
    )
    return {"id": entity_id, "state": entity.state, "priority": entity.priority.value, **tracking.to_dict()}


# ── Problem ↔ Incident links ─────────────────────────────────

@router.post("/problem/{problem_id}/links", status_code=201)
async def link_incident(
    problem_id: int,
    body: IncidentLinkCreate,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(require_role(*STAFF_ROLES)),
):
    link = await SQLEntityStore(db).link_incident(
        problem_id, body.incident_ref, user.as_actor(),
        relationship_type=body.relationship_type,
        request_id=_request_id(request),
    )
    slog.audit("link_incident", f"problem/{problem_id}", user_id=user.id, metadata={"incident_ref": body.incident_ref})
    return {
        "id": link.id,
        "problem_id": link.problem_id,
        "incident_ref": link.incident_ref,
        "relationship_type": link.relationship_type,
        "linked_by": link.linked_by,
    }


@router.get("/problem/{problem_id}/links")
async def list_incident_links(
    problem_id: int,
    db: AsyncSession = Depends(get_db_session),
    user: CurrentUser = Depends(get_current_user),
):
    await SQLEntityStore(db).fetch(EntityKind.PROBLEM, problem_id)
    result = await db.execute(
        select(IncidentProblemLink)
        .where(IncidentProblemLink.problem_id == problem_id)
        .order_by(IncidentProblemLink.id)
    )
    return {
        "items": [
            {"id": l.id, "incident_ref": l.incident_ref, "relationship_type": l.relationship_type}
            for l in result.scalars().all()
        ],
    }
