"""
ITSM — Entity Store

The lifecycle engine never touches the database itself. Routers hand it a
snapshot fetched from an `EntityStore` and persist whatever it returns
through the same store, together with the audit record of the transition.

`SQLEntityStore` serialises writers per entity with an optimistic version
check: `persist` only updates the row when its stored version is the one
the snapshot was read at, otherwise it raises `Conflict`. Conflicts are
never retried here.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from approval_chain import ApprovalRecord
from itsm_errors import Conflict, NotFound
from lifecycle_engine import Actor, AuditRecord, EntityKind, LifecycleEntity, Priority
from models import (
    AuditEventType, AuditLog, ChangeRecord, IncidentProblemLink,
    ProblemRecord, ReleaseRecord, ServiceRequestRecord,
)

RECORD_MODELS: Dict[EntityKind, Type] = {
    EntityKind.CHANGE: ChangeRecord,
    EntityKind.PROBLEM: ProblemRecord,
    EntityKind.RELEASE: ReleaseRecord,
    EntityKind.SERVICE_REQUEST: ServiceRequestRecord,
}


class EntityStore(ABC):
    """Storage collaborator the lifecycle routes depend on"""

    @abstractmethod
    async def fetch(self, kind: EntityKind, entity_id: int) -> LifecycleEntity:
        ...

    @abstractmethod
    async def insert(self, entity: LifecycleEntity, actor: Actor, request_id: Optional[str] = None) -> LifecycleEntity:
        ...

    @abstractmethod
    async def persist(self, entity: LifecycleEntity, audit: AuditRecord, request_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, entity: LifecycleEntity, actor: Actor, request_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def dependency_count(self, kind: EntityKind, entity_id: int) -> int:
        ...


# ============================================================
# ROW <-> SNAPSHOT
# ============================================================

def _parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def row_to_entity(kind: EntityKind, row) -> LifecycleEntity:
    return LifecycleEntity(
        kind=kind,
        state=row.state,
        id=row.id,
        title=row.title,
        description=row.description,
        priority=Priority(row.priority),
        category=row.category,
        requested_by=row.requested_by,
        approved_by=row.approved_by,
        implemented_by=row.implemented_by,
        timestamps={k: _parse_instant(v) for k, v in (row.timestamps or {}).items()},
        approvals=[ApprovalRecord.from_dict(a) for a in (row.approvals or [])],
        due_by=row.due_by,
        version=row.version,
    )


def entity_columns(entity: LifecycleEntity) -> Dict[str, Any]:
    return {
        "title": entity.title,
        "description": entity.description,
        "state": entity.state,
        "priority": entity.priority.value,
        "category": entity.category,
        "requested_by": entity.requested_by,
        "approved_by": entity.approved_by,
        "implemented_by": entity.implemented_by,
        "timestamps": {k: v.isoformat() for k, v in entity.timestamps.items()},
        "approvals": [a.to_dict() for a in entity.approvals],
        "due_by": entity.due_by,
        "version": entity.version,
    }


# ============================================================
# SQLALCHEMY IMPLEMENTATION
# ============================================================

class SQLEntityStore(EntityStore):
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_row(self, kind: EntityKind, entity_id: int):
        row = await self.session.get(RECORD_MODELS[kind], entity_id)
        if row is None:
            raise NotFound(kind.value, entity_id)
        return row

    async def fetch(self, kind: EntityKind, entity_id: int) -> LifecycleEntity:
        return row_to_entity(kind, await self._get_row(kind, entity_id))

    async def list_entities(self, kind: EntityKind, state: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[LifecycleEntity]:
        model = RECORD_MODELS[kind]
        stmt = select(model).order_by(model.id.desc()).limit(limit).offset(offset)
        if state:
            stmt = stmt.where(model.state == state)
        result = await self.session.execute(stmt)
        return [row_to_entity(kind, row) for row in result.scalars().all()]

    async def insert(self, entity: LifecycleEntity, actor: Actor, request_id: Optional[str] = None) -> LifecycleEntity:
        row = RECORD_MODELS[entity.kind](**entity_columns(entity))
        self.session.add(row)
        await self.session.flush()
        self.session.add(AuditLog(
            event_type=AuditEventType.ENTITY_CREATED,
            user_id=actor.actor_id,
            actor_role=actor.role,
            resource_type=entity.kind.value,
            resource_id=str(row.id),
            to_state=entity.state,
            details={"category": entity.category, "priority": entity.priority.value},
            request_id=request_id,
        ))
        await self.session.commit()
        entity.id = row.id
        return entity

    async def persist(self, entity: LifecycleEntity, audit: AuditRecord, request_id: Optional[str] = None) -> None:
        model = RECORD_MODELS[entity.kind]
        expected_version = entity.version - 1
        stmt = (
            update(model)
            .where(model.id == entity.id, model.version == expected_version)
            .values(**entity_columns(entity))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            await self.session.rollback()
            # distinguish a vanished row from a concurrent writer
            await self._get_row(entity.kind, entity.id)
            raise Conflict(entity.kind.value, entity.id, expected_version)

        self.session.add(AuditLog(
            event_type=AuditEventType.ENTITY_TRANSITIONED,
            timestamp=audit.timestamp,
            user_id=audit.actor_id,
            actor_role=audit.actor_role,
            resource_type=audit.entity_kind.value,
            resource_id=str(audit.entity_id),
            action=audit.action,
            from_state=audit.from_state,
            to_state=audit.to_state,
            details={"approval_level": audit.approval_level} if audit.approval_level else None,
            request_id=request_id,
        ))
        await self.session.commit()

    async def delete(self, entity: LifecycleEntity, actor: Actor, request_id: Optional[str] = None) -> None:
        row = await self._get_row(entity.kind, entity.id)
        await self.session.delete(row)
        self.session.add(AuditLog(
            event_type=AuditEventType.ENTITY_DELETED,
            user_id=actor.actor_id,
            actor_role=actor.role,
            resource_type=entity.kind.value,
            resource_id=str(entity.id),
            from_state=entity.state,
            request_id=request_id,
        ))
        await self.session.commit()

    async def dependency_count(self, kind: EntityKind, entity_id: int) -> int:
        if kind != EntityKind.PROBLEM:
            return 0
        result = await self.session.execute(
            select(func.count(IncidentProblemLink.id)).where(IncidentProblemLink.problem_id == entity_id)
        )
        return result.scalar() or 0

    async def link_incident(
        self,
        problem_id: int,
        incident_ref: str,
        actor: Actor,
        relationship_type: str = "caused_by",
        request_id: Optional[str] = None,
    ) -> IncidentProblemLink:
        """Link an incident to a problem; linking the same incident twice is a no-op"""
        await self._get_row(EntityKind.PROBLEM, problem_id)
        result = await self.session.execute(
            select(IncidentProblemLink).where(
                IncidentProblemLink.problem_id == problem_id,
                IncidentProblemLink.incident_ref == incident_ref,
            )
        )
        existing = result.scalar_one_or_none()
        if existing:
            return existing

        link = IncidentProblemLink(
            problem_id=problem_id,
            incident_ref=incident_ref,
            relationship_type=relationship_type,
            linked_by=actor.actor_id,
        )
        self.session.add(link)
        self.session.add(AuditLog(
            event_type=AuditEventType.PROBLEM_LINKED,
            user_id=actor.actor_id,
            actor_role=actor.role,
            resource_type=EntityKind.PROBLEM.value,
            resource_id=str(problem_id),
            details={"incident_ref": incident_ref, "relationship_type": relationship_type},
            request_id=request_id,
        ))
        await self.session.commit()
        await self.session.refresh(link)
        return link
