# itsm_errors.py — Error taxonomy for the lifecycle & compliance engine
# Each error kind carries a stable HTTP status and the offending fields,
# so the calling layer can map it to a response without string parsing.

from typing import Any, Dict, List, Optional


class EngineError(Exception):
    """Base class for every error raised by the engine and its store"""

    kind = "EngineError"
    http_status = 500

    def __init__(self, message: str, **fields: Any):
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "detail": self.message, **self.fields}


class IllegalTransition(EngineError):
    kind = "IllegalTransition"
    http_status = 409

    def __init__(self, current_state: str, action: str, reason: Optional[str] = None):
        message = f"Action '{action}' is not valid from state '{current_state}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current_state=current_state, action=action)
        self.current_state = current_state
        self.action = action


class Unauthorized(EngineError):
    kind = "Unauthorized"
    http_status = 403

    def __init__(self, required_roles: List[str], actor_role: str, action: str):
        super().__init__(
            f"Role '{actor_role}' may not perform '{action}'",
            required_roles=sorted(required_roles),
            actor_role=actor_role,
            action=action,
        )
        self.required_roles = sorted(required_roles)
        self.actor_role = actor_role


class TerminalState(EngineError):
    kind = "TerminalState"
    http_status = 409

    def __init__(self, state: str, action: str):
        super().__init__(
            f"Entity is in terminal state '{state}'; '{action}' is not allowed",
            current_state=state,
            action=action,
        )
        self.state = state


class HasDependents(EngineError):
    kind = "HasDependents"
    http_status = 409

    def __init__(self, dependency_count: int):
        super().__init__(
            f"Entity has {dependency_count} dependent record(s) and cannot be deleted",
            dependency_count=dependency_count,
        )
        self.dependency_count = dependency_count


class InvalidState(EngineError):
    kind = "InvalidState"
    http_status = 409

    def __init__(self, state: str, dependency_count: Optional[int] = None):
        super().__init__(
            f"Entity in state '{state}' cannot be deleted",
            current_state=state,
            dependency_count=dependency_count,
        )
        self.state = state
        self.dependency_count = dependency_count


class InvalidSample(EngineError):
    kind = "InvalidSample"
    http_status = 400

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid compliance sample ({field}): {reason}", field=field)
        self.field = field


class NotFound(EngineError):
    kind = "NotFound"
    http_status = 404

    def __init__(self, entity_kind: str, entity_id: Any):
        super().__init__(
            f"{entity_kind} {entity_id} not found",
            entity_kind=entity_kind,
            entity_id=entity_id,
        )
        self.entity_kind = entity_kind
        self.entity_id = entity_id


class Conflict(EngineError):
    """Raised by the store when the persisted version moved underneath us"""

    kind = "Conflict"
    http_status = 409

    def __init__(self, entity_kind: str, entity_id: Any, expected_version: int):
        super().__init__(
            f"{entity_kind} {entity_id} was modified concurrently",
            entity_kind=entity_kind,
            entity_id=entity_id,
            expected_version=expected_version,
        )
        self.expected_version = expected_version
