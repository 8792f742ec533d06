"""
ITSM — Structured Logging System

JSON log entries with correlation IDs, an in-memory ring buffer of recent
entries, and helpers for the audit, lifecycle and compliance
events the routers emit. Engine modules log through the standard
`logging` module; this logger is for the service boundary.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Callable
from datetime import datetime, timezone
from enum import Enum
from collections import deque
import contextvars
import json
import uuid
import time
import traceback
import sys
import os


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def numeric(self) -> int:
        levels = {"debug": 10, "info": 20, "warning": 30, "error": 40, "critical": 50}
        return levels.get(self.value, 20)


class LogCategory(str, Enum):
    """Log categories for filtering"""
    REQUEST = "request"
    RESPONSE = "response"
    DATABASE = "database"
    AUTH = "auth"
    SYSTEM = "system"
    SECURITY = "security"
    PERFORMANCE = "performance"
    AUDIT = "audit"
    LIFECYCLE = "lifecycle"
    COMPLIANCE = "compliance"


@dataclass
class LogEntry:
    id: str
    timestamp: str
    level: LogLevel
    category: LogCategory
    message: str
    service: str
    correlation_id: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    duration_ms: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    stack_trace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category.value,
            "message": self.message,
            "service": self.service,
            "correlation_id": self.correlation_id,
            "request_id": self.request_id,
            "user_id": self.user_id,
            "duration_ms": self.duration_ms,
            "metadata": self.metadata,
            "tags": self.tags,
            "error": self.error,
            "stack_trace": self.stack_trace,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class RequestContext:
    """Context for request tracing"""
    request_id: str
    correlation_id: str
    user_id: Optional[str] = None
    start_time: float = field(default_factory=time.time)

    @staticmethod
    def create(correlation_id: Optional[str] = None, user_id: Optional[str] = None) -> "RequestContext":
        return RequestContext(
            request_id=str(uuid.uuid4())[:12],
            correlation_id=correlation_id or str(uuid.uuid4())[:16],
            user_id=user_id,
        )

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


_context_var: contextvars.ContextVar[Optional[RequestContext]] = contextvars.ContextVar(
    "request_context", default=None
)


def get_current_context() -> Optional[RequestContext]:
    return _context_var.get()


def set_current_context(context: RequestContext) -> contextvars.Token:
    return _context_var.set(context)


def clear_current_context() -> None:
    _context_var.set(None)


class LogBuffer:
    """Bounded in-memory buffer of recent entries"""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._buffer: deque = deque(maxlen=max_size)

    def append(self, entry: LogEntry) -> None:
        self._buffer.append(entry)

    def get_all(self) -> List[LogEntry]:
        return list(self._buffer)

    def clear(self) -> int:
        count = len(self._buffer)
        self._buffer.clear()
        return count

    def filter(
        self,
        level: Optional[LogLevel] = None,
        category: Optional[LogCategory] = None,
        correlation_id: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 100,
    ) -> List[LogEntry]:
        results = []
        for entry in reversed(self._buffer):
            if level and entry.level.numeric < level.numeric:
                continue
            if category and entry.category != category:
                continue
            if correlation_id and entry.correlation_id != correlation_id:
                continue
            if search and search.lower() not in entry.message.lower():
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results


class StructuredLogger:
    def __init__(
        self,
        service_name: str = "itsm-lifecycle",
        min_level: LogLevel = LogLevel.INFO,
        buffer_size: int = 10000,
        output_handlers: Optional[List[Callable[[LogEntry], None]]] = None,
    ):
        self.service_name = service_name
        self.min_level = min_level
        self.buffer = LogBuffer(buffer_size)
        self.output_handlers = output_handlers or []

    def add_handler(self, handler: Callable[[LogEntry], None]) -> None:
        self.output_handlers.append(handler)

    def _create_entry(
        self,
        level: LogLevel,
        category: LogCategory,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        duration_ms: Optional[float] = None,
        user_id: Optional[str] = None,
    ) -> LogEntry:
        context = get_current_context()

        entry = LogEntry(
            id=str(uuid.uuid4())[:12],
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            category=category,
            message=message,
            service=self.service_name,
            correlation_id=context.correlation_id if context else None,
            request_id=context.request_id if context else None,
            user_id=user_id or (context.user_id if context else None),
            duration_ms=duration_ms,
            metadata=metadata or {},
            tags=tags or [],
        )

        if error:
            entry.error = {"type": type(error).__name__, "message": str(error)}
            entry.stack_trace = traceback.format_exc()

        return entry

    def _log(self, level: LogLevel, category: LogCategory, message: str, **kwargs) -> Optional[LogEntry]:
        if level.numeric < self.min_level.numeric:
            return None

        entry = self._create_entry(level, category, message, **kwargs)
        self.buffer.append(entry)

        out = sys.stderr if level.numeric >= LogLevel.ERROR.numeric else sys.stdout
        print(entry.to_json(), file=out)

        for handler in self.output_handlers:
            try:
                handler(entry)
            except Exception as exc:
                print(f"log handler {handler!r} failed: {exc}", file=sys.stderr)

        return entry

    def debug(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.DEBUG, category, message, **kwargs)

    def info(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.INFO, category, message, **kwargs)

    def warning(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.WARNING, category, message, **kwargs)

    def error(self, message: str, category: LogCategory = LogCategory.SYSTEM, **kwargs) -> Optional[LogEntry]:
        return self._log(LogLevel.ERROR, category, message, **kwargs)

    # Convenience methods
    def audit(self, action: str, resource: str, **kwargs) -> Optional[LogEntry]:
        return self.info(
            f"Audit: {action} on {resource}",
            category=LogCategory.AUDIT,
            tags=["audit"],
            metadata={"action": action, "resource": resource, **kwargs.pop("metadata", {})},
            **kwargs,
        )

    def transition(self, kind: str, entity_id: Any, from_state: str, to_state: str, action: str, **kwargs) -> Optional[LogEntry]:
        return self.info(
            f"{kind} {entity_id}: {from_state} -> {to_state} ({action})",
            category=LogCategory.LIFECYCLE,
            tags=["lifecycle", kind],
            metadata={
                "kind": kind, "entity_id": entity_id,
                "from_state": from_state, "to_state": to_state, "action": action,
                **kwargs.pop("metadata", {}),
            },
            **kwargs,
        )

    def compliance(self, subject: str, status: str, **kwargs) -> Optional[LogEntry]:
        return self.info(
            f"Compliance {subject}: {status}",
            category=LogCategory.COMPLIANCE,
            tags=["compliance"],
            metadata={"subject": subject, "status": status, **kwargs.pop("metadata", {})},
            **kwargs,
        )

    def performance(self, operation: str, duration_ms: float, **kwargs) -> Optional[LogEntry]:
        level = LogLevel.INFO if duration_ms < 1000 else LogLevel.WARNING if duration_ms < 5000 else LogLevel.ERROR
        return self._log(level, LogCategory.PERFORMANCE, f"Performance: {operation}", duration_ms=duration_ms, **kwargs)

    def get_logs(self, **filters) -> List[LogEntry]:
        return self.buffer.filter(**filters)



class TimedOperation:
    """Context manager for timing operations"""

    def __init__(self, logger: StructuredLogger, operation: str, metadata: Optional[Dict[str, Any]] = None):
        self.logger = logger
        self.operation = operation
        self.metadata = metadata or {}
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.time() - self.start_time) * 1000
        if exc_type:
            self.logger.error(
                f"Operation failed: {self.operation}",
                category=LogCategory.PERFORMANCE,
                duration_ms=duration_ms,
                error=exc_val,
                metadata=self.metadata,
            )
        else:
            self.logger.performance(self.operation, duration_ms=duration_ms, metadata=self.metadata)
        return False


def _min_level_from_env() -> LogLevel:
    if os.getenv("DEBUG"):
        return LogLevel.DEBUG
    try:
        return LogLevel(os.getenv("LOG_LEVEL", "info").lower())
    except ValueError:
        return LogLevel.INFO


# Global singleton
_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get or create the global service logger"""
    global _logger
    if _logger is None:
        _logger = StructuredLogger(service_name="itsm-lifecycle", min_level=_min_level_from_env())
    return _logger
