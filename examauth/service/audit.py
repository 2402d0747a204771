from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Protocol

from examauth.logging import get_correlation_id, get_logger
from examauth.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    SECURITY = "security"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditSink(Protocol):
    def record(
        self,
        category: AuditCategory,
        severity: AuditSeverity,
        action: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None: ...


class AuditEventStore(Protocol):
    def record_audit_event(
        self,
        category: str,
        severity: str,
        action: str,
        *,
        actor: Optional[str] = None,
        details: Optional[dict] = None,
        correlation_id: Optional[str] = None,
    ) -> AuditEvent: ...


class StoreAuditSink:
    """Persists audit events through the store and mirrors them to the log.

    A failing store write is logged and re-raised; callers on an error path
    decide whether the original error or the audit failure wins.
    """

    def __init__(self, store: AuditEventStore) -> None:
        self.store = store

    def record(
        self,
        category: AuditCategory,
        severity: AuditSeverity,
        action: str,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        category_value = AuditCategory(category).value
        severity_value = AuditSeverity(severity).value
        log = logger.warning if severity_value in {"high", "critical"} else logger.info
        log(
            "audit_event",
            category=category_value,
            severity=severity_value,
            action=action,
            actor=actor,
            details=details or {},
        )
        try:
            self.store.record_audit_event(
                category_value,
                severity_value,
                action,
                actor=actor,
                details=details,
                correlation_id=get_correlation_id(),
            )
        except Exception as exc:
            logger.error("audit_persist_failed", action=action, error=str(exc))
            raise
