from __future__ import annotations

from typing import Any, List, Optional, Protocol

from tokenforge.logging import get_logger, sanitize_error_message
from tokenforge.service.clock import Clock, system_clock
from tokenforge.service.context import ANONYMOUS, AuthContext
from tokenforge.storage.models import AuditAction, AuditEvent

logger = get_logger(__name__)


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...


class AuditRecorder:
    """Append-only audit trail. Writes are best effort and never raise."""

    def __init__(self, store: AuditStore, clock: Clock | None = None) -> None:
        self.store = store
        self.clock = clock or system_clock

    def record(
        self,
        action: AuditAction,
        *,
        user_id: Optional[str] = None,
        context: Optional[AuthContext] = None,
        success: bool = True,
        detail: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        ctx = context or ANONYMOUS
        event = AuditEvent(
            id=self.clock.new_id(),
            action=action,
            user_id=user_id,
            ip_addr=ctx.ip_addr,
            user_agent=ctx.user_agent,
            success=success,
            detail=detail or {},
            error_message=sanitize_error_message(error_message) if error_message else None,
            created_at=self.clock.now(),
        )
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action.value,
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return event

    def events_for(
        self,
        user_id: Optional[str] = None,
        *,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Newest-first forensic query."""
        return self.store.list_audit_events(user_id=user_id, action=action, limit=limit)
