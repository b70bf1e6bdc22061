import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

audit_logger = logging.getLogger("app.audit")


class AuditEvent(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action: str
    session_id: str
    client_address: Optional[str] = None
    outcome: str
    detail: Optional[str] = None


class AuditSink(ABC):
    @abstractmethod
    def emit(self, event: AuditEvent) -> None:
        pass


class LoggingAuditSink(AuditSink):
    """Writes one structured record per event to the audit logger."""

    def __init__(self, logger: logging.Logger = audit_logger):
        self.logger = logger

    def emit(self, event: AuditEvent) -> None:
        level = logging.INFO if event.outcome in ("accepted", "duplicate", "complete", "aborted") else logging.WARNING
        self.logger.log(
            level,
            f"{event.action} session={event.session_id} client={event.client_address} outcome={event.outcome}",
            extra={"audit": event.model_dump(mode="json")},
        )


class MemoryAuditSink(AuditSink):
    """Keeps events in a list, for tests and local debugging."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def outcomes(self, action: Optional[str] = None) -> List[str]:
        return [e.outcome for e in self.events if action is None or e.action == action]
