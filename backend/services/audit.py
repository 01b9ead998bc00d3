"""
Knowledge Hub - Audit Sink

The core writes one audit entry per governance transition and per migration
job start/cancel/terminal change. Persistence of the audit trail is external;
these sinks only define where entries go.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .content_models import utc_now

logger = logging.getLogger(__name__)


class AuditAction:
    KNOWLEDGE_SUBMITTED = "KNOWLEDGE_SUBMITTED"
    KNOWLEDGE_RESUBMITTED = "KNOWLEDGE_RESUBMITTED"
    KNOWLEDGE_ARCHIVED = "KNOWLEDGE_ARCHIVED"
    QUALITY_MARKED_SAFE = "QUALITY_MARKED_SAFE"
    QUALITY_REEVALUATED = "QUALITY_REEVALUATED"
    MIGRATION_CREATED = "MIGRATION_CREATED"
    MIGRATION_STARTED = "MIGRATION_STARTED"
    MIGRATION_CANCEL_REQUESTED = "MIGRATION_CANCEL_REQUESTED"
    MIGRATION_CANCELLED = "MIGRATION_CANCELLED"
    MIGRATION_COMPLETED = "MIGRATION_COMPLETED"
    MIGRATION_FAILED = "MIGRATION_FAILED"

    @staticmethod
    def for_review(status: str) -> str:
        """VALIDATION_APPROVED, VALIDATION_REJECTED, VALIDATION_REVISIONREQUESTED."""
        return f"VALIDATION_{status.upper()}"


class AuditSink(ABC):
    @abstractmethod
    async def record(
        self,
        action: str,
        actor_ref: str,
        target_ref: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Record one audit entry."""


class LoggingAuditSink(AuditSink):
    """Writes audit entries to the application log only."""

    async def record(self, action, actor_ref, target_ref, details=None):
        logger.info("AUDIT %s actor=%s target=%s details=%s", action, actor_ref, target_ref, details or {})


class InMemoryAuditSink(AuditSink):
    """Keeps entries in a list (demo mode and tests)."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    async def record(self, action, actor_ref, target_ref, details=None):
        self.entries.append({
            "action": action,
            "actor": actor_ref,
            "target": target_ref,
            "details": details or {},
            "timestamp": utc_now(),
        })

    def actions(self) -> List[str]:
        return [e["action"] for e in self.entries]


class MongoAuditSink(AuditSink):
    """Appends entries to a motor collection (audit_logs)."""

    def __init__(self, collection):
        self.collection = collection

    async def record(self, action, actor_ref, target_ref, details=None):
        await self.collection.insert_one({
            "action": action,
            "actor": actor_ref,
            "target": target_ref,
            "details": details or {},
            "timestamp": utc_now(),
        })
