"""
Knowledge Hub - Migration Job Models

A MigrationJob is a bulk-import unit of work. Its state lives in the job
registry and is addressed by id; the engine never shares job objects between
its processing loop and callers.

Lifecycle:
    Pending -> InProgress -> Completed | Failed | Cancelled
    Pending -> Cancelled
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..content_models import utc_now
from ..hub_config import MIGRATION_DEFAULT_BATCH_SIZE

TARGET_SYSTEM = "knowledge_hub"


class JobStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass
class SourceDescriptor:
    """External system name plus opaque connection parameters."""
    system: str
    connection: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"system": self.system, "connection": dict(self.connection)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceDescriptor":
        return cls(
            system=data.get("system", ""),
            connection=dict(data.get("connection") or data.get("connectionDetails") or {}),
        )


@dataclass
class MigrationConfig:
    batch_size: int = MIGRATION_DEFAULT_BATCH_SIZE
    validate_before_import: bool = True
    skip_duplicates: bool = True
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "validate_before_import": self.validate_before_import,
            "skip_duplicates": self.skip_duplicates,
            "dry_run": self.dry_run,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MigrationConfig":
        data = data or {}
        return cls(
            batch_size=data.get("batch_size", MIGRATION_DEFAULT_BATCH_SIZE),
            validate_before_import=data.get("validate_before_import", True),
            skip_duplicates=data.get("skip_duplicates", True),
            dry_run=data.get("dry_run", False),
        )


@dataclass
class JobProgress:
    """
    Aggregate counters. total is None until the connector reports it.
    Once processing starts, processed == succeeded + failed.
    """
    total: Optional[int] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def percentage(self) -> float:
        if not self.total:
            return 0.0
        return round(min(100.0, self.processed * 100.0 / self.total), 2)

    def record_success(self) -> None:
        self.succeeded += 1
        self.processed = self.succeeded + self.failed

    def record_failure(self) -> None:
        self.failed += 1
        self.processed = self.succeeded + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "percentage": self.percentage,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "JobProgress":
        data = data or {}
        return cls(
            total=data.get("total"),
            processed=data.get("processed", 0),
            succeeded=data.get("succeeded", 0),
            failed=data.get("failed", 0),
        )


@dataclass
class JobLogEntry:
    level: str
    message: str
    timestamp: str = field(default_factory=utc_now)

    @classmethod
    def info(cls, message: str) -> "JobLogEntry":
        return cls(LogLevel.INFO.value, message)

    @classmethod
    def warn(cls, message: str) -> "JobLogEntry":
        return cls(LogLevel.WARN.value, message)

    @classmethod
    def error(cls, message: str) -> "JobLogEntry":
        return cls(LogLevel.ERROR.value, message)

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "message": self.message, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobLogEntry":
        return cls(level=data["level"], message=data["message"], timestamp=data.get("timestamp") or utc_now())


@dataclass
class MigrationJob:
    name: str
    source: SourceDescriptor
    initiator_id: str
    description: Optional[str] = None
    target: str = TARGET_SYSTEM
    status: str = JobStatus.PENDING.value
    config: MigrationConfig = field(default_factory=MigrationConfig)
    progress: JobProgress = field(default_factory=JobProgress)
    logs: List[JobLogEntry] = field(default_factory=list)
    cancel_requested: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "source": self.source.to_dict(),
            "target": self.target,
            "status": self.status,
            "config": self.config.to_dict(),
            "progress": self.progress.to_dict(),
            "logs": [entry.to_dict() for entry in self.logs],
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "initiator_id": self.initiator_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at or self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationJob":
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            source=SourceDescriptor.from_dict(data.get("source", {})),
            target=data.get("target", TARGET_SYSTEM),
            status=data.get("status", JobStatus.PENDING.value),
            config=MigrationConfig.from_dict(data.get("config")),
            progress=JobProgress.from_dict(data.get("progress")),
            logs=[JobLogEntry.from_dict(e) for e in data.get("logs", [])],
            cancel_requested=data.get("cancel_requested", False),
            error=data.get("error"),
            initiator_id=data.get("initiator_id", ""),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at"),
        )
