"""
Knowledge Hub - Content Models

Core data structures for knowledge submissions:
- RawCandidate: an unvalidated submission (interactive upload or migrated record)
- ContentRecord: an admitted unit of knowledge under governance
- ValidationDecision: one reviewer action against a ContentRecord
- Actor: the user performing an action, with role-derived capabilities
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =============================================================================
# ENUMERATIONS
# =============================================================================

class Category(str, Enum):
    """Fixed set of knowledge categories."""
    STRATEGY = "Strategy"
    TECHNICAL = "Technical"
    MARKET_RESEARCH = "Market Research"
    OPERATIONS = "Operations"
    FINANCE = "Finance"


class Region(str, Enum):
    """Regions a knowledge item may be scoped to."""
    NORTH_AMERICA = "North America"
    EUROPE = "Europe"
    ASIA_PACIFIC = "Asia Pacific"
    LATIN_AMERICA = "Latin America"
    MIDDLE_EAST = "Middle East"
    GLOBAL = "Global"


class Origin(str, Enum):
    """How a record entered the system."""
    DIRECT = "Direct"
    MIGRATED = "Migrated"


class ContentStatus(str, Enum):
    """Governance status of a ContentRecord."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    REVISION_REQUESTED = "RevisionRequested"
    ARCHIVED = "Archived"


class Priority(str, Enum):
    """Review priority recorded on a ValidationDecision."""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class Role(str, Enum):
    CONSULTANT = "Consultant"
    PROJECT_MANAGER = "Project Manager"
    KNOWLEDGE_CHAMPION = "Knowledge Champion"
    GOVERNANCE_COUNCIL = "Governance Council"
    ADMINISTRATOR = "Administrator"


class Capability(str, Enum):
    REVIEW = "review"      # approve / reject / request revision
    ARCHIVE = "archive"    # archive approved content
    QUALITY = "quality"    # act on the quality-review lane
    MIGRATE = "migrate"    # create / start / cancel migration jobs


ROLE_CAPABILITIES: Dict[str, FrozenSet[str]] = {
    Role.CONSULTANT.value: frozenset(),
    Role.PROJECT_MANAGER.value: frozenset(),
    Role.KNOWLEDGE_CHAMPION.value: frozenset({
        Capability.REVIEW.value, Capability.ARCHIVE.value, Capability.QUALITY.value,
    }),
    Role.GOVERNANCE_COUNCIL.value: frozenset({
        Capability.REVIEW.value, Capability.QUALITY.value,
    }),
    Role.ADMINISTRATOR.value: frozenset(c.value for c in Capability),
}

# Marker added to quality_issues when a near-duplicate is admitted anyway
DUPLICATE_MARKER = "Possible Duplicate"


# =============================================================================
# ACTOR
# =============================================================================

@dataclass(frozen=True)
class Actor:
    """A user reference plus the role that grants capabilities."""
    id: str
    role: str = Role.CONSULTANT.value

    @property
    def capabilities(self) -> FrozenSet[str]:
        return ROLE_CAPABILITIES.get(self.role, frozenset())

    def can(self, capability: str) -> bool:
        capability = capability.value if isinstance(capability, Capability) else capability
        return capability in self.capabilities


SYSTEM_ACTOR = Actor(id="system", role=Role.ADMINISTRATOR.value)


# =============================================================================
# ATTACHMENTS & CANDIDATES
# =============================================================================

@dataclass
class AttachmentRef:
    """Opaque blob-store handle plus descriptive metadata."""
    handle: str
    name: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "name": self.name,
            "content_type": self.content_type,
            "size": self.size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttachmentRef":
        return cls(
            handle=data.get("handle") or data.get("url", ""),
            name=data.get("name"),
            content_type=data.get("content_type") or data.get("type"),
            size=data.get("size"),
        )


@dataclass
class RawCandidate:
    """
    An unvalidated submission.

    Fields are kept as received (strings, possibly empty) so that the
    admission gate can report every violation at once.
    """
    title: Any = None
    description: Any = None
    category: Any = None
    region: Any = None
    tags: List[str] = field(default_factory=list)
    attachments: List[AttachmentRef] = field(default_factory=list)
    author_id: Optional[str] = None
    origin: str = Origin.DIRECT.value
    source_id: Optional[str] = None   # identifier in the external system, if migrated
    extra: Dict[str, Any] = field(default_factory=dict)

    def identity(self) -> str:
        """Short identifying label used in logs."""
        label = self.source_id or "?"
        title = self.title if isinstance(self.title, str) else ""
        return f"{label} '{title[:60]}'"

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags) if isinstance(self.tags, (list, tuple, set)) else self.tags,
            "origin": self.origin,
        }
        if self.region is not None:
            result["region"] = self.region
        if self.attachments:
            result["attachments"] = (
                [a.to_dict() if isinstance(a, AttachmentRef) else a for a in self.attachments]
                if isinstance(self.attachments, list) else self.attachments
            )
        if self.author_id:
            result["author_id"] = self.author_id
        if self.source_id:
            result["source_id"] = self.source_id
        if self.extra:
            result["extra"] = self.extra
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any], origin: Optional[str] = None) -> "RawCandidate":
        """
        Build a candidate from loosely-typed input, normalizing tags.

        Values of the wrong type are kept as received so that validation
        reports them as field errors.
        """
        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",")]
        if isinstance(tags, (list, tuple, set)):
            tags = [str(t).strip() for t in tags if str(t).strip()]

        attachments = data.get("attachments") or []
        if isinstance(attachments, list) and all(isinstance(a, dict) for a in attachments):
            attachments = [AttachmentRef.from_dict(a) for a in attachments]

        title = data.get("title")
        if isinstance(title, str):
            title = title.strip()
        description = data.get("description")
        if isinstance(description, str):
            description = description.strip()

        return cls(
            title=title,
            description=description,
            category=data.get("category"),
            region=data.get("region") or None,
            tags=tags,
            attachments=attachments,
            author_id=data.get("author_id") or data.get("author"),
            origin=origin or data.get("origin", Origin.DIRECT.value),
            source_id=data.get("source_id") or data.get("legacy_id"),
            extra=data.get("extra") or {},
        )


# =============================================================================
# CONTENT RECORD
# =============================================================================

@dataclass
class ContentRecord:
    """An admitted unit of knowledge."""
    title: str
    description: str
    category: str
    author_id: Optional[str] = None
    region: Optional[str] = None
    tags: Set[str] = field(default_factory=set)
    attachments: List[AttachmentRef] = field(default_factory=list)
    origin: str = Origin.DIRECT.value
    quality_score: int = 100
    quality_issues: List[str] = field(default_factory=list)
    duplicate_score: float = 0.0
    similar_items: List[str] = field(default_factory=list)
    status: str = ContentStatus.PENDING.value
    flagged: bool = False
    source_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)
    updated_at: Optional[str] = None

    @property
    def is_duplicate_flagged(self) -> bool:
        return DUPLICATE_MARKER in self.quality_issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "region": self.region,
            "tags": sorted(self.tags),
            "attachments": [a.to_dict() for a in self.attachments],
            "origin": self.origin,
            "quality_score": self.quality_score,
            "quality_issues": list(self.quality_issues),
            "duplicate_score": self.duplicate_score,
            "similar_items": list(self.similar_items),
            "status": self.status,
            "flagged": self.flagged,
            "source_id": self.source_id,
            "author_id": self.author_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at or self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentRecord":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data["description"],
            category=data["category"],
            author_id=data.get("author_id"),
            region=data.get("region"),
            tags=set(data.get("tags", [])),
            attachments=[AttachmentRef.from_dict(a) for a in data.get("attachments", [])],
            origin=data.get("origin", Origin.DIRECT.value),
            quality_score=data.get("quality_score", 100),
            quality_issues=list(data.get("quality_issues", [])),
            duplicate_score=data.get("duplicate_score", 0.0),
            similar_items=list(data.get("similar_items", [])),
            status=data.get("status", ContentStatus.PENDING.value),
            flagged=data.get("flagged", False),
            source_id=data.get("source_id"),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at"),
        )


# =============================================================================
# VALIDATION DECISION
# =============================================================================

@dataclass(frozen=True)
class ValidationDecision:
    """One completed reviewer action. Immutable once created."""
    record_id: str
    reviewer_id: str
    action: str
    from_status: str
    status: str
    notes: Optional[str] = None
    priority: str = Priority.MEDIUM.value
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "reviewer_id": self.reviewer_id,
            "action": self.action,
            "from_status": self.from_status,
            "status": self.status,
            "notes": self.notes,
            "priority": self.priority,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationDecision":
        return cls(
            id=data["id"],
            record_id=data["record_id"],
            reviewer_id=data["reviewer_id"],
            action=data["action"],
            from_status=data["from_status"],
            status=data["status"],
            notes=data.get("notes"),
            priority=data.get("priority", Priority.MEDIUM.value),
            created_at=data["created_at"],
        )
