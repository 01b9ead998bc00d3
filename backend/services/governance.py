"""
Knowledge Hub - Governance Workflow

Deterministic state machine for a ContentRecord's life after admission:

    Pending --approve-------------> Approved --archive--> Archived
    Pending --reject--------------> Rejected
    Pending --request_revision----> RevisionRequested --resubmit--> Pending

Guards:
- approve / reject / request_revision require the `review` capability
- reject and request_revision require non-empty notes
- archive requires the `archive` capability
- resubmit is performed by the record's author (or a reviewer)

Every transition except resubmission records exactly one ValidationDecision,
written atomically with the status change, and one audit entry.

Quality-review lane: records flagged at admission are listed separately from
the normal Pending queue. Its actions ("mark safe", "archive") require the
`quality` capability rather than `review`.
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .admission import AdmissionGate, AdmissionOptions, AdmissionResult
from .audit import AuditAction, AuditSink
from .content_models import (
    Actor, Capability, ContentRecord, ContentStatus, Priority,
    RawCandidate, ValidationDecision, utc_now,
)
from .content_store import ContentStore
from .errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError, ValidationError,
)

logger = logging.getLogger(__name__)


class GovernanceAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_REVISION = "request_revision"
    RESUBMIT = "resubmit"
    ARCHIVE = "archive"


# Format: {current_status: {action: next_status}}
GOVERNANCE_TRANSITIONS: Dict[str, Dict[str, str]] = {
    ContentStatus.PENDING.value: {
        GovernanceAction.APPROVE.value: ContentStatus.APPROVED.value,
        GovernanceAction.REJECT.value: ContentStatus.REJECTED.value,
        GovernanceAction.REQUEST_REVISION.value: ContentStatus.REVISION_REQUESTED.value,
    },
    ContentStatus.REVISION_REQUESTED.value: {
        GovernanceAction.RESUBMIT.value: ContentStatus.PENDING.value,
    },
    ContentStatus.APPROVED.value: {
        GovernanceAction.ARCHIVE.value: ContentStatus.ARCHIVED.value,
    },
    ContentStatus.REJECTED.value: {},
    ContentStatus.ARCHIVED.value: {},
}

# Review status -> action, as submitted by reviewers
REVIEW_ACTIONS: Dict[str, str] = {
    ContentStatus.APPROVED.value: GovernanceAction.APPROVE.value,
    ContentStatus.REJECTED.value: GovernanceAction.REJECT.value,
    ContentStatus.REVISION_REQUESTED.value: GovernanceAction.REQUEST_REVISION.value,
}

ACTION_CAPABILITY: Dict[str, str] = {
    GovernanceAction.APPROVE.value: Capability.REVIEW.value,
    GovernanceAction.REJECT.value: Capability.REVIEW.value,
    GovernanceAction.REQUEST_REVISION.value: Capability.REVIEW.value,
    GovernanceAction.ARCHIVE.value: Capability.ARCHIVE.value,
}

NOTES_REQUIRED = frozenset({
    GovernanceAction.REJECT.value,
    GovernanceAction.REQUEST_REVISION.value,
})


def can_transition(current_status: str, action: str) -> Tuple[bool, Optional[str], str]:
    """
    Check whether `action` is legal from `current_status`.

    Returns:
        (allowed, next_status, reason)
    """
    action_key = action.value if isinstance(action, GovernanceAction) else action
    transitions = GOVERNANCE_TRANSITIONS.get(current_status)
    if transitions is None:
        return (False, None, f"Unknown status '{current_status}'")

    next_status = transitions.get(action_key)
    if next_status is None:
        valid = list(transitions.keys())
        return (False, None, f"Action '{action_key}' not valid for status '{current_status}'. Valid: {valid}")

    return (True, next_status, "Transition allowed")


class GovernanceWorkflow:
    """
    Governance operations over the content store.

    All status changes go through the store's compare-and-update so that two
    reviewers acting on the same record cannot both succeed.
    """

    def __init__(self, store: ContentStore, audit: AuditSink, gate: Optional[AdmissionGate] = None):
        self.store = store
        self.audit = audit
        self.gate = gate

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def submit(self, record: ContentRecord, actor: Actor) -> ContentRecord:
        """Persist a newly admitted record; it enters the workflow as Pending."""
        if record.status != ContentStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Admitted records must start Pending, got '{record.status}'", record.status
            )
        await self.store.insert(record)
        await self.audit.record(
            AuditAction.KNOWLEDGE_SUBMITTED, actor.id, record.id,
            {
                "origin": record.origin,
                "flagged": record.flagged,
                "quality_score": record.quality_score,
                "duplicate_score": record.duplicate_score,
            },
        )
        logger.info(
            "Record submitted: record=%s, origin=%s, flagged=%s",
            record.id, record.origin, record.flagged
        )
        return record

    async def submit_candidate(
        self,
        candidate: RawCandidate,
        actor: Actor,
        options: Optional[AdmissionOptions] = None
    ) -> AdmissionResult:
        """Interactive submission: admit through the gate, then hand off."""
        if self.gate is None:
            raise RuntimeError("GovernanceWorkflow was built without an admission gate")
        options = options or AdmissionOptions()
        if options.author_id is None:
            options.author_id = actor.id
        result = await self.gate.admit(candidate, options)
        await self.submit(result.record, actor)
        return result

    # ------------------------------------------------------------------
    # Review transitions
    # ------------------------------------------------------------------

    async def review(
        self,
        record_id: str,
        status: str,
        actor: Actor,
        notes: Optional[str] = None,
        priority: str = Priority.MEDIUM.value
    ) -> Tuple[ContentRecord, ValidationDecision]:
        """Apply a reviewer decision: Approved, Rejected or RevisionRequested."""
        action = REVIEW_ACTIONS.get(status)
        if action is None:
            raise ValidationError({"status": f"Invalid review status '{status}'. Valid: {list(REVIEW_ACTIONS)}"})
        return await self._transition(record_id, action, actor, notes, priority)

    async def approve(self, record_id: str, actor: Actor, notes: Optional[str] = None):
        return await self._transition(record_id, GovernanceAction.APPROVE.value, actor, notes)

    async def reject(self, record_id: str, actor: Actor, notes: Optional[str]):
        return await self._transition(record_id, GovernanceAction.REJECT.value, actor, notes)

    async def request_revision(self, record_id: str, actor: Actor, notes: Optional[str]):
        return await self._transition(record_id, GovernanceAction.REQUEST_REVISION.value, actor, notes)

    async def archive(self, record_id: str, actor: Actor, notes: Optional[str] = None):
        return await self._transition(record_id, GovernanceAction.ARCHIVE.value, actor, notes)

    async def resubmit(self, record_id: str, actor: Actor) -> ContentRecord:
        """
        Author resubmission after a revision request. Returns the record to
        Pending without re-running admission checks and without a decision.
        """
        record = await self._load(record_id)
        allowed, next_status, reason = can_transition(record.status, GovernanceAction.RESUBMIT.value)
        if not allowed:
            logger.warning("Blocked resubmission: record=%s, reason=%s", record_id, reason)
            raise InvalidTransitionError(reason, record.status)
        if actor.id != record.author_id and not actor.can(Capability.REVIEW):
            raise AuthorizationError("Only the author or a reviewer can resubmit this record")

        updated = await self.store.compare_and_update(
            record_id,
            {"status": record.status},
            {"status": next_status, "updated_at": utc_now()},
        )
        if updated is None:
            raise await self._conflict(record_id, GovernanceAction.RESUBMIT.value)

        await self.audit.record(AuditAction.KNOWLEDGE_RESUBMITTED, actor.id, record_id, {})
        logger.info("Workflow transition: record=%s, %s -> %s (resubmit, actor=%s)",
                    record_id, record.status, next_status, actor.id)
        return updated

    # ------------------------------------------------------------------
    # Quality-review lane
    # ------------------------------------------------------------------

    async def mark_safe(self, record_id: str, actor: Actor) -> ContentRecord:
        """Clear the quality flag; the record re-enters the normal Pending queue."""
        self._require(actor, Capability.QUALITY.value, "mark records safe")
        record = await self._load(record_id)
        if not record.flagged:
            raise InvalidTransitionError(f"Record {record_id} is not flagged", record.status)

        updated = await self.store.compare_and_update(
            record_id,
            {"flagged": True, "status": record.status},
            {"flagged": False, "updated_at": utc_now()},
        )
        if updated is None:
            raise await self._conflict(record_id, "mark_safe")

        await self.audit.record(AuditAction.QUALITY_MARKED_SAFE, actor.id, record_id,
                                {"quality_issues": record.quality_issues})
        logger.info("Quality flag cleared: record=%s, actor=%s", record_id, actor.id)
        return updated

    async def archive_flagged(
        self,
        record_id: str,
        actor: Actor,
        notes: Optional[str] = None
    ) -> Tuple[ContentRecord, ValidationDecision]:
        """Archive a flagged record directly, bypassing Approved."""
        self._require(actor, Capability.QUALITY.value, "archive flagged records")
        record = await self._load(record_id)
        if not record.flagged:
            raise InvalidTransitionError(f"Record {record_id} is not flagged", record.status)
        if record.status == ContentStatus.ARCHIVED.value:
            raise InvalidTransitionError(f"Record {record_id} is already archived", record.status)

        decision = ValidationDecision(
            record_id=record_id,
            reviewer_id=actor.id,
            action=GovernanceAction.ARCHIVE.value,
            from_status=record.status,
            status=ContentStatus.ARCHIVED.value,
            notes=notes,
        )
        updated = await self.store.compare_and_update(
            record_id,
            {"flagged": True, "status": record.status},
            {"status": ContentStatus.ARCHIVED.value, "flagged": False, "updated_at": utc_now()},
            decision,
        )
        if updated is None:
            raise await self._conflict(record_id, "archive_flagged")

        await self.audit.record(AuditAction.KNOWLEDGE_ARCHIVED, actor.id, record_id,
                                {"from_status": record.status, "lane": "quality", "notes": notes})
        logger.info("Workflow transition: record=%s, %s -> Archived (quality lane, actor=%s)",
                    record_id, record.status, actor.id)
        return updated, decision

    async def reevaluate(self, record_id: str, actor: Actor) -> ContentRecord:
        """Explicitly recompute admission scores. The only way scores change."""
        self._require(actor, Capability.QUALITY.value, "re-evaluate records")
        if self.gate is None:
            raise RuntimeError("GovernanceWorkflow was built without an admission gate")
        record = await self._load(record_id)
        changes = await self.gate.reevaluate(record)
        changes["updated_at"] = utc_now()

        updated = await self.store.compare_and_update(record_id, {"status": record.status}, changes)
        if updated is None:
            raise await self._conflict(record_id, "reevaluate")

        await self.audit.record(AuditAction.QUALITY_REEVALUATED, actor.id, record_id, {
            "quality_score": changes["quality_score"],
            "duplicate_score": changes["duplicate_score"],
            "flagged": changes["flagged"],
        })
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_record(self, record_id: str) -> ContentRecord:
        return await self._load(record_id)

    async def get_decisions(self, record_id: str) -> List[ValidationDecision]:
        await self._load(record_id)
        return await self.store.list_decisions(record_id)

    async def list_pending(self, limit: int = 100) -> List[ContentRecord]:
        """Normal governance queue: Pending and not flagged."""
        return await self.store.list_records(ContentStatus.PENDING.value, flagged=False, limit=limit)

    async def list_flagged(self, limit: int = 100) -> List[ContentRecord]:
        """Quality-review lane."""
        return await self.store.list_records(flagged=True, limit=limit)

    async def list_by_status(self, status: Optional[str] = None, limit: int = 100) -> List[ContentRecord]:
        return await self.store.list_records(status, limit=limit)

    # ------------------------------------------------------------------

    async def _transition(
        self,
        record_id: str,
        action: str,
        actor: Actor,
        notes: Optional[str] = None,
        priority: str = Priority.MEDIUM.value
    ) -> Tuple[ContentRecord, ValidationDecision]:
        record = await self._load(record_id)

        allowed, next_status, reason = can_transition(record.status, action)
        if not allowed:
            logger.warning(
                "Invalid workflow transition: record=%s, current=%s, action=%s, reason=%s",
                record_id, record.status, action, reason
            )
            raise InvalidTransitionError(reason, record.status)

        self._require(actor, ACTION_CAPABILITY[action], action.replace("_", " "))

        notes = notes.strip() if isinstance(notes, str) else None
        if action in NOTES_REQUIRED and not notes:
            raise ValidationError({"notes": f"Notes are required to {action.replace('_', ' ')}"})

        if priority not in [p.value for p in Priority]:
            raise ValidationError({"priority": f"Invalid priority '{priority}'"})

        decision = ValidationDecision(
            record_id=record_id,
            reviewer_id=actor.id,
            action=action,
            from_status=record.status,
            status=next_status,
            notes=notes or None,
            priority=priority,
        )
        updated = await self.store.compare_and_update(
            record_id,
            {"status": record.status},
            {"status": next_status, "updated_at": utc_now()},
            decision,
        )
        if updated is None:
            raise await self._conflict(record_id, action)

        audit_action = (
            AuditAction.KNOWLEDGE_ARCHIVED if action == GovernanceAction.ARCHIVE.value
            else AuditAction.for_review(next_status)
        )
        await self.audit.record(audit_action, actor.id, record_id, {
            "decision_id": decision.id,
            "from_status": record.status,
            "to_status": next_status,
            "notes": decision.notes,
        })
        logger.info(
            "Workflow transition: record=%s, %s -> %s (action=%s, actor=%s)",
            record_id, record.status, next_status, action, actor.id
        )
        return updated, decision

    async def _load(self, record_id: str) -> ContentRecord:
        record = await self.store.get(record_id)
        if record is None:
            raise NotFoundError(f"Content record not found: {record_id}")
        return record

    async def _conflict(self, record_id: str, action: str) -> InvalidTransitionError:
        """Build the error for a compare-and-update that lost a race."""
        current = await self.store.get(record_id)
        status = current.status if current else None
        logger.warning("Concurrent update blocked %s on record=%s (now %s)", action, record_id, status)
        return InvalidTransitionError(
            f"Record {record_id} changed concurrently (now '{status}'); '{action}' not applied", status
        )

    @staticmethod
    def _require(actor: Actor, capability: str, description: str) -> None:
        if not actor.can(capability):
            raise AuthorizationError(f"Role '{actor.role}' is not allowed to {description}")
