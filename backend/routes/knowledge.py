"""
Knowledge Hub - Knowledge Router

Interactive submission, the governance queue and the quality-review lane.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel
import logging

from services.admission import AdmissionOptions
from services.content_models import Actor, ContentStatus, Priority, RawCandidate
from services.errors import KnowledgeHubError
from services.governance import GovernanceWorkflow

from .common import get_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/knowledge", tags=["knowledge"])

# Governance workflow - set by main app
workflow: Optional[GovernanceWorkflow] = None


def set_dependencies(governance: GovernanceWorkflow):
    global workflow
    workflow = governance


# ==================== MODELS ====================

class SubmissionRequest(BaseModel):
    # Everything optional so the admission gate reports all violations at once
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    region: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None
    attachments: Optional[List[Dict[str, Any]]] = None
    skip_duplicates: bool = True


class ReviewRequest(BaseModel):
    status: str
    notes: Optional[str] = None
    priority: str = Priority.MEDIUM.value


class ArchiveRequest(BaseModel):
    notes: Optional[str] = None


class QualityActionRequest(BaseModel):
    action: str  # mark_safe | archive
    notes: Optional[str] = None


# ==================== SUBMISSION ====================

@router.post("", status_code=201)
async def submit_knowledge(request: SubmissionRequest, actor: Actor = Depends(get_actor)):
    """Submit a knowledge item. Rejected submissions are not persisted."""
    candidate = RawCandidate.from_dict(request.model_dump(exclude={"skip_duplicates"}, exclude_none=True))
    candidate.author_id = actor.id
    try:
        result = await workflow.submit_candidate(
            candidate, actor, AdmissionOptions(skip_duplicates=request.skip_duplicates)
        )
    except KnowledgeHubError as e:
        raise http_error(e)
    return {
        "record": result.record.to_dict(),
        "outcome": result.outcome.value,
        "reasons": result.reasons,
    }


# ==================== QUEUES ====================

@router.get("")
async def list_knowledge(
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500)
):
    """List records, optionally by status."""
    if status and status not in [s.value for s in ContentStatus]:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    records = await workflow.list_by_status(status, limit)
    return {"records": [r.to_dict() for r in records], "total": len(records)}


@router.get("/queue")
async def get_pending_queue(limit: int = Query(100, ge=1, le=500)):
    """Normal governance queue: Pending records not flagged for quality review."""
    records = await workflow.list_pending(limit)
    return {"records": [r.to_dict() for r in records], "total": len(records)}


@router.get("/flagged")
async def get_flagged_queue(limit: int = Query(100, ge=1, le=500)):
    """Quality-review lane."""
    records = await workflow.list_flagged(limit)
    return {"records": [r.to_dict() for r in records], "total": len(records)}


@router.get("/{record_id}")
async def get_knowledge(record_id: str):
    try:
        record = await workflow.get_record(record_id)
    except KnowledgeHubError as e:
        raise http_error(e)
    return record.to_dict()


@router.get("/{record_id}/decisions")
async def get_decisions(record_id: str):
    try:
        decisions = await workflow.get_decisions(record_id)
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"decisions": [d.to_dict() for d in decisions]}


# ==================== GOVERNANCE ACTIONS ====================

@router.post("/{record_id}/review")
async def review_knowledge(record_id: str, request: ReviewRequest, actor: Actor = Depends(get_actor)):
    """
    Reviewer decision.

    status:
    - Approved
    - Rejected (notes required)
    - RevisionRequested (notes required)
    """
    try:
        record, decision = await workflow.review(
            record_id, request.status, actor, request.notes, request.priority
        )
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"record": record.to_dict(), "decision": decision.to_dict()}


@router.post("/{record_id}/resubmit")
async def resubmit_knowledge(record_id: str, actor: Actor = Depends(get_actor)):
    try:
        record = await workflow.resubmit(record_id, actor)
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"record": record.to_dict()}


@router.post("/{record_id}/archive")
async def archive_knowledge(
    record_id: str,
    request: Optional[ArchiveRequest] = None,
    actor: Actor = Depends(get_actor)
):
    notes = request.notes if request else None
    try:
        record, decision = await workflow.archive(record_id, actor, notes)
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"record": record.to_dict(), "decision": decision.to_dict()}


@router.post("/{record_id}/quality")
async def manage_quality(record_id: str, request: QualityActionRequest, actor: Actor = Depends(get_actor)):
    """Quality-review lane actions: mark_safe or archive."""
    try:
        if request.action == "mark_safe":
            record = await workflow.mark_safe(record_id, actor)
            return {"record": record.to_dict()}
        if request.action == "archive":
            record, decision = await workflow.archive_flagged(record_id, actor, request.notes)
            return {"record": record.to_dict(), "decision": decision.to_dict()}
    except KnowledgeHubError as e:
        raise http_error(e)
    raise HTTPException(status_code=400, detail=f"Invalid quality action '{request.action}'")


@router.post("/{record_id}/reevaluate")
async def reevaluate_knowledge(record_id: str, actor: Actor = Depends(get_actor)):
    """Recompute duplicate and quality scores for an existing record."""
    try:
        record = await workflow.reevaluate(record_id, actor)
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"record": record.to_dict()}
