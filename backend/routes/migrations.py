"""
Knowledge Hub - Migrations Router

Create, start, cancel and monitor bulk-import jobs. Starting and cancelling
return immediately (202); the job progresses in the background and is polled
through GET /migrations/{job_id}.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field
import logging

from services.content_models import Actor
from services.errors import KnowledgeHubError
from services.hub_config import MIGRATION_DEFAULT_BATCH_SIZE
from services.migration import JobStatus, MigrationConfig, MigrationJobEngine, SourceDescriptor

from .common import get_actor, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/migrations", tags=["migrations"])

# Migration engine - set by main app
engine: Optional[MigrationJobEngine] = None


def set_dependencies(migration_engine: MigrationJobEngine):
    global engine
    engine = migration_engine


# ==================== MODELS ====================

class SourceModel(BaseModel):
    system: str
    connection: Dict[str, Any] = Field(default_factory=dict)


class ConfigModel(BaseModel):
    """Accepts both snake_case and camelCase keys."""
    model_config = ConfigDict(populate_by_name=True)

    batch_size: int = Field(MIGRATION_DEFAULT_BATCH_SIZE, alias="batchSize")
    validate_before_import: bool = Field(True, alias="validateBeforeImport")
    skip_duplicates: bool = Field(True, alias="skipDuplicates")
    dry_run: bool = Field(False, alias="dryRun")


class CreateMigrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    source: SourceModel
    config: ConfigModel = Field(default_factory=ConfigModel, alias="migrationConfig")


# ==================== ENDPOINTS ====================

@router.post("", status_code=201)
async def create_migration(request: CreateMigrationRequest, actor: Actor = Depends(get_actor)):
    try:
        job = await engine.create_job(
            request.name,
            SourceDescriptor(request.source.system, dict(request.source.connection)),
            actor,
            description=request.description,
            config=MigrationConfig(**request.config.model_dump()),
        )
    except KnowledgeHubError as e:
        raise http_error(e)
    return job.to_dict()


@router.get("")
async def list_migrations(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200)
):
    """List jobs, newest first."""
    if status and status not in [s.value for s in JobStatus]:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    try:
        jobs = await engine.list_jobs(status, limit)
    except KnowledgeHubError as e:
        raise http_error(e)
    return {"jobs": [j.to_dict() for j in jobs], "total": len(jobs)}


@router.get("/{job_id}")
async def get_migration(job_id: str):
    """Current status, progress and log of a job."""
    try:
        job = await engine.get_status(job_id)
    except KnowledgeHubError as e:
        raise http_error(e)
    return job.to_dict()


@router.post("/{job_id}/start", status_code=202)
async def start_migration(job_id: str, actor: Actor = Depends(get_actor)):
    try:
        job = await engine.start(job_id, actor)
    except KnowledgeHubError as e:
        raise http_error(e)
    return job.to_dict()


@router.post("/{job_id}/cancel", status_code=202)
async def cancel_migration(job_id: str, actor: Actor = Depends(get_actor)):
    """
    Pending jobs are cancelled immediately. Running jobs stop at the next
    batch boundary; poll the job to observe the Cancelled status.
    """
    try:
        job = await engine.cancel(job_id, actor)
    except KnowledgeHubError as e:
        raise http_error(e)
    return job.to_dict()
