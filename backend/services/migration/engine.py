"""
Knowledge Hub - Migration Job Engine

Runs bulk imports from external systems through the same admission gate and
governance workflow as interactive submissions.

Execution model:
- one asyncio task per started job; jobs run independently of each other
- within a job, batches are read and processed strictly in sequence
- all job state lives in the JobRegistry; the engine keeps only task handles
- cancellation is cooperative: cancel() sets a flag on the job, and the
  processing loop checks it once at the start of every batch, so a batch in
  flight always completes and its progress is persisted

Per-record rejections (validation, duplicates) are counted as failed and
logged on the job; they never fail the job. ConnectorFault, RegistryFault and
AdmissionFault end the job as Failed.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from ..admission import AdmissionGate, AdmissionOptions
from ..audit import AuditAction, AuditSink
from ..content_models import Actor, Capability, Origin, RawCandidate, utc_now
from ..errors import (
    AuthorizationError, ConnectorFault, DuplicateError, InvalidStateError, KnowledgeHubError,
    ValidationError,
)
from ..governance import GovernanceWorkflow
from ..hub_config import MIGRATION_MAX_BATCH_SIZE
from .models import (
    JobLogEntry, JobProgress, JobStatus, MigrationConfig, MigrationJob, SourceDescriptor,
)
from .registry import JobPatch, JobRegistry
from .sources import ConnectorRegistry, SourceConnector

logger = logging.getLogger(__name__)


class MigrationJobEngine:
    """
    Creates, starts, cancels and reports on migration jobs.

    Usage:
        engine = MigrationJobEngine(registry, connectors, gate, workflow, audit)
        job = await engine.create_job("Legacy KB", SourceDescriptor("json_file", {...}), admin)
        await engine.start(job.id, admin)
        status = await engine.get_status(job.id)
    """

    def __init__(
        self,
        registry: JobRegistry,
        connectors: ConnectorRegistry,
        gate: AdmissionGate,
        workflow: GovernanceWorkflow,
        audit: AuditSink,
        max_batch_size: int = MIGRATION_MAX_BATCH_SIZE
    ):
        self.registry = registry
        self.connectors = connectors
        self.gate = gate
        self.workflow = workflow
        self.audit = audit
        self.max_batch_size = max_batch_size
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Job control
    # ------------------------------------------------------------------

    async def create_job(
        self,
        name: str,
        source: Union[SourceDescriptor, Dict[str, Any]],
        actor: Actor,
        description: Optional[str] = None,
        config: Optional[MigrationConfig] = None
    ) -> MigrationJob:
        """Validate and persist a new job in Pending."""
        self._require_migrate(actor)
        if isinstance(source, dict):
            source = SourceDescriptor.from_dict(source)
        config = config or MigrationConfig()

        errors = self._validate_definition(name, source, config)
        if errors:
            raise ValidationError(errors)

        job = MigrationJob(
            name=name.strip(),
            description=description,
            source=source,
            config=config,
            initiator_id=actor.id,
        )
        job = await self.registry.create(job)
        await self._audit(
            AuditAction.MIGRATION_CREATED, actor.id, job.id,
            {"name": job.name, "source": source.system, "config": config.to_dict()},
        )
        logger.info("Migration job created: job=%s, source=%s", job.id, source.system)
        return job

    async def start(self, job_id: str, actor: Actor) -> MigrationJob:
        """
        Move a Pending job to InProgress and begin processing in the background.

        Raises InvalidStateError for any job not in Pending, so a job can only
        ever be started once.
        """
        self._require_migrate(actor)
        job = await self.registry.update(
            job_id,
            JobPatch(
                status=JobStatus.IN_PROGRESS.value,
                fields={"started_at": utc_now()},
                logs=[JobLogEntry.info(f"Migration started by {actor.id}")],
            ),
            expected_status=[JobStatus.PENDING.value],
        )
        # Once InProgress, only the processing loop may move the job on
        task = asyncio.create_task(self._run(job_id), name=f"migration-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))

        logger.info("Migration job started: job=%s, source=%s", job_id, job.source.system)
        await self._audit(AuditAction.MIGRATION_STARTED, actor.id, job_id)
        return job

    async def cancel(self, job_id: str, actor: Actor) -> MigrationJob:
        """
        Cancel a job.

        Pending jobs become Cancelled immediately with zero progress. For
        InProgress jobs the request is recorded and honoured at the next batch
        boundary; the returned job is still InProgress. Terminal jobs raise
        InvalidStateError.
        """
        self._require_migrate(actor)
        job = await self.registry.get(job_id)
        if job.is_terminal:
            raise InvalidStateError(
                f"Migration job {job_id} is already {job.status}", current_state=job.status
            )

        if job.status == JobStatus.PENDING.value:
            try:
                job = await self.registry.update(
                    job_id,
                    JobPatch(
                        status=JobStatus.CANCELLED.value,
                        fields={"completed_at": utc_now(), "cancel_requested": True},
                        logs=[JobLogEntry.info(f"Migration cancelled before start by {actor.id}")],
                    ),
                    expected_status=[JobStatus.PENDING.value],
                )
            except InvalidStateError:
                # Started concurrently; fall through to the cooperative path
                pass
            else:
                await self._audit(AuditAction.MIGRATION_CANCELLED, actor.id, job_id, {"processed": 0})
                logger.info("Migration job cancelled before start: job=%s", job_id)
                return job

        job = await self.registry.update(
            job_id,
            JobPatch(
                fields={"cancel_requested": True},
                logs=[JobLogEntry.info(f"Cancellation requested by {actor.id}")],
            ),
            expected_status=[JobStatus.IN_PROGRESS.value],
        )
        await self._audit(AuditAction.MIGRATION_CANCEL_REQUESTED, actor.id, job_id)
        logger.info("Migration job cancellation requested: job=%s", job_id)
        return job

    async def get_status(self, job_id: str) -> MigrationJob:
        return await self.registry.get(job_id)

    async def list_jobs(self, status: Optional[str] = None, limit: int = 50) -> List[MigrationJob]:
        return await self.registry.list_by_status(status, limit)

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> MigrationJob:
        """Wait for a running job's task to finish, then return its state."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return await self.registry.get(job_id)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Request cancellation of every running job and wait for them to stop
        at their next batch boundary.
        """
        job_ids = list(self._tasks)
        for job_id in job_ids:
            try:
                await self.registry.update(
                    job_id,
                    JobPatch(
                        fields={"cancel_requested": True},
                        logs=[JobLogEntry.info("Cancellation requested by server shutdown")],
                    ),
                    expected_status=[JobStatus.IN_PROGRESS.value],
                )
            except KnowledgeHubError as e:
                logger.warning("Could not request cancellation of job %s on shutdown: %s", job_id, e)

        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning("Migration task %s did not stop in time; cancelling", task.get_name())
            task.cancel()

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def _run(self, job_id: str) -> None:
        progress = JobProgress()
        try:
            job = await self.registry.get(job_id)
            progress = job.progress
            connector = self._resolve_connector(job)

            handle = await self._call(connector.open(job.source), "open", job)
            try:
                total = await self._call(connector.estimate_total(handle), "estimate_total", job)
                if total is not None:
                    progress.total = total
                    await self.registry.update(
                        job_id, JobPatch(progress=progress),
                        expected_status=[JobStatus.IN_PROGRESS.value],
                    )
                await self._process(job, connector, handle, progress)
            finally:
                await self._close(connector, handle, job)

        except KnowledgeHubError as e:
            # ConnectorFault, RegistryFault, AdmissionFault or invalid job configuration
            await self._fail(job_id, e, progress)
        except asyncio.CancelledError:
            logger.warning("Migration task for job %s was cancelled", job_id)
            raise
        except Exception as e:
            logger.exception("Unexpected error in migration job %s", job_id)
            await self._fail(job_id, e, progress)

    async def _process(
        self,
        job: MigrationJob,
        connector: SourceConnector,
        handle: Any,
        progress: JobProgress
    ) -> None:
        batch_number = 0
        while True:
            current = await self.registry.get(job.id)
            if current.cancel_requested:
                await self._finish(
                    job, JobStatus.CANCELLED, progress,
                    f"Migration cancelled after {batch_number} batches "
                    f"({progress.succeeded} imported, {progress.failed} failed)",
                    AuditAction.MIGRATION_CANCELLED,
                )
                return

            batch = await self._call(
                connector.next_batch(handle, job.config.batch_size), "next_batch", job
            )
            if not batch:
                break

            batch_number += 1
            logs = await self._process_batch(job, batch, progress)
            logs.append(JobLogEntry.info(
                f"Batch {batch_number} done: {len(batch)} records, "
                f"{progress.processed} processed so far"
            ))
            await self.registry.update(
                job.id, JobPatch(progress=progress, logs=logs),
                expected_status=[JobStatus.IN_PROGRESS.value],
            )

        await self._finish(
            job, JobStatus.COMPLETED, progress,
            f"Migration completed: {progress.succeeded} imported, {progress.failed} failed",
            AuditAction.MIGRATION_COMPLETED,
        )

    async def _process_batch(
        self,
        job: MigrationJob,
        batch: List[RawCandidate],
        progress: JobProgress
    ) -> List[JobLogEntry]:
        """Admit every record of one batch, updating progress in place."""
        logs: List[JobLogEntry] = []
        candidates = batch

        if job.config.validate_before_import:
            candidates = []
            for candidate in batch:
                try:
                    self.gate.validate(candidate)
                except ValidationError as e:
                    self._reject(job, candidate, e, progress, logs)
                else:
                    candidates.append(candidate)

        options = AdmissionOptions(
            skip_duplicates=job.config.skip_duplicates,
            origin=Origin.MIGRATED.value,
            author_id=job.initiator_id,
        )
        initiator = Actor(id=job.initiator_id)

        for candidate in candidates:
            try:
                result = await self.gate.admit(candidate, options)
            except (ValidationError, DuplicateError) as e:
                self._reject(job, candidate, e, progress, logs)
                continue

            record = result.record
            if not job.config.dry_run:
                await self.workflow.submit(record, initiator)
            progress.record_success()

            message = f"Imported {candidate.identity()} as record {record.id}"
            if job.config.dry_run:
                message = f"Dry run: {candidate.identity()} would be imported"
            if result.reasons:
                message += f" (flagged: {'; '.join(result.reasons)})"
            logs.append(JobLogEntry.info(message))

        return logs

    def _reject(self, job, candidate, error, progress, logs) -> None:
        progress.record_failure()
        if isinstance(error, DuplicateError):
            logs.append(JobLogEntry.warn(f"Skipped {candidate.identity()}: {error.message}"))
        else:
            logs.append(JobLogEntry.error(f"Rejected {candidate.identity()}: {error.message}"))
        logger.warning("Migration job %s rejected %s: %s", job.id, candidate.identity(), error.message)

    async def _finish(
        self,
        job: MigrationJob,
        status: JobStatus,
        progress: JobProgress,
        message: str,
        audit_action: str
    ) -> None:
        await self.registry.update(
            job.id,
            JobPatch(
                status=status.value,
                progress=progress,
                fields={"completed_at": utc_now()},
                logs=[JobLogEntry.info(message)],
            ),
            expected_status=[JobStatus.IN_PROGRESS.value],
        )
        await self._audit(audit_action, job.initiator_id, job.id, progress.to_dict())
        logger.info("Migration job %s %s: %s", job.id, status.value, message)

    async def _fail(self, job_id: str, error: Exception, progress: JobProgress) -> None:
        reason = f"{type(error).__name__}: {error}"
        logger.error("Migration job %s failed: %s", job_id, reason)
        try:
            job = await self.registry.update(
                job_id,
                JobPatch(
                    status=JobStatus.FAILED.value,
                    progress=progress,
                    fields={"completed_at": utc_now(), "error": reason},
                    logs=[JobLogEntry.error(f"Migration failed: {reason}")],
                ),
                expected_status=[JobStatus.IN_PROGRESS.value],
            )
        except KnowledgeHubError as e:
            logger.error("Could not record failure of migration job %s: %s", job_id, e)
            return
        await self._audit(AuditAction.MIGRATION_FAILED, job.initiator_id, job_id, {"error": reason})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate_definition(
        self,
        name: str,
        source: SourceDescriptor,
        config: MigrationConfig
    ) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if not isinstance(name, str) or not name.strip():
            errors["name"] = "Name is missing"
        if not source.system:
            errors["source"] = "Source system is missing"
        elif self.connectors.get(source.system) is None:
            errors["source"] = (
                f"Unknown source system '{source.system}'. Valid: {self.connectors.systems()}"
            )
        if not isinstance(config.batch_size, int) or isinstance(config.batch_size, bool):
            errors["batch_size"] = "Batch size must be an integer"
        elif not 1 <= config.batch_size <= self.max_batch_size:
            errors["batch_size"] = f"Batch size must be between 1 and {self.max_batch_size}"
        return errors

    def _resolve_connector(self, job: MigrationJob) -> SourceConnector:
        errors = self._validate_definition(job.name, job.source, job.config)
        if errors:
            raise ValidationError(errors, f"Invalid job configuration: {errors}")
        return self.connectors.get(job.source.system)

    async def _call(self, awaitable, operation: str, job: MigrationJob):
        """Await a connector call, turning unexpected errors into ConnectorFault."""
        try:
            return await awaitable
        except ConnectorFault:
            raise
        except Exception as e:
            raise ConnectorFault(
                f"Source '{job.source.system}' failed during {operation}: {e}"
            ) from e

    async def _close(self, connector: SourceConnector, handle: Any, job: MigrationJob) -> None:
        try:
            await connector.close(handle)
        except Exception as e:
            logger.warning("Closing source for migration job %s failed: %s", job.id, e)

    async def _audit(self, action: str, actor_ref: str, target_ref: str, details=None) -> None:
        """Record an audit entry; a failing sink never changes job state."""
        try:
            await self.audit.record(action, actor_ref, target_ref, details)
        except Exception as e:
            logger.error("Audit write %s for migration job %s failed: %s", action, target_ref, e)

    @staticmethod
    def _require_migrate(actor: Actor) -> None:
        if not actor.can(Capability.MIGRATE):
            raise AuthorizationError(f"Role '{actor.role}' is not allowed to run migrations")
