"""
Tests for the Migration Job Engine

Job lifecycle, batch processing, per-record failures, cancellation and
systemic failures.
"""
import asyncio

import pytest

from services.admission import AdmissionGate, DuplicateDetector, HeuristicQualityScorer
from services.audit import AuditAction, InMemoryAuditSink
from services.content_models import ContentStatus, Origin
from services.errors import (
    AuthorizationError, InvalidStateError, NotFoundError, RegistryFault, ValidationError,
)
from services.hub_config import GateConfig
from services.migration import (
    ConnectorRegistry, InMemoryConnector, InMemoryJobRegistry, JobStatus,
    MigrationConfig, MigrationJobEngine, SourceDescriptor,
)

from conftest import ADMIN, CHAMPION, SAMPLE_ITEMS


def legacy(index, legacy_id, **overrides):
    data = dict(SAMPLE_ITEMS[index], legacy_id=legacy_id)
    data.update(overrides)
    return data


IN_MEMORY = SourceDescriptor("in_memory", {"dataset": "default"})


class GatedConnector(InMemoryConnector):
    """Blocks every read until released, so tests can act mid-job."""

    def __init__(self):
        super().__init__(system="gated")
        self.reading = asyncio.Event()
        self.release = asyncio.Event()

    async def next_batch(self, handle, batch_size):
        self.reading.set()
        await self.release.wait()
        return await super().next_batch(handle, batch_size)


class FailingReadConnector(InMemoryConnector):
    """Serves the first batch, then loses the connection."""

    def __init__(self):
        super().__init__(system="flaky")
        self.calls = 0

    async def next_batch(self, handle, batch_size):
        self.calls += 1
        if self.calls > 1:
            raise OSError("connection reset by peer")
        return await super().next_batch(handle, batch_size)


class BrokenDetector(DuplicateDetector):
    async def check(self, text, exclude_id=None):
        raise RuntimeError("similarity index offline")


class UnreachableAuditSink(InMemoryAuditSink):
    """Rejects every migration audit entry."""

    async def record(self, action, actor_ref, target_ref, details=None):
        if action.startswith("MIGRATION_"):
            raise ConnectionError("audit store unreachable")
        await super().record(action, actor_ref, target_ref, details)


class RecordingRegistry(InMemoryJobRegistry):
    """Keeps every progress snapshot written by the engine."""

    def __init__(self):
        super().__init__()
        self.snapshots = []

    async def update(self, job_id, patch, expected_status=None):
        if patch.progress is not None:
            p = patch.progress
            self.snapshots.append((p.total, p.processed, p.succeeded, p.failed))
        return await super().update(job_id, patch, expected_status)


class ProgressOutageRegistry(InMemoryJobRegistry):
    """Fails batch progress writes; status changes still succeed."""

    async def update(self, job_id, patch, expected_status=None):
        if patch.status is None and patch.progress is not None and patch.logs:
            raise RegistryFault("registry unavailable")
        return await super().update(job_id, patch, expected_status)


async def run_job(engine, connector, records, config=None, source=IN_MEMORY):
    connector.add_records(records)
    job = await engine.create_job("Legacy KB import", source, ADMIN, config=config)
    await engine.start(job.id, ADMIN)
    return await engine.wait(job.id, timeout=5)


class TestCreateJob:
    """Tests for MigrationJobEngine.create_job."""

    @pytest.mark.asyncio
    async def test_creates_pending_job(self, engine, audit):
        job = await engine.create_job("Legacy KB import", IN_MEMORY, ADMIN, description="Wiki export")

        assert job.status == JobStatus.PENDING.value
        assert job.initiator_id == ADMIN.id
        assert job.progress.processed == 0
        assert (await engine.get_status(job.id)).description == "Wiki export"
        assert audit.actions() == [AuditAction.MIGRATION_CREATED]

    @pytest.mark.asyncio
    async def test_accepts_source_as_dict(self, engine):
        job = await engine.create_job("Import", {"system": "in_memory", "connection": {}}, ADMIN)
        assert job.source.system == "in_memory"

    @pytest.mark.asyncio
    async def test_unknown_source_system(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_job("Import", SourceDescriptor("sharepoint"), ADMIN)
        assert "source" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_invalid_batch_size(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            await engine.create_job("Import", IN_MEMORY, ADMIN, config=MigrationConfig(batch_size=0))
        assert "batch_size" in exc_info.value.fields

    @pytest.mark.asyncio
    async def test_missing_name(self, engine):
        with pytest.raises(ValidationError):
            await engine.create_job("  ", IN_MEMORY, ADMIN)

    @pytest.mark.asyncio
    async def test_requires_migrate_capability(self, engine):
        with pytest.raises(AuthorizationError):
            await engine.create_job("Import", IN_MEMORY, CHAMPION)

    @pytest.mark.asyncio
    async def test_list_jobs(self, engine):
        first = await engine.create_job("First", IN_MEMORY, ADMIN)
        await engine.cancel(first.id, ADMIN)
        second = await engine.create_job("Second", IN_MEMORY, ADMIN)

        pending = await engine.list_jobs(JobStatus.PENDING.value)
        assert [j.id for j in pending] == [second.id]
        assert {j.id for j in await engine.list_jobs()} == {first.id, second.id}


class TestRunJob:
    """Tests for job execution."""

    @pytest.mark.asyncio
    async def test_duplicate_within_job_counts_as_failed(self, engine, connector, store):
        """Three records, batch size 2, record 2 duplicates record 1."""
        records = [
            legacy(0, "KB-1"),
            legacy(0, "KB-2", title="European pricing strategy review v2"),
            legacy(1, "KB-3"),
        ]

        job = await run_job(engine, connector, records, MigrationConfig(batch_size=2))

        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.total == 3
        assert job.progress.processed == 3
        assert job.progress.succeeded == 2
        assert job.progress.failed == 1
        assert job.progress.percentage == 100.0
        assert len([e for e in job.logs if "KB-2" in e.message]) == 1
        assert len(await store.list_records()) == 2

    @pytest.mark.asyncio
    async def test_imported_records_enter_governance(self, engine, connector, store, audit):
        job = await run_job(engine, connector, [legacy(0, "KB-1"), legacy(1, "KB-2")])

        records = await store.list_records()
        assert len(records) == 2
        for record in records:
            assert record.status == ContentStatus.PENDING.value
            assert record.origin == Origin.MIGRATED.value
            assert record.author_id == ADMIN.id
        assert {r.source_id for r in records} == {"KB-1", "KB-2"}
        assert audit.actions().count(AuditAction.KNOWLEDGE_SUBMITTED) == 2
        assert audit.actions()[-1] == AuditAction.MIGRATION_COMPLETED
        assert job.started_at is not None
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_source_author_is_kept(self, engine, connector, store):
        await run_job(engine, connector, [legacy(0, "KB-1", author="u-legacy-7")])
        records = await store.list_records()
        assert records[0].author_id == "u-legacy-7"

    @pytest.mark.asyncio
    async def test_invalid_records_are_logged_and_skipped(self, engine, connector):
        records = [
            legacy(0, "KB-1"),
            legacy(1, "KB-BAD", category="Gossip"),
            {"legacy_id": "KB-EMPTY"},
        ]

        job = await run_job(engine, connector, records)

        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.succeeded == 1
        assert job.progress.failed == 2
        errors = [e for e in job.logs if e.level == "error"]
        assert len(errors) == 2
        assert any("KB-BAD" in e.message and "category" in e.message for e in errors)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("validate_before_import", [True, False])
    async def test_wrongly_typed_fields_fail_only_their_record(
        self, engine, connector, validate_before_import
    ):
        records = [
            legacy(0, "KB-1"),
            legacy(1, "KB-2", attachments=None),
            legacy(2, "KB-TAGS", tags=5),
            legacy(3, "KB-FILES", attachments=["scan.pdf"]),
            legacy(4, "KB-5"),
        ]

        job = await run_job(
            engine, connector, records,
            MigrationConfig(batch_size=10, validate_before_import=validate_before_import),
        )

        assert job.status == JobStatus.COMPLETED.value
        assert job.error is None
        assert (job.progress.processed, job.progress.succeeded, job.progress.failed) == (5, 3, 2)
        errors = [e.message for e in job.logs if e.level == "error"]
        assert any("KB-TAGS" in m and "tags" in m for m in errors)
        assert any("KB-FILES" in m and "attachments" in m for m in errors)

    @pytest.mark.asyncio
    async def test_validation_without_pre_validation(self, engine, connector):
        """Schema errors are still caught by admission when pre-validation is off."""
        records = [legacy(0, "KB-1"), {"legacy_id": "KB-EMPTY"}]
        job = await run_job(engine, connector, records, MigrationConfig(validate_before_import=False))

        assert job.progress.succeeded == 1
        assert job.progress.failed == 1

    @pytest.mark.asyncio
    async def test_duplicates_admitted_when_not_skipped(self, engine, connector, store):
        records = [legacy(0, "KB-1"), legacy(0, "KB-2")]
        job = await run_job(engine, connector, records, MigrationConfig(skip_duplicates=False))

        assert job.progress.succeeded == 2
        flagged = await store.list_records(flagged=True)
        assert [r.source_id for r in flagged] == ["KB-2"]

    @pytest.mark.asyncio
    async def test_dry_run_does_not_persist(self, engine, connector, store, audit):
        job = await run_job(
            engine, connector, [legacy(0, "KB-1"), legacy(1, "KB-2")], MigrationConfig(dry_run=True)
        )

        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.succeeded == 2
        assert await store.list_records() == []
        assert AuditAction.KNOWLEDGE_SUBMITTED not in audit.actions()

    @pytest.mark.asyncio
    async def test_unknown_total(self, engine, connector):
        connector.report_total = False
        job = await run_job(engine, connector, [legacy(0, "KB-1")])

        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.total is None
        assert job.progress.processed == 1

    @pytest.mark.asyncio
    async def test_empty_source_completes(self, engine, connector):
        job = await run_job(engine, connector, [])
        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.total == 0
        assert job.progress.processed == 0

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, connector, gate, workflow, audit):
        registry = RecordingRegistry()
        connectors = ConnectorRegistry()
        connectors.register(connector)
        engine = MigrationJobEngine(registry, connectors, gate, workflow, audit)
        records = [legacy(i % 5, f"KB-{i}") for i in range(7)]

        job = await run_job(engine, connector, records, MigrationConfig(batch_size=2))

        processed = [s[1] for s in registry.snapshots]
        assert processed == sorted(processed)
        assert all(s[1] == s[2] + s[3] for s in registry.snapshots)
        assert all(s[0] == 7 for s in registry.snapshots)
        assert job.progress.processed == 7
        assert job.progress.succeeded == 5
        assert job.progress.failed == 2

    @pytest.mark.asyncio
    async def test_concurrent_jobs_are_independent(self, engine, connector):
        connector.add_records([legacy(0, "A-1"), legacy(1, "A-2")], dataset="a")
        connector.add_records([legacy(2, "B-1")], dataset="b")
        job_a = await engine.create_job("A", SourceDescriptor("in_memory", {"dataset": "a"}), ADMIN)
        job_b = await engine.create_job("B", SourceDescriptor("in_memory", {"dataset": "b"}), ADMIN)

        await engine.start(job_a.id, ADMIN)
        await engine.start(job_b.id, ADMIN)
        job_a = await engine.wait(job_a.id, timeout=5)
        job_b = await engine.wait(job_b.id, timeout=5)

        assert job_a.progress.succeeded == 2
        assert job_b.progress.succeeded == 1
        assert job_a.status == job_b.status == JobStatus.COMPLETED.value


class TestStart:
    """Tests for MigrationJobEngine.start."""

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, engine, connector):
        connector.add_records([legacy(0, "KB-1")])
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)

        started = await engine.start(job.id, ADMIN)
        assert started.status == JobStatus.IN_PROGRESS.value
        assert started.started_at is not None

        with pytest.raises(InvalidStateError):
            await engine.start(job.id, ADMIN)
        await engine.wait(job.id, timeout=5)

        with pytest.raises(InvalidStateError):
            await engine.start(job.id, ADMIN)

    @pytest.mark.asyncio
    async def test_audit_outage_does_not_strand_job(self, connector, gate, workflow, job_registry):
        connectors = ConnectorRegistry()
        connectors.register(connector)
        audit = UnreachableAuditSink()
        engine = MigrationJobEngine(job_registry, connectors, gate, workflow, audit)
        connector.add_records([legacy(0, "KB-1")])
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)

        started = await engine.start(job.id, ADMIN)
        assert started.status == JobStatus.IN_PROGRESS.value

        job = await engine.wait(job.id, timeout=5)
        assert job.status == JobStatus.COMPLETED.value
        assert job.progress.succeeded == 1
        assert audit.actions() == []

    @pytest.mark.asyncio
    async def test_start_unknown_job(self, engine):
        with pytest.raises(NotFoundError):
            await engine.start("missing", ADMIN)

    @pytest.mark.asyncio
    async def test_start_requires_migrate_capability(self, engine):
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)
        with pytest.raises(AuthorizationError):
            await engine.start(job.id, CHAMPION)


class TestCancel:
    """Tests for MigrationJobEngine.cancel."""

    @pytest.mark.asyncio
    async def test_cancel_pending_is_immediate(self, engine, audit):
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)

        cancelled = await engine.cancel(job.id, ADMIN)

        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.progress.processed == 0
        assert cancelled.completed_at is not None
        assert audit.actions()[-1] == AuditAction.MIGRATION_CANCELLED

        with pytest.raises(InvalidStateError):
            await engine.start(job.id, ADMIN)

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, engine, connector):
        job = await run_job(engine, connector, [legacy(0, "KB-1")])
        with pytest.raises(InvalidStateError):
            await engine.cancel(job.id, ADMIN)

    @pytest.mark.asyncio
    async def test_cancel_before_first_batch(self, engine, connector, store):
        connector.add_records([legacy(0, "KB-1"), legacy(1, "KB-2")])
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)
        await engine.start(job.id, ADMIN)

        requested = await engine.cancel(job.id, ADMIN)
        assert requested.status == JobStatus.IN_PROGRESS.value
        assert requested.cancel_requested is True

        job = await engine.wait(job.id, timeout=5)
        assert job.status == JobStatus.CANCELLED.value
        assert job.progress.processed == 0
        assert await store.list_records() == []

    @pytest.mark.asyncio
    async def test_batch_in_flight_completes(self, engine, store, audit):
        gated = GatedConnector()
        engine.connectors.register(gated)
        gated.add_records([legacy(i, f"KB-{i}") for i in range(4)])
        job = await engine.create_job(
            "Import", SourceDescriptor("gated"), ADMIN, config=MigrationConfig(batch_size=2)
        )

        await engine.start(job.id, ADMIN)
        await gated.reading.wait()
        await engine.cancel(job.id, ADMIN)
        gated.release.set()
        job = await engine.wait(job.id, timeout=5)

        assert job.status == JobStatus.CANCELLED.value
        assert job.progress.processed == 2
        assert job.progress.succeeded == 2
        assert job.progress.total == 4
        assert len(await store.list_records()) == 2
        assert gated.opened[0].closed is True
        assert AuditAction.MIGRATION_CANCEL_REQUESTED in audit.actions()
        assert audit.actions()[-1] == AuditAction.MIGRATION_CANCELLED

    @pytest.mark.asyncio
    async def test_shutdown_stops_running_jobs(self, engine):
        gated = GatedConnector()
        engine.connectors.register(gated)
        gated.add_records([legacy(i, f"KB-{i}") for i in range(4)])
        job = await engine.create_job(
            "Import", SourceDescriptor("gated"), ADMIN, config=MigrationConfig(batch_size=2)
        )

        await engine.start(job.id, ADMIN)
        await gated.reading.wait()
        gated.release.set()
        await engine.shutdown(timeout=5)

        job = await engine.get_status(job.id)
        assert job.status == JobStatus.CANCELLED.value
        assert job.progress.processed == 2


class TestJobFailure:
    """Systemic failures end the job as Failed."""

    @pytest.mark.asyncio
    async def test_connector_cannot_open(self, engine, audit):
        job = await engine.create_job(
            "Import", SourceDescriptor("in_memory", {"dataset": "missing"}), ADMIN
        )
        await engine.start(job.id, ADMIN)
        job = await engine.wait(job.id, timeout=5)

        assert job.status == JobStatus.FAILED.value
        assert "ConnectorFault" in job.error
        assert job.logs[-1].level == "error"
        assert audit.actions()[-1] == AuditAction.MIGRATION_FAILED

    @pytest.mark.asyncio
    async def test_connector_fails_mid_job(self, engine, store):
        flaky = FailingReadConnector()
        engine.connectors.register(flaky)
        flaky.add_records([legacy(i, f"KB-{i}") for i in range(4)])

        job = await engine.create_job(
            "Import", SourceDescriptor("flaky"), ADMIN, config=MigrationConfig(batch_size=2)
        )
        await engine.start(job.id, ADMIN)
        job = await engine.wait(job.id, timeout=5)

        assert job.status == JobStatus.FAILED.value
        assert "connection reset" in job.error
        assert job.progress.processed == 2
        assert len(await store.list_records()) == 2
        assert flaky.opened[0].closed is True

    @pytest.mark.asyncio
    async def test_connector_removed_after_creation(self, engine, connector):
        connector.add_records([legacy(0, "KB-1")])
        job = await engine.create_job("Import", IN_MEMORY, ADMIN)
        engine.connectors.connectors.pop("in_memory")

        await engine.start(job.id, ADMIN)
        job = await engine.wait(job.id, timeout=5)

        assert job.status == JobStatus.FAILED.value
        assert "source" in job.error

    @pytest.mark.asyncio
    async def test_admission_fault_fails_job(self, connector, store, workflow, audit):
        gate = AdmissionGate(BrokenDetector(), HeuristicQualityScorer(), config=GateConfig())
        connectors = ConnectorRegistry()
        connectors.register(connector)
        engine = MigrationJobEngine(InMemoryJobRegistry(), connectors, gate, workflow, audit)

        job = await run_job(engine, connector, [legacy(0, "KB-1")])

        assert job.status == JobStatus.FAILED.value
        assert "AdmissionFault" in job.error
        assert await store.list_records() == []

    @pytest.mark.asyncio
    async def test_registry_outage_fails_job(self, connector, gate, workflow, audit):
        connectors = ConnectorRegistry()
        connectors.register(connector)
        engine = MigrationJobEngine(ProgressOutageRegistry(), connectors, gate, workflow, audit)

        job = await run_job(engine, connector, [legacy(0, "KB-1"), legacy(1, "KB-2")])

        assert job.status == JobStatus.FAILED.value
        assert "RegistryFault" in job.error
        assert job.progress.processed == 2
