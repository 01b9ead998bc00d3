"""
Knowledge Hub - Migration Job Registry

The registry is the single owner of job state. Every change goes through
update(), an atomic conditional write: the patch is applied only while the
job is in one of the expected statuses. Readers always get a complete
snapshot, never a half-applied patch.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from ..content_models import utc_now
from ..errors import InvalidStateError, NotFoundError, RegistryFault
from ..hub_config import MIGRATION_MAX_LOG_ENTRIES
from .models import JobLogEntry, JobProgress, MigrationJob

logger = logging.getLogger(__name__)


@dataclass
class JobPatch:
    """A set of changes applied to one job in a single write."""
    status: Optional[str] = None
    progress: Optional[JobProgress] = None
    logs: List[JobLogEntry] = field(default_factory=list)
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_set(self) -> Dict[str, Any]:
        changes = dict(self.fields)
        if self.status is not None:
            changes["status"] = self.status
        if self.progress is not None:
            changes["progress"] = self.progress.to_dict()
        changes["updated_at"] = utc_now()
        return changes


class JobRegistry(ABC):
    def __init__(self, max_log_entries: int = MIGRATION_MAX_LOG_ENTRIES):
        if max_log_entries < 1:
            raise ValueError(f"max_log_entries must be at least 1, got {max_log_entries}")
        self.max_log_entries = max_log_entries

    @abstractmethod
    async def create(self, job: MigrationJob) -> MigrationJob:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> MigrationJob:
        """Raises NotFoundError if the job does not exist."""

    @abstractmethod
    async def update(
        self,
        job_id: str,
        patch: JobPatch,
        expected_status: Optional[Iterable[str]] = None
    ) -> MigrationJob:
        """
        Apply `patch` atomically and return the updated job.

        Raises:
            NotFoundError: no such job
            InvalidStateError: the job is not in any of `expected_status`
            RegistryFault: persistence failed
        """

    @abstractmethod
    async def list_by_status(self, status: Optional[str] = None, limit: int = 50) -> List[MigrationJob]:
        """Jobs newest first, optionally filtered by status."""

    async def update_status(self, job_id: str, status: str, expected_status=None, **fields) -> MigrationJob:
        return await self.update(job_id, JobPatch(status=status, fields=fields), expected_status)

    async def update_progress(self, job_id: str, progress: JobProgress) -> MigrationJob:
        return await self.update(job_id, JobPatch(progress=progress))

    async def append_logs(self, job_id: str, entries: List[JobLogEntry]) -> MigrationJob:
        return await self.update(job_id, JobPatch(logs=entries))


class InMemoryJobRegistry(JobRegistry):
    """Dict-backed registry for demo mode and tests."""

    def __init__(self, max_log_entries: int = MIGRATION_MAX_LOG_ENTRIES):
        super().__init__(max_log_entries)
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: MigrationJob) -> MigrationJob:
        async with self._lock:
            self._docs[job.id] = job.to_dict()
        return MigrationJob.from_dict(copy.deepcopy(self._docs[job.id]))

    async def get(self, job_id: str) -> MigrationJob:
        doc = self._docs.get(job_id)
        if doc is None:
            raise NotFoundError(f"Migration job {job_id} not found")
        return MigrationJob.from_dict(copy.deepcopy(doc))

    async def update(self, job_id, patch, expected_status=None) -> MigrationJob:
        async with self._lock:
            doc = self._docs.get(job_id)
            if doc is None:
                raise NotFoundError(f"Migration job {job_id} not found")
            if expected_status is not None:
                expected = list(expected_status)
                if doc["status"] not in expected:
                    raise InvalidStateError(
                        f"Migration job {job_id} is {doc['status']}, expected one of {expected}",
                        current_state=doc["status"],
                    )
            doc.update(copy.deepcopy(patch.to_set()))
            if patch.logs:
                doc["logs"].extend(e.to_dict() for e in patch.logs)
                del doc["logs"][:-self.max_log_entries]
            return MigrationJob.from_dict(copy.deepcopy(doc))

    async def list_by_status(self, status=None, limit=50) -> List[MigrationJob]:
        docs = [d for d in self._docs.values() if status is None or d["status"] == status]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return [MigrationJob.from_dict(copy.deepcopy(d)) for d in docs[:limit]]


class MongoJobRegistry(JobRegistry):
    """Registry backed by a motor collection (migration_jobs)."""

    def __init__(self, collection, max_log_entries: int = MIGRATION_MAX_LOG_ENTRIES):
        super().__init__(max_log_entries)
        self.collection = collection

    async def create_indexes(self) -> None:
        try:
            await self.collection.create_index("id", unique=True)
            await self.collection.create_index([("status", 1), ("created_at", -1)])
        except PyMongoError as e:
            raise RegistryFault(f"Cannot create migration job indexes: {e}") from e

    async def create(self, job: MigrationJob) -> MigrationJob:
        try:
            await self.collection.insert_one(job.to_dict())
        except PyMongoError as e:
            raise RegistryFault(f"Cannot persist migration job: {e}") from e
        return job

    async def get(self, job_id: str) -> MigrationJob:
        try:
            doc = await self.collection.find_one({"id": job_id}, {"_id": 0})
        except PyMongoError as e:
            raise RegistryFault(f"Cannot read migration job {job_id}: {e}") from e
        if not doc:
            raise NotFoundError(f"Migration job {job_id} not found")
        return MigrationJob.from_dict(doc)

    async def update(self, job_id, patch, expected_status=None) -> MigrationJob:
        query: Dict[str, Any] = {"id": job_id}
        if expected_status is not None:
            query["status"] = {"$in": list(expected_status)}

        update: Dict[str, Any] = {"$set": patch.to_set()}
        if patch.logs:
            update["$push"] = {"logs": {
                "$each": [e.to_dict() for e in patch.logs],
                "$slice": -self.max_log_entries,
            }}

        try:
            doc = await self.collection.find_one_and_update(
                query,
                update,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise RegistryFault(f"Cannot update migration job {job_id}: {e}") from e

        if doc:
            return MigrationJob.from_dict(doc)

        # Precondition failed or the job is missing; tell the two apart
        current = await self.get(job_id)
        raise InvalidStateError(
            f"Migration job {job_id} is {current.status}, expected one of {list(expected_status or [])}",
            current_state=current.status,
        )

    async def list_by_status(self, status=None, limit=50) -> List[MigrationJob]:
        query = {"status": status} if status else {}
        try:
            cursor = self.collection.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
            return [MigrationJob.from_dict(doc) async for doc in cursor]
        except PyMongoError as e:
            raise RegistryFault(f"Cannot list migration jobs: {e}") from e
