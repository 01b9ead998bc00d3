"""
Knowledge Hub - Content Store

Persistence for ContentRecords and the corpus read by duplicate detection.

ValidationDecisions are embedded in the record document ("decisions" array) so
that a status change and the decision recording it are written by a single
atomic find-and-modify.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument

from .content_models import ContentRecord, ValidationDecision

logger = logging.getLogger(__name__)


class ContentStore(ABC):
    """Storage contract used by the governance workflow and the admission gate."""

    @abstractmethod
    async def insert(self, record: ContentRecord) -> None:
        """Persist a newly admitted record."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ContentRecord]:
        """Load a record, or None if it does not exist."""

    @abstractmethod
    async def list_records(
        self,
        status: Optional[str] = None,
        flagged: Optional[bool] = None,
        limit: int = 100
    ) -> List[ContentRecord]:
        """List records, oldest first, optionally filtered."""

    @abstractmethod
    async def corpus(
        self,
        statuses: Iterable[str],
        limit: int,
        exclude_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Return the newest `limit` records in the given statuses as
        {"id", "title", "description"} dicts for similarity checks.
        """

    @abstractmethod
    async def compare_and_update(
        self,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        decision: Optional[ValidationDecision] = None
    ) -> Optional[ContentRecord]:
        """
        Atomically apply `changes` (and append `decision`) if every field in
        `expected` still matches. Returns the updated record, or None if the
        record is missing or the precondition no longer holds.
        """

    @abstractmethod
    async def list_decisions(self, record_id: str) -> List[ValidationDecision]:
        """Decisions recorded against a record, oldest first."""


class InMemoryContentStore(ContentStore):
    """
    Dict-backed store for demo mode and tests.

    Updates contain no await points, so each compare_and_update runs to
    completion without interleaving on the event loop.
    """

    def __init__(self):
        self._docs: Dict[str, Dict[str, Any]] = {}

    async def insert(self, record: ContentRecord) -> None:
        doc = record.to_dict()
        doc["decisions"] = []
        self._docs[record.id] = doc

    async def get(self, record_id: str) -> Optional[ContentRecord]:
        doc = self._docs.get(record_id)
        return ContentRecord.from_dict(copy.deepcopy(doc)) if doc else None

    async def list_records(
        self,
        status: Optional[str] = None,
        flagged: Optional[bool] = None,
        limit: int = 100
    ) -> List[ContentRecord]:
        results = []
        for doc in sorted(self._docs.values(), key=lambda d: d["created_at"]):
            if status is not None and doc["status"] != status:
                continue
            if flagged is not None and doc["flagged"] != flagged:
                continue
            results.append(ContentRecord.from_dict(copy.deepcopy(doc)))
            if len(results) >= limit:
                break
        return results

    async def corpus(
        self,
        statuses: Iterable[str],
        limit: int,
        exclude_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        wanted = set(statuses)
        docs = [
            d for d in self._docs.values()
            if d["status"] in wanted and d["id"] != exclude_id
        ]
        docs.sort(key=lambda d: d["created_at"], reverse=True)
        return [
            {"id": d["id"], "title": d["title"], "description": d["description"]}
            for d in docs[:limit]
        ]

    async def compare_and_update(
        self,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        decision: Optional[ValidationDecision] = None
    ) -> Optional[ContentRecord]:
        doc = self._docs.get(record_id)
        if doc is None:
            return None
        if any(doc.get(key) != value for key, value in expected.items()):
            return None
        doc.update(copy.deepcopy(changes))
        if decision is not None:
            doc["decisions"].append(decision.to_dict())
        return ContentRecord.from_dict(copy.deepcopy(doc))

    async def list_decisions(self, record_id: str) -> List[ValidationDecision]:
        doc = self._docs.get(record_id)
        if doc is None:
            return []
        return [ValidationDecision.from_dict(d) for d in doc["decisions"]]


class MongoContentStore(ContentStore):
    """Store backed by a motor collection (knowledge_items)."""

    def __init__(self, collection):
        self.collection = collection

    async def create_indexes(self) -> None:
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("status")
        await self.collection.create_index("flagged")
        await self.collection.create_index("created_at")

    async def insert(self, record: ContentRecord) -> None:
        doc = record.to_dict()
        doc["decisions"] = []
        await self.collection.insert_one(doc)

    async def get(self, record_id: str) -> Optional[ContentRecord]:
        doc = await self.collection.find_one({"id": record_id}, {"_id": 0})
        return ContentRecord.from_dict(doc) if doc else None

    async def list_records(
        self,
        status: Optional[str] = None,
        flagged: Optional[bool] = None,
        limit: int = 100
    ) -> List[ContentRecord]:
        query: Dict[str, Any] = {}
        if status is not None:
            query["status"] = status
        if flagged is not None:
            query["flagged"] = flagged
        cursor = self.collection.find(query, {"_id": 0, "decisions": 0}).sort("created_at", 1).limit(limit)
        return [ContentRecord.from_dict(doc) async for doc in cursor]

    async def corpus(
        self,
        statuses: Iterable[str],
        limit: int,
        exclude_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"status": {"$in": list(statuses)}}
        if exclude_id:
            query["id"] = {"$ne": exclude_id}
        cursor = self.collection.find(
            query,
            {"_id": 0, "id": 1, "title": 1, "description": 1}
        ).sort("created_at", -1).limit(limit)
        return [doc async for doc in cursor]

    async def compare_and_update(
        self,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        decision: Optional[ValidationDecision] = None
    ) -> Optional[ContentRecord]:
        update: Dict[str, Any] = {"$set": changes}
        if decision is not None:
            update["$push"] = {"decisions": decision.to_dict()}
        doc = await self.collection.find_one_and_update(
            {"id": record_id, **expected},
            update,
            projection={"_id": 0, "decisions": 0},
            return_document=ReturnDocument.AFTER,
        )
        return ContentRecord.from_dict(doc) if doc else None

    async def list_decisions(self, record_id: str) -> List[ValidationDecision]:
        doc = await self.collection.find_one({"id": record_id}, {"_id": 0, "decisions": 1})
        if not doc:
            return []
        return [ValidationDecision.from_dict(d) for d in doc.get("decisions", [])]
