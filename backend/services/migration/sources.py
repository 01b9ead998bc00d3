"""
Knowledge Hub - Migration Source Connectors

A SourceConnector turns an external system into a lazily-read sequence of
RawCandidate batches. The engine drives it as:

    handle = await connector.open(descriptor)
    total = await connector.estimate_total(handle)     # may be None
    while (batch := await connector.next_batch(handle, size)) is not None:
        ...
    await connector.close(handle)

Connectors raise ConnectorFault when the source cannot be reached or read.
Record content problems are not connector faults; they surface per record in
the admission gate.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..content_models import Origin, RawCandidate
from ..errors import ConnectorFault
from .models import SourceDescriptor

logger = logging.getLogger(__name__)


class SourceConnector(ABC):
    """
    Abstract base class for migration sources.

    `system` is the name jobs use in their SourceDescriptor to select this
    connector.
    """

    system: str = ""

    @abstractmethod
    async def open(self, descriptor: SourceDescriptor) -> Any:
        """Connect to the source and return an opaque read handle."""

    @abstractmethod
    async def estimate_total(self, handle: Any) -> Optional[int]:
        """Total number of records, or None if the source cannot tell."""

    @abstractmethod
    async def next_batch(self, handle: Any, batch_size: int) -> Optional[List[RawCandidate]]:
        """Up to batch_size candidates, or None once the source is exhausted."""

    async def close(self, handle: Any) -> None:
        """Release the handle. Default: nothing to release."""
        return None


def _to_candidate(item: Any) -> RawCandidate:
    """Map one exported record; non-object entries become empty candidates."""
    if not isinstance(item, dict):
        return RawCandidate(origin=Origin.MIGRATED.value, extra={"raw": item})
    return RawCandidate.from_dict(item, origin=Origin.MIGRATED.value)


@dataclass
class _ListCursor:
    """Read position over an already-materialized list of records."""
    records: List[Any]
    position: int = 0
    closed: bool = False

    def take(self, size: int) -> Optional[List[RawCandidate]]:
        if self.position >= len(self.records):
            return None
        chunk = self.records[self.position:self.position + size]
        self.position += len(chunk)
        return [_to_candidate(item) for item in chunk]


class InMemoryConnector(SourceConnector):
    """
    In-memory source for testing and demo mode.

    Records can be added programmatically as dicts or RawCandidates. Datasets
    are keyed by name; the descriptor selects one with
    connection={"dataset": name}.
    """

    system = "in_memory"

    def __init__(self, system: Optional[str] = None, report_total: bool = True):
        if system:
            self.system = system
        self.report_total = report_total
        self._datasets: Dict[str, List[Any]] = {}
        self.opened: List[_ListCursor] = []

    def add_records(self, records: List[Any], dataset: str = "default") -> None:
        self._datasets.setdefault(dataset, []).extend(records)

    def clear(self) -> None:
        self._datasets.clear()

    async def open(self, descriptor: SourceDescriptor) -> _ListCursor:
        dataset = descriptor.connection.get("dataset", "default")
        if dataset not in self._datasets:
            raise ConnectorFault(f"Dataset '{dataset}' not found in {self.system}")
        records = [
            r.to_dict() if isinstance(r, RawCandidate) else r
            for r in self._datasets[dataset]
        ]
        cursor = _ListCursor(records=records)
        self.opened.append(cursor)
        return cursor

    async def estimate_total(self, handle: _ListCursor) -> Optional[int]:
        return len(handle.records) if self.report_total else None

    async def next_batch(self, handle: _ListCursor, batch_size: int) -> Optional[List[RawCandidate]]:
        return handle.take(batch_size)

    async def close(self, handle: _ListCursor) -> None:
        handle.closed = True


class JsonFileConnector(SourceConnector):
    """
    JSON export file source for batch imports.

    Reads records from a JSON file with the following structure
    (connection={"path": "/exports/legacy.json"}):
    {
        "source_name": "Legacy Knowledge Export 2024-01",
        "exported_at": "2024-01-15T10:00:00Z",
        "records": [
            {
                "legacy_id": "KB-1001",
                "title": "...",
                "description": "...",
                "category": "Strategy",
                "region": "Europe",
                "tags": "pricing, europe",
                "author": "u-123"
            },
            ...
        ]
    }
    """

    system = "json_file"

    async def open(self, descriptor: SourceDescriptor) -> _ListCursor:
        path = descriptor.connection.get("path")
        if not path:
            raise ConnectorFault("JSON source requires connection.path")
        data = await asyncio.to_thread(self._load, Path(path))
        records = data.get("records", [])
        if not isinstance(records, list):
            raise ConnectorFault(f"'records' in {path} is not a list")
        logger.info("Loaded %d records from %s (%s)", len(records), path, data.get("source_name", Path(path).stem))
        return _ListCursor(records=records)

    @staticmethod
    def _load(path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConnectorFault(f"Migration source file not found: {path}")
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConnectorFault(f"Cannot read migration source {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConnectorFault(f"Migration source {path} is not a JSON object")
        return data

    async def estimate_total(self, handle: _ListCursor) -> Optional[int]:
        return len(handle.records)

    async def next_batch(self, handle: _ListCursor, batch_size: int) -> Optional[List[RawCandidate]]:
        return handle.take(batch_size)

    async def close(self, handle: _ListCursor) -> None:
        handle.closed = True


@dataclass
class ConnectorRegistry:
    """Connectors available to migration jobs, keyed by system name."""
    connectors: Dict[str, SourceConnector] = field(default_factory=dict)

    def register(self, connector: SourceConnector) -> None:
        self.connectors[connector.system] = connector

    def get(self, system: str) -> Optional[SourceConnector]:
        return self.connectors.get(system)

    def systems(self) -> List[str]:
        return sorted(self.connectors)


def create_sample_migration_file(output_path: str) -> None:
    """
    Create a sample migration JSON file for demos and manual testing.

    Includes a clean record, a near-duplicate of it and a record with an
    unknown category, so a dry run shows every per-record outcome.
    """
    sample_data = {
        "source_name": "Sample Legacy Knowledge Export",
        "exported_at": "2026-02-22T12:00:00Z",
        "records": [
            {
                "legacy_id": "KB-1001",
                "title": "European pricing strategy review",
                "description": (
                    "Review of pricing strategy across European markets covering "
                    "competitive positioning, discount policy and growth targets."
                ),
                "category": "Strategy",
                "region": "Europe",
                "tags": "pricing, europe, strategy",
            },
            {
                "legacy_id": "KB-1002",
                "title": "Cloud migration playbook",
                "description": (
                    "Step by step playbook for moving legacy platform workloads to "
                    "cloud infrastructure with security and data controls."
                ),
                "category": "Technical",
                "region": "Global",
                "tags": ["cloud", "migration"],
            },
            {
                "legacy_id": "KB-1003",
                "title": "European pricing strategy review (copy)",
                "description": (
                    "Review of pricing strategy across European markets covering "
                    "competitive positioning, discount policy and growth targets."
                ),
                "category": "Strategy",
                "region": "Europe",
            },
            {
                "legacy_id": "KB-1004",
                "title": "Quarterly supplier scorecard",
                "description": (
                    "Vendor delivery performance and procurement cost trends for "
                    "the operations leadership review."
                ),
                "category": "Procurement",
                "region": "North America",
            },
            {
                "legacy_id": "KB-1005",
                "title": "Asia Pacific consumer survey results",
                "description": (
                    "Consumer survey results and market research findings for the "
                    "Asia Pacific segment, including customer trend analysis."
                ),
                "category": "Market Research",
                "region": "Asia Pacific",
                "tags": "survey, consumer",
            },
        ],
    }

    output_file = Path(output_path)
    output_file.parent.mkdir(parents=True, exist_ok=True)

    with open(output_file, 'w', encoding='utf-8') as f:
        json.dump(sample_data, f, indent=2)

    logger.info("Created sample migration file at %s", output_path)
