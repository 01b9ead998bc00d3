"""
Knowledge Hub - Migration Module

Bulk import of knowledge items from external systems.

Components:
- SourceConnector: abstract interface for external sources (batched reads)
- JsonFileConnector / InMemoryConnector: bundled connectors
- JobRegistry: atomic persistence of job state
- MigrationJobEngine: job lifecycle, background processing and cancellation
"""

from .engine import MigrationJobEngine
from .models import (
    JobLogEntry, JobProgress, JobStatus, LogLevel, MigrationConfig, MigrationJob, SourceDescriptor,
)
from .registry import InMemoryJobRegistry, JobPatch, JobRegistry, MongoJobRegistry
from .sources import (
    ConnectorRegistry, InMemoryConnector, JsonFileConnector, SourceConnector,
    create_sample_migration_file,
)

__all__ = [
    'MigrationJobEngine',
    'JobLogEntry',
    'JobProgress',
    'JobStatus',
    'LogLevel',
    'MigrationConfig',
    'MigrationJob',
    'SourceDescriptor',
    'InMemoryJobRegistry',
    'JobPatch',
    'JobRegistry',
    'MongoJobRegistry',
    'ConnectorRegistry',
    'InMemoryConnector',
    'JsonFileConnector',
    'SourceConnector',
    'create_sample_migration_file',
]
