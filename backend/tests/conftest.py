"""
Shared fixtures for Knowledge Hub tests.

All services run on in-memory stores; no MongoDB is needed.
"""
import pytest

from services.admission import AdmissionGate
from services.audit import InMemoryAuditSink
from services.content_models import Actor, RawCandidate, Role
from services.content_store import InMemoryContentStore
from services.governance import GovernanceWorkflow
from services.hub_config import GateConfig
from services.migration import (
    ConnectorRegistry, InMemoryConnector, InMemoryJobRegistry, MigrationJobEngine,
)


AUTHOR = Actor("u-author", Role.CONSULTANT.value)
OTHER_USER = Actor("u-other", Role.PROJECT_MANAGER.value)
CHAMPION = Actor("u-champion", Role.KNOWLEDGE_CHAMPION.value)
COUNCIL = Actor("u-council", Role.GOVERNANCE_COUNCIL.value)
ADMIN = Actor("u-admin", Role.ADMINISTRATOR.value)

# Pairwise dissimilar texts that each score 100 on quality
SAMPLE_ITEMS = [
    {
        "title": "European pricing strategy review",
        "description": "Review of pricing strategy across European markets covering "
                       "competitive positioning, discount policy and growth targets.",
        "category": "Strategy",
        "region": "Europe",
    },
    {
        "title": "Cloud migration playbook",
        "description": "Step by step playbook for moving legacy platform workloads to "
                       "cloud infrastructure with security and data controls.",
        "category": "Technical",
        "region": "Global",
    },
    {
        "title": "Asia Pacific consumer survey results",
        "description": "Findings from a consumer survey in Japan and Australia about "
                       "shopping habits, brand loyalty and online channels.",
        "category": "Market Research",
        "region": "Asia Pacific",
    },
    {
        "title": "Warehouse process improvement notes",
        "description": "Lessons learned while redesigning the inbound warehouse process "
                       "to shorten dock times and reduce picking errors.",
        "category": "Operations",
        "region": "North America",
    },
    {
        "title": "Quarterly budget forecast method",
        "description": "How the finance team builds the rolling quarterly forecast from "
                       "regional revenue inputs and headcount plans.",
        "category": "Finance",
        "region": "Latin America",
    },
]


def make_candidate(index: int = 0, **overrides) -> RawCandidate:
    data = dict(SAMPLE_ITEMS[index])
    data.update(overrides)
    return RawCandidate.from_dict(data)


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def audit():
    return InMemoryAuditSink()


@pytest.fixture
def gate(store):
    return AdmissionGate.with_store(store, GateConfig())


@pytest.fixture
def workflow(store, audit, gate):
    return GovernanceWorkflow(store, audit, gate)


@pytest.fixture
def connector():
    return InMemoryConnector()


@pytest.fixture
def job_registry():
    return InMemoryJobRegistry()


@pytest.fixture
def engine(job_registry, connector, gate, workflow, audit):
    connectors = ConnectorRegistry()
    connectors.register(connector)
    return MigrationJobEngine(job_registry, connectors, gate, workflow, audit)
