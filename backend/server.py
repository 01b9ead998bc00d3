"""
Knowledge Hub - Main Server

Routes are organized in /routes/. In demo mode (DEMO_MODE=true, the default)
all stores are in-memory; otherwise they live in MongoDB.
"""

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from dataclasses import dataclass
from dotenv import load_dotenv
from pathlib import Path
from typing import Optional
import logging

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import knowledge, migrations

# ==================== SERVICES ====================
from services.admission import AdmissionGate
from services.audit import AuditSink, InMemoryAuditSink, MongoAuditSink
from services.content_store import ContentStore, InMemoryContentStore, MongoContentStore
from services.governance import GovernanceWorkflow
from services.hub_config import DB_NAME, DEMO_MODE, MONGO_URL, get_gate_config
from services.migration import (
    ConnectorRegistry, InMemoryConnector, InMemoryJobRegistry, JobRegistry,
    JsonFileConnector, MigrationJobEngine, MongoJobRegistry,
)

VERSION = "1.0.0"


@dataclass
class HubServices:
    store: ContentStore
    audit: AuditSink
    jobs: JobRegistry
    connectors: ConnectorRegistry
    gate: AdmissionGate
    workflow: GovernanceWorkflow
    engine: MigrationJobEngine


def build_services(db=None) -> HubServices:
    """Wire the core services, on MongoDB when `db` is given, else in memory."""
    if db is not None:
        store = MongoContentStore(db.knowledge_items)
        audit = MongoAuditSink(db.audit_logs)
        jobs = MongoJobRegistry(db.migration_jobs)
    else:
        store = InMemoryContentStore()
        audit = InMemoryAuditSink()
        jobs = InMemoryJobRegistry()

    connectors = ConnectorRegistry()
    connectors.register(JsonFileConnector())
    connectors.register(InMemoryConnector())

    gate = AdmissionGate.with_store(store, get_gate_config())
    workflow = GovernanceWorkflow(store, audit, gate)
    engine = MigrationJobEngine(jobs, connectors, gate, workflow, audit)
    return HubServices(store, audit, jobs, connectors, gate, workflow, engine)


def create_app(services: Optional[HubServices] = None) -> FastAPI:
    """
    Build the application. Tests pass pre-built in-memory services; the
    default app builds them in its lifespan according to DEMO_MODE.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        mongo_client = None
        hub = services

        logger.info("Starting Knowledge Hub (demo_mode=%s)...", DEMO_MODE)
        if hub is None:
            if DEMO_MODE:
                hub = build_services()
            else:
                mongo_client = AsyncIOMotorClient(MONGO_URL)
                hub = build_services(mongo_client[DB_NAME])
                await create_indexes(hub)

        # Initialize routers with services
        knowledge.set_dependencies(hub.workflow)
        migrations.set_dependencies(hub.engine)
        app.state.services = hub

        logger.info("Knowledge Hub started successfully")

        yield

        # Shutdown
        logger.info("Shutting down Knowledge Hub...")
        await hub.engine.shutdown()
        if mongo_client:
            mongo_client.close()

    app = FastAPI(
        title="Knowledge Hub",
        description="Knowledge governance, admission control and legacy migration",
        version=VERSION,
        lifespan=lifespan
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # API Router with /api prefix
    api_router = APIRouter(prefix="/api")
    api_router.include_router(knowledge.router)
    api_router.include_router(migrations.router)

    @api_router.get("/health")
    async def health():
        return {
            "status": "healthy",
            "service": "knowledge-hub",
            "version": VERSION,
            "demo_mode": DEMO_MODE,
        }

    app.include_router(api_router)

    @app.get("/")
    async def root():
        return {
            "service": "Knowledge Hub",
            "version": VERSION,
            "status": "running"
        }

    return app


async def create_indexes(hub: HubServices):
    """Create database indexes."""
    await hub.store.create_indexes()
    await hub.jobs.create_indexes()
    logger.info("Database indexes created")


app = create_app()
