"""
Procurement Workflow Hub - Main Server

Entry point. Routes are organized in /routes/, domain logic in /services/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import workflows, config, integrity

# ==================== SERVICES ====================
from services.entity_repository import MongoEntityRepository
from services.email_service import EmailService
from services.notifications import (
    MongoNotificationMappingStore,
    MongoUserDirectory,
    NotificationOrchestrator,
)
from services.workflow_config import MongoCompanyConfigProvider, RejectionReasonCatalog
from services.workflow_engine import PRWorkflowEngine
from services.workflow_events import WorkflowEventBus
from services.workflow_settings import MONGO_URL, DB_NAME

db = None
mongo_client = None
event_bus = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client, event_bus

    logger.info("Starting Procurement Workflow Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    repository = MongoEntityRepository(db, client=mongo_client)
    event_bus = WorkflowEventBus()
    reasons = RejectionReasonCatalog()
    engine = PRWorkflowEngine(repository, event_bus, rejection_reasons=reasons)
    config_provider = MongoCompanyConfigProvider(db)
    mapping_store = MongoNotificationMappingStore(db)

    orchestrator = NotificationOrchestrator(
        mapping_store, MongoUserDirectory(db), EmailService(db), config_provider=config_provider
    )
    orchestrator.register(event_bus)

    # Initialize routers
    workflows.set_dependencies(engine, config_provider)
    config.set_dependencies(mapping_store, config_provider, reasons)
    integrity.set_repository(repository)

    await create_indexes()

    logger.info("Procurement Workflow Hub started successfully")

    yield

    logger.info("Shutting down Procurement Workflow Hub...")
    if event_bus:
        await event_bus.drain()
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    # Orders (PRs live in the orders collection)
    await db.orders.create_index("id", unique=True)
    await db.orders.create_index("pr_number")
    await db.orders.create_index("companyId")
    await db.orders.create_index("pr_status")

    # Purchase orders
    await db.purchaseorders.create_index("id", unique=True)
    await db.purchaseorders.create_index("client_po_number", unique=True)
    await db.purchaseorders.create_index("pr_numbers")

    # Downstream entities
    await db.shipments.create_index("id", unique=True)
    await db.shipments.create_index("prNumber")
    await db.grns.create_index("id", unique=True)
    await db.grns.create_index("poNumber")
    await db.invoices.create_index("id", unique=True)
    await db.invoices.create_index("grnNumber")

    # Notification configuration
    await db.workflow_notification_mappings.create_index("id", unique=True)
    await db.workflow_notification_mappings.create_index("company_id")
    await db.users.create_index([("companyId", 1), ("role", 1)])
    await db.email_logs.create_index("sent_at")

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title="Procurement Workflow Hub",
    description="Multi-tenant procurement approval workflow core",
    version="1.0.0",
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

api_router.include_router(workflows.router)
api_router.include_router(config.router)
api_router.include_router(integrity.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Procurement Workflow Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "procurement-workflow-hub"
    }
