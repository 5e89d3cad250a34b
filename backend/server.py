"""
InvoLex Billing Engine - Main Server

Entry point. Routers live in /routes/, the engine in /services/billing/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import os
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import billing, triage, automation

# ==================== SERVICES ====================
from services.billing import BillingEngine, BillingSettings, GeminiBillingAI, MongoBillingStore, get_sync_transport

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "involex_billing")
BILLING_OWNER_ID = os.environ.get("BILLING_OWNER_ID", "default")

db = None
mongo_client = None
engine = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client, engine

    # Startup
    logger.info("Starting InvoLex Billing Engine...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    store = MongoBillingStore(db, transport=get_sync_transport())
    await store.create_indexes()

    engine = BillingEngine(store, GeminiBillingAI(), BillingSettings(owner_id=BILLING_OWNER_ID))
    await engine.load()

    # Initialize routers with the engine
    billing.set_dependencies(engine)
    triage.set_dependencies(engine)
    automation.set_dependencies(engine)

    if engine.settings.autopilot_enabled:
        engine.autopilot.start()

    logger.info("InvoLex Billing Engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down InvoLex Billing Engine...")
    if engine:
        await engine.shutdown()
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="InvoLex Billing Engine",
    description="Billing automation and email triage for legal professionals",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(billing.router)
api_router.include_router(triage.router)
api_router.include_router(automation.router)

app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "InvoLex Billing Engine",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "involex-billing-engine",
        "autopilot": engine.autopilot.status() if engine else None,
    }
