from fastapi import FastAPI
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from services import LedgerServices
from payout_routes import payout_router, admin_router
from payment_routes import payment_router, admin_transactions_router
from core.stores import TransactionStore, PayoutStore
from core.settlement_clock import utcnow
from core import idempotency

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'payment_gateway')]

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Payment Gateway - Settlement & Payout Ledger",
    version="1.0.0",
    description="T+1 settlement, balance ledger and payout workflow for aggregated payments"
)

app.state.services = LedgerServices(db)


def _scheduler_enabled() -> bool:
    return os.environ.get("SETTLEMENT_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")


@app.on_event("startup")
async def startup_ledger():
    services: LedgerServices = app.state.services

    await TransactionStore(db).create_indexes()
    await PayoutStore(db).create_indexes()
    await idempotency.create_indexes(db)
    logger.info("[STARTUP] Ledger indexes ensured")

    if _scheduler_enabled():
        services.scheduler.start()
        logger.info(f"[STARTUP] Next settlement sweep: {services.scheduler.next_run_time()}")
    else:
        logger.info("[STARTUP] Settlement scheduler disabled")


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    services: LedgerServices = app.state.services
    return {
        "status": "healthy",
        "timestamp": utcnow(),
        "version": "1.0.0",
        "scheduler_running": services.scheduler.running,
        "sweep_running": services.sweeper.is_running,
    }


app.include_router(payout_router)
app.include_router(admin_router)
app.include_router(payment_router)
app.include_router(admin_transactions_router)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    app.state.services.scheduler.shutdown()
    client.close()
