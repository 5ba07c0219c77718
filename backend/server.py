from credit_ledger.routes import ledger_routers
from credit_ledger.scheduler_setup import setup_scheduler
from credit_ledger.db_init import ensure_indexes
from credit_ledger.errors import LedgerError
from credit_ledger import __version__
from utils.environment import ENVIRONMENT, is_production, check_production_secrets
from database import get_database, check_db_connection, close_client
from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from apscheduler.schedulers.asyncio import AsyncIOScheduler

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Create the main app
app = FastAPI(title="Credit Ledger - Paid Generation Backend", version=__version__)

api_router = APIRouter(prefix="/api")
for router in ledger_routers:
    api_router.include_router(router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Retention sweeps
scheduler = AsyncIOScheduler()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Render ledger failures with their stable code and details."""
    if exc.http_status >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


@app.on_event("startup")
async def startup():
    logger.info(f"Starting credit ledger {__version__} ({ENVIRONMENT})")

    missing = check_production_secrets()
    if is_production() and "JWT_SECRET" in missing:
        raise RuntimeError("Cannot start in production without JWT_SECRET")
    for name in missing:
        logger.warning(f"{name} is not set")

    # Check database connection first - fail fast if database is unavailable
    db = get_database()
    db_ok, db_error = await check_db_connection(db)
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    # Create indexes
    for result in await ensure_indexes(db):
        logger.debug(result)

    setup_scheduler(scheduler, db)
    scheduler.start()
    logger.info("Scheduler started")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")

    close_client()
