"""
Settlement API Server
FastAPI application exposing the transaction routes and running the settlement sweeps
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from fastapi import FastAPI  # noqa: E402

from config import Config  # noqa: E402
from database import create_tables  # noqa: E402
from jobs.settlement_scheduler import SettlementScheduler  # noqa: E402
from routes.transactions import router as transactions_router  # noqa: E402

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO if Config.IS_PRODUCTION else logging.DEBUG,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and start the settlement sweeps for the lifetime of the app"""
    logger.info(f"🔧 Settlement API starting ({Config.ENVIRONMENT})...")
    await create_tables()

    scheduler = SettlementScheduler()
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("✅ Settlement API ready")

    yield

    scheduler.stop()
    logger.info("🔄 Settlement API shutting down...")


app = FastAPI(
    title="Trade Settlement API",
    description="Transaction lifecycle, quality assessment and escrow release",
    lifespan=lifespan
)

app.include_router(transactions_router)


@app.get("/health")
async def health():
    return {"status": "ok", "environment": Config.ENVIRONMENT}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8001")))
