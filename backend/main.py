import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.bank_integration.scheduler import periodic_sync_loop
from backend.app.routes import banks
from backend.config import get_settings
from backend.database import Base, SessionLocal, engine

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_bank_settings()
    Base.metadata.create_all(bind=engine)

    sync_task = None
    if settings.auto_sync_interval_minutes > 0:
        sync_task = asyncio.create_task(periodic_sync_loop(SessionLocal, settings))

    yield

    if sync_task is not None:
        sync_task.cancel()
        try:
            await sync_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutdown complete")


app = FastAPI(
    title="Bank Sync API",
    description="Bank aggregator connections with automatic transaction sync",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(banks.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
