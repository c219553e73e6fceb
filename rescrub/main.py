"""
ReScrub Backend — FastAPI application entry-point.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rescrub.config import evidence_secret, settings
from rescrub.database import Base, SessionLocal, engine
from rescrub.dependencies import default_notifier
from rescrub.pipeline.scheduler import EmailAutomationScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: refuse to run production without a proper evidence secret
    evidence_secret(settings)
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    os.makedirs(settings.EVIDENCE_ARCHIVE_DIR, exist_ok=True)
    # Import models so Base.metadata knows about them
    import rescrub.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", settings.DATABASE_URL)

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = EmailAutomationScheduler(SessionLocal, notifier=default_notifier)
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler:
        scheduler.stop(timeout=10)
    logger.info("Shutting down")


app = FastAPI(
    title="ReScrub",
    description="Deletion request → operator reply analysis → evidence → regulator escalation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"service": "ReScrub", "version": "0.1.0", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# ── Register API router ──────────────────────────────────────────────────
from rescrub.routers.requests import router as requests_router  # noqa: E402
from rescrub.routers.evidence import router as evidence_router  # noqa: E402
from rescrub.routers.scheduler import router as scheduler_router  # noqa: E402

app.include_router(requests_router, prefix="/api", tags=["Deletion Requests"])
app.include_router(evidence_router, prefix="/api", tags=["Evidence"])
app.include_router(scheduler_router, prefix="/api", tags=["Email Automation"])
