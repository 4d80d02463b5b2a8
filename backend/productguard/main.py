"""
ProductGuard Enforcement Engine - FastAPI Application

Main entry point for the enforcement pipeline backend.

Architecture:
- Scan run → ScanHistoryLedger delta → new candidates only are verified
- CategoryPrecisionEngine → confidence context for the classifier
- Verified infringement → DMCAQueueProcessor → Takedown
- DeadlineTracker → overdue takedowns → escalation suggestions
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import LOG_LEVEL, PipelineConfig
from .database import init_db
from .routers import (
    scans_router, infringements_router, dmca_router, scheduler_router, admin_router,
)
from .services.delivery import ResendMailer
from .services.rate_limit import RateLimiter

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

BULK_SUBMIT_WINDOW_SECONDS = 300


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup, release the mail client on shutdown."""
    init_db()
    logger.info("ProductGuard enforcement engine started")
    yield
    mailer = getattr(app.state, "mailer", None)
    if mailer is not None and hasattr(mailer, "close"):
        mailer.close()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="ProductGuard Enforcement Engine",
    description="""
    ProductGuard Enforcement Engine - piracy monitoring and DMCA enforcement pipeline

    ## Pipeline
    1. **Scan History Ledger**: append-only runs, delta detection against known URLs
    2. **Category Precision Engine**: verification feedback → detection confidence context
    3. **Enforcement Record Store**: infringement state machine with audit trail
    4. **DMCA Send Queue**: batched delivery with retry, web-form and manual channels
    5. **Deadline Tracker**: overdue detection and escalation

    ## Key Principles
    - Run records are immutable
    - Status transitions are guarded and audited
    - Queue items are claimed atomically; every sent item has exactly one takedown
    - Scheduled work is bounded and returns count summaries
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# App-owned collaborators and state
pipeline_config = PipelineConfig.from_env()
app.state.pipeline_config = pipeline_config
app.state.mailer = ResendMailer(timeout=pipeline_config.mail_timeout_seconds)
app.state.rate_limiter = RateLimiter(max_calls=1, window_seconds=BULK_SUBMIT_WINDOW_SECONDS)
# Deployment wires the external classification / infrastructure collaborators
app.state.classifier = None
app.state.profiler = None

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(scans_router)
app.include_router(infringements_router)
app.include_router(dmca_router)
app.include_router(scheduler_router)
app.include_router(admin_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "ProductGuard Enforcement Engine",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m productguard.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
