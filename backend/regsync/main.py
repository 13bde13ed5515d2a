"""
Registration Sync - FastAPI Application

Main entry point for the registration reconciliation backend.

Architecture:
- Forms + verified payment → ReconciliationEngine → ReconciliationResult
- All verified payments → DuePaymentsLedgerView → LedgerRow[]
- Committed mutation → PropagationDispatcher → sheet mirror / DMZ allow-list
"""
from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import admin_router, forms_router, sync_router
from .database import init_db
from .services.propagation import get_dispatcher

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup; let in-flight syncs finish on shutdown."""
    init_db()
    yield
    dispatcher = get_dispatcher()
    if dispatcher.pending:
        logger.info(f"Waiting for {dispatcher.pending} propagation task(s) before shutdown")
        await dispatcher.drain()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Registration Sync",
    description="""
    Registration Sync - Due Payments Reconciliation & Mirror Sync

    Tracks roster changes made after a payment was verified and keeps the
    staff spreadsheet and the DMZ allow-list in step with registrations.

    ## Pipeline
    1. **Roster Snapshot Reader**: forms → current player count per sport
    2. **Payment Baseline Resolver**: verified payment → paid-for counts
    3. **Reconciliation Engine**: baseline vs. current → amount due
    4. **Propagation Dispatcher**: committed change → sheet + allow-list

    ## Key Principles
    - The database is the only source of truth; mirrors are never read back
    - Reconciliation is recomputed on demand and never persisted
    - Sync is best-effort and never blocks or fails the triggering request
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(admin_router)
app.include_router(forms_router)
app.include_router(sync_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Registration Sync",
        "version": "1.0.0",
        "description": "Due payments reconciliation and mirror sync",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m regsync.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
