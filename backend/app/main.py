"""
Gig Marketplace Orders - FastAPI Application

Main entry point for the order lifecycle and dispute-resolution backend.

Architecture:
- Orders → OrderStateMachine (transition table + guards) → conditional write
- Reads → DeadlineTracker (lazy expiry) → OrderView
- Refunds → RefundWorkflow → administrator decision → order cancelled / payment refunded
- Every acknowledged write → change feed + counterparty notification
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import (
    orders_router, refunds_router, bank_accounts_router, admin_router, scheduler_router,
)
from .database import init_db
from .services.orders import OrderEngineError

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Gig Marketplace Orders",
    description="""
    Order lifecycle and dispute resolution for a freelance marketplace.

    ## Lifecycle
    pending → active → delivered ⇄ in_revision → completed

    pending → cancelled (rejected, confirmation deadline lapsed, or refund approved)

    ## Key Principles
    - Status changes are conditional writes; a lost race returns 409 with the current status
    - Deadlines are evaluated on every read; nothing waits on a timer
    - Refund submissions carry an operation token and are created exactly once
    - Notifications never roll back the change that produced them
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


@app.exception_handler(OrderEngineError)
async def order_engine_error_handler(request: Request, exc: OrderEngineError):
    """Engine errors become {success: false, error, message, ...} with their status code."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, **exc.to_dict()},
    )


# Include routers
app.include_router(orders_router)
app.include_router(refunds_router)
app.include_router(bank_accounts_router)
app.include_router(admin_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Gig Marketplace Orders",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
