# pyright: reportMissingTypeStubs=false
"""
Core Facility Backend API

A FastAPI application for shared research core facilities.

Features:
- Instrument and service reservations against weekly schedule rules
- Price policy resolution and cost calculation on completion
- Journal and statement generation for account billing
- PostgreSQL database with SQLAlchemy ORM
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import accounts, order_details, products, reservations
from core.config import CORS_ORIGINS, ENABLE_BILLING_SCHEDULER
from core.database import create_tables
from services.billing_scheduler import start_billing_scheduler, stop_billing_scheduler
from services.billing_task_queue import start_billing_task_queue, stop_billing_task_queue

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)
logger.info("🔬 Core Facility API starting...")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("🚀 Starting Core Facility Backend API")
    create_tables()

    if ENABLE_BILLING_SCHEDULER:
        # Note: Database sessions are created fresh for each task attempt
        try:
            start_billing_task_queue()
            await start_billing_scheduler()
            logger.info("✅ Billing scheduler started")
        except Exception as e:
            logger.exception(f"❌ Failed to start billing scheduler: {e}")
    else:
        logger.info("Billing scheduler disabled")

    yield

    if ENABLE_BILLING_SCHEDULER:
        try:
            await stop_billing_scheduler()
            stop_billing_task_queue()
            logger.info("🛑 Billing scheduler stopped")
        except Exception as e:
            logger.exception(f"❌ Error stopping billing scheduler: {e}")

    logger.info("🛑 Shutting down Core Facility Backend API")


# Create FastAPI application
app = FastAPI(
    title="Core Facility Backend",
    description="Reservations, pricing and billing for shared research core facilities",
    version="1.0.0",
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    lifespan=lifespan,
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(
    reservations.router,
    prefix="/api/reservations",
    tags=["reservations"],
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Forbidden"},
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        422: {"description": "Booking rule violated"},
        503: {"description": "Busy, retry"},
    },
)
app.include_router(
    products.router,
    prefix="/api/products",
    tags=["products"],
    responses={
        400: {"description": "Bad request"},
        401: {"description": "Unauthorized"},
        404: {"description": "Resource not found"},
    },
)
app.include_router(
    order_details.router,
    prefix="/api/order-details",
    tags=["order-details"],
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Forbidden"},
        404: {"description": "Resource not found"},
        409: {"description": "Conflict"},
        422: {"description": "Pricing failed"},
        503: {"description": "Busy, retry"},
    },
)
app.include_router(
    accounts.router,
    prefix="/api/accounts",
    tags=["accounts"],
    responses={
        401: {"description": "Unauthorized"},
        403: {"description": "Forbidden"},
        404: {"description": "Resource not found"},
        503: {"description": "Busy, retry"},
    },
)


@app.get(
    "/",
    summary="Root endpoint",
    description="Returns basic API information",
)
async def root() -> dict[str, str]:
    """Get API information."""
    return {
        "message": "Core Facility Backend API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get(
    "/health",
    summary="Health check",
    description="Returns the health status of the API",
)
async def health_check() -> dict[str, str]:
    """Check if the API is healthy and responding."""
    return {"status": "healthy"}


# Global exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError exceptions."""
    logger.warning(f"ValueError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "type": "validation_error"},
    )
