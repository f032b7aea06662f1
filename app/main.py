"""
Subscription Reconciler API - Main Application
==============================================

FastAPI application entry point with middleware configuration
and route registration.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import newrelic.agent

# Configure logging for the application (root logger defaults to WARNING)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.db.session import init_db, close_db
from app.services.cache import init_redis, close_redis
from app.core.errors import setup_exception_handlers

logger = logging.getLogger(__name__)


# =============================================================================
# New Relic Transaction Enrichment Middleware (Raw ASGI)
# =============================================================================

class NewRelicTransactionMiddleware:
    """
    Raw ASGI middleware that enriches every New Relic transaction with
    custom attributes for filtering, alerting, and dashboarding.

    Uses raw ASGI instead of BaseHTTPMiddleware so the route handler runs
    in the same task and New Relic's contextvars-based span propagation
    keeps DB and Redis spans attached to the transaction.

    Captures: response status, latency, HTTP method, route pattern, the
    authenticated user id, and for webhooks the billing event type and
    subscriber id (set on ``request.state`` by the webhook route).
    """

    STATE_ATTRIBUTES = (
        ("user_id", "enduser.id"),
        ("billing_event_type", "billing.event_type"),
        ("billing_subscriber_id", "billing.subscriber_id"),
    )

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500  # default until we capture the real one

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000

            txn = newrelic.agent.current_transaction()
            if txn:
                route = scope.get("route")
                route_path = route.path if route else scope.get("path", "unknown")

                newrelic.agent.add_custom_attributes([
                    ("http.method", scope.get("method", "")),
                    ("http.route", route_path),
                    ("http.status_code", status_code),
                    ("http.duration_ms", round(duration_ms, 2)),
                    ("environment", settings.ENVIRONMENT),
                ])

                state = scope.get("state") or {}
                for key, attribute in self.STATE_ATTRIBUTES:
                    value = state.get(key)
                    if value:
                        newrelic.agent.add_custom_attribute(attribute, str(value))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events for:
    - Database connection
    - Redis connection (webhook duplicate suppression)
    """
    logger.info("Starting Subscription Reconciler API...")

    if not settings.REVENUECAT_WEBHOOK_SECRET:
        logger.warning("REVENUECAT_WEBHOOK_SECRET is not set; webhooks will return 500")

    # Continue startup even if DB fails (for health checks)
    try:
        await init_db()
    except Exception as e:
        logger.error("Database connection failed: %s", e)

    try:
        await init_redis()
    except Exception as e:
        logger.warning("Redis connection failed, duplicate suppression disabled: %s", e)

    yield

    logger.info("Shutting down Subscription Reconciler API...")
    await close_db()
    await close_redis()


# Create FastAPI application
app = FastAPI(
    title="Subscription Reconciler API",
    description="""
## RevenueCat Subscription State Reconciliation

Keeps local subscription records consistent with RevenueCat.

### Features
- **Webhooks**: authenticated RevenueCat event ingestion
- **Sync**: pull-based reconciliation against the RevenueCat REST API
- **Status**: stored subscription and trial status per user
- **Cron**: expiration check and skipped-event sweep
    """,
    version="1.0.0",
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    openapi_url="/openapi.json" if settings.is_development else None,
    lifespan=lifespan,
    responses={
        400: {"description": "Invalid request"},
        401: {"description": "Not authenticated"},
        403: {"description": "Permission denied"},
        404: {"description": "Resource not found"},
        500: {"description": "Internal server error"},
    },
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# New Relic transaction enrichment (adds custom attrs to every transaction)
app.add_middleware(NewRelicTransactionMiddleware)

# Setup exception handlers
setup_exception_handlers(app)


# =============================================================================
# Health Check Endpoints
# =============================================================================

@app.get("/health", tags=["Health"])
async def health_check() -> dict:
    """
    Health check endpoint.

    Returns the current status of the API.
    """
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/", tags=["Health"])
async def root() -> dict:
    """Root endpoint with API information."""
    return {
        "name": "Subscription Reconciler API",
        "version": "1.0.0",
        "docs": "/docs" if settings.is_development else "Disabled in production",
    }


# =============================================================================
# API Routes
# =============================================================================

from app.api.v1 import cron, subscription, sync, webhooks
app.include_router(webhooks.router, prefix="/api/v1/webhooks", tags=["Webhooks"])
app.include_router(sync.router, prefix="/api/v1/sync", tags=["Sync"])
app.include_router(subscription.router, prefix="/api/v1/subscriptions", tags=["Subscription"])
app.include_router(cron.router, prefix="/api/v1/cron", tags=["Cron"])
