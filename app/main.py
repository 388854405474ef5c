"""
Newsletter - subscription and publishing backend

FastAPI application entry point. The delivery worker runs as a separate
process: `python -m app.worker`.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

# Import observability modules
from app.config import settings
from app.logging_config import configure_logging
from app.sentry_config import configure_sentry
from app.middleware.logging import LoggingMiddleware
from app.routes.metrics import router as metrics_router

# Import route modules
from app.routes.auth import router as auth_router
from app.routes.subscriptions import router as subscriptions_router
from app.routes.newsletters import router as newsletters_router
from app.services.email_client import build_email_client

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.email_client = build_email_client()
    yield
    await app.state.email_client.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Newsletter backend: subscriptions, idempotent publishing and reliable delivery",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include authentication routes
app.include_router(auth_router)

# Include subscription routes
app.include_router(subscriptions_router)

# Include newsletter routes
app.include_router(newsletters_router)


@app.get("/")
async def root():
    """Service info."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "healthy"}
