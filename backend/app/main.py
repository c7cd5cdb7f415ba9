"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.errors import CampError
from app.core.logging import setup_logging
from app.core.middleware import (
    camp_error_handler, global_exception_handler, security_middleware, setup_cors_middleware
)
from app.db.session import init_db
from app.db.redis import get_redis_client
from app.models import Base  # Import all models to register with Base.metadata

# Import routers
from app.api import applications, ops, payments

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    logger.info("Testing Redis connection...")
    try:
        get_redis_client().ping()
        logger.info("Redis connection successful")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    yield

    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Camp Reservations Backend",
    description="Member applications, ops review and reservation payments",
    version="1.0.0",
    lifespan=lifespan
)

setup_cors_middleware(app)

# Include routers
app.include_router(applications.router)
app.include_router(payments.router)
app.include_router(payments.stripe_router)  # Separate router for /api/stripe
app.include_router(ops.router)
app.include_router(ops.config_router)  # Public /api/config

app.middleware("http")(security_middleware)

app.add_exception_handler(CampError, camp_error_handler)
app.add_exception_handler(Exception, global_exception_handler)


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
