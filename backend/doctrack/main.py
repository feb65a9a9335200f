"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from doctrack.core.errors import DocTrackError
from doctrack.core.logging import setup_logging
from doctrack.core.middleware import (
    doctrack_error_handler, global_exception_handler, security_middleware, setup_cors_middleware
)
from doctrack.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy, setup_otel_logging
from doctrack.core.config import settings
from doctrack.db.redis import get_redis_client
from doctrack.db.session import engine, init_db
from doctrack.models import Base  # Import all models to register with Base.metadata

from doctrack.api import dashboard, distributions, documents, maintenance, viewer

setup_logging()
logger = logging.getLogger(__name__)

_background_tasks = []


def start_background_tasks():
    """Start the retention sweep loop and the document purge worker"""
    from doctrack.tasks.cleanup import cleanup_task
    from doctrack.tasks.purge_worker import purge_worker_task
    
    _background_tasks.append(asyncio.create_task(cleanup_task()))
    _background_tasks.append(asyncio.create_task(purge_worker_task()))
    logger.info("Background tasks started")


async def stop_background_tasks():
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = initialize_otel()
    if otel_initialized:
        if setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")
    
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
    
    instrument_sqlalchemy(engine)
    start_background_tasks()
    
    yield
    
    # Shutdown
    logger.info("Shutting down...")
    await stop_background_tasks()


# Create FastAPI app
app = FastAPI(
    title="DocTrack Backend",
    description="Document distribution tracking and intent scoring",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)
setup_cors_middleware(app)
app.middleware("http")(security_middleware)

app.add_exception_handler(DocTrackError, doctrack_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Include routers
app.include_router(viewer.router)
app.include_router(distributions.router)
app.include_router(documents.router)
app.include_router(dashboard.router)
app.include_router(maintenance.router)


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
