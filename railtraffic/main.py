"""
Main FastAPI application for the rail traffic optimization engine.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import asyncio
import logging
import time
from contextlib import asynccontextmanager
import os

from railtraffic.core.config import settings
from railtraffic.core.dependencies import get_engine
from railtraffic.api.routes import conflicts, network, schedule, status, telemetry, websocket
from railtraffic.db.session import engine as db_engine
from railtraffic.db.models import Base

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting rail traffic engine...")
    background = []
    detection_loop = None

    # Only create database tables and background tasks if not in test mode
    if not os.getenv("TESTING"):
        try:
            Base.metadata.create_all(bind=db_engine)
            logger.info("Database tables created successfully")
        except Exception as e:
            logger.error(f"Failed to create database tables: {str(e)}")

        engine = get_engine()
        detection_loop = engine.detection_loop
        detection_loop.start()
        background.append(asyncio.create_task(
            websocket.event_forwarder(engine, settings.broadcast_interval_seconds)
        ))
        background.append(asyncio.create_task(websocket.periodic_updates()))
    else:
        logger.info("Skipping database table creation and background tasks in test mode")

    yield

    logger.info("Shutting down rail traffic engine...")
    for task in background:
        task.cancel()
    await asyncio.gather(*background, return_exceptions=True)
    if detection_loop is not None:
        await detection_loop.stop()


# Create FastAPI application
app = FastAPI(
    title=settings.project_name,
    version=settings.version,
    description="Real-time rail traffic state estimation, conflict detection and schedule optimization",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time to response headers."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


# Exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Global exception on {request.url}: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "path": str(request.url),
            "timestamp": time.time()
        }
    )


# Include API routes
app.include_router(
    network.router,
    prefix=f"{settings.api_v1_prefix}/network",
    tags=["network"]
)

app.include_router(
    telemetry.router,
    prefix=f"{settings.api_v1_prefix}/telemetry",
    tags=["telemetry"]
)

app.include_router(
    schedule.router,
    prefix=f"{settings.api_v1_prefix}/schedule",
    tags=["schedule"]
)

app.include_router(
    conflicts.router,
    prefix=f"{settings.api_v1_prefix}/conflicts",
    tags=["conflicts"]
)

app.include_router(
    status.router,
    prefix=f"{settings.api_v1_prefix}/status",
    tags=["status"]
)

app.include_router(
    websocket.router,
    prefix="/ws",
    tags=["websocket"]
)


# Health check endpoints
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.version
    }


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Rail Traffic Optimization Engine",
        "version": settings.version,
        "docs_url": "/docs",
        "health_url": "/health",
        "api_prefix": settings.api_v1_prefix
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "railtraffic.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
