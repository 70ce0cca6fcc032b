"""
Activity Grader API - main entry point.
Creates FastAPI app, sets up lifespan (store indexes), CORS, request timing
middleware, error handlers, registers all routes.
"""

import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware

from grader.config import logger, get_version_info
from grader.database import client
from grader.deps import get_grading_engine
from grader.errors import register_error_handlers
from grader.routes import register_all_routes


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - prepares the document store"""
    logger.info("🚀 FastAPI app starting up...")
    logger.info("REGISTERED ROUTES: %s", [getattr(r, "path", r) for r in app.routes])

    try:
        engine_factory = app.dependency_overrides.get(get_grading_engine, get_grading_engine)
        await engine_factory().store.ensure_indexes()
        logger.info("✅ Store indexes ready")
    except Exception as e:
        # the API can still serve reads; uniqueness is not guaranteed until this succeeds
        logger.error(f"❌ Failed to create store indexes: {e}")
    logger.info("=" * 60)

    yield

    logger.info("🛑 FastAPI app shutting down...")
    client.close()


# Create the main app with lifespan
app = FastAPI(title="Activity Grader API", lifespan=lifespan)

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/version")
async def get_version():
    """Public version endpoint for deployment verification"""
    return get_version_info()


# Register all route modules on the api_router
register_all_routes(api_router)

# Include the api_router on the app
app.include_router(api_router)

register_error_handlers(app)


# Root-level health check endpoint (for Kubernetes probes)
@app.get("/health")
async def root_health_check():
    """Health check for Kubernetes liveness/readiness probes"""
    return {"status": "healthy", "service": "Activity Grader API"}


# ============== REQUEST TIMING MIDDLEWARE ==============

@app.middleware("http")
async def request_timing_middleware(request: Request, call_next):
    """Log method, path, status and duration of every request"""
    start_time = time.monotonic()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"Request failed: {request.method} {request.url.path}: {e}")
        raise
    duration = time.monotonic() - start_time
    logger.info(
        "%s %s -> %s (%.2fs)",
        request.method,
        request.url.path,
        response.status_code,
        duration,
    )
    return response


# ============== CORS ==============

cors_origins_env = os.environ.get("CORS_ORIGINS")
cors_origins = [origin.strip() for origin in cors_origins_env.split(",")] if cors_origins_env else [
    "http://localhost:5173",
    "http://localhost:8080",
    "http://127.0.0.1:8080",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
