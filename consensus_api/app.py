"""
Plan Acceptance Consensus API - FastAPI Application.

Turns untrusted crowd submissions about provider/plan acceptance into a
confidence score and consensus status per pair, behind rate limiting,
bot-challenge gating and duplicate-submission windows.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from consensus_api.config import get_settings
from consensus_api.database import init_db
from consensus_api.dependencies import close_dependencies
from consensus_api.errors import ConsensusError, InvalidRequest, StorageError
from consensus_api.routes import maintenance_router, verifications_router
from consensus_api.scheduler import start_scheduler, stop_scheduler


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting Plan Acceptance Consensus Service...")
    init_db()
    logger.info("Database initialized")

    if settings.enable_scheduler:
        start_scheduler()

    yield

    # Shutdown
    logger.info("Shutting down Plan Acceptance Consensus Service...")
    stop_scheduler()
    await close_dependencies()


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="""
## Plan Acceptance Consensus API

Crowd-sourced verification of whether a provider accepts an insurance plan.

### Key Concepts

- **Verifications**: One person's report that a provider does or does not
  accept a plan
- **Votes**: Community up/down opinions on individual verifications
- **Aggregate**: The per provider-plan record with a 0-100 confidence score
  and a status (UNKNOWN, PENDING, ACCEPTED, REJECTED)

### How Consensus Works

A pair only becomes ACCEPTED or REJECTED once it has at least 3
verifications, a confidence score of at least 60, and a 2:1 majority in one
direction. Everything else stays PENDING, so a single actor or a narrow
majority cannot flip a provider's public status.

### API Flow

1. User submits a verification (POST /api/verifications)
2. Others vote on it (POST /api/verifications/{id}/vote)
3. The aggregate is recomputed on every write
4. Expired verifications are swept daily (POST /api/maintenance/sweep)
    """,
    version=settings.app_version,
    lifespan=lifespan,
)

# Configure CORS
origins = settings.allowed_origins.split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "Retry-After",
        "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset",
        "X-Security-Degraded",
        "X-Fallback-RateLimit-Limit", "X-Fallback-RateLimit-Remaining",
        "X-Fallback-RateLimit-Reset",
    ],
)


# =============================================================================
# Error Handlers
# =============================================================================


@app.exception_handler(ConsensusError)
async def consensus_error_handler(request: Request, exc: ConsensusError):
    # Rejections after the limiter ran still report the remaining budget
    headers = {**getattr(request.state, "rate_limit_headers", {}), **exc.headers}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = InvalidRequest()
    body = error.to_dict()
    body["error"]["details"] = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg", ""),
        }
        for err in exc.errors()
    ]
    return JSONResponse(status_code=error.status_code, content=body)


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}", exc_info=exc)
    error = StorageError()
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Include routers
app.include_router(verifications_router, prefix="/api")
app.include_router(maintenance_router, prefix="/api")


# Root endpoint
@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Crowd-sourced provider/plan acceptance consensus",
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
        "endpoints": {
            "verifications": "/api/verifications",
            "maintenance": "/api/maintenance",
            "health": "/api/maintenance/health",
        }
    }


# Health check at root level too
@app.get("/health")
def root_health():
    """Quick health check."""
    return {"status": "ok", "version": settings.app_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "consensus_api.app:app",
        host="0.0.0.0",
        port=8001,
        reload=settings.debug
    )
