"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from issuesync.api import issues, sync
from issuesync.config import settings
from issuesync.errors import IssueSyncError, RateLimitExceeded, ValidationFailure
from issuesync.models.base import init_db, utcnow
from issuesync.scheduler import scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting GitHub Issue Sync Service")
    init_db()
    if settings.scheduler_enabled:
        scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping GitHub Issue Sync Service")
    if settings.scheduler_enabled:
        scheduler.stop()


app = FastAPI(
    title="GitHub Issue Sync Service",
    description="Mirror GitHub issues locally and query per-assignee statistics",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(IssueSyncError)
async def issue_sync_error_handler(request: Request, exc: IssueSyncError):
    """Render engine errors as {kind, message, ...} with their HTTP status"""
    headers = {}
    if isinstance(exc, RateLimitExceeded) and exc.reset_at is not None:
        headers["Retry-After"] = str(max(int((exc.reset_at - utcnow()).total_seconds()), 0))
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
        for err in exc.errors()
    ]
    failure = ValidationFailure("Invalid request", errors=errors)
    return JSONResponse(status_code=failure.http_status, content=failure.to_dict())


# Include API routers
app.include_router(sync.router)
app.include_router(issues.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "GitHub Issue Sync", "target": settings.target}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "issuesync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
