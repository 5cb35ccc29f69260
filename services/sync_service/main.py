"""Sync Service - FastAPI application."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, Request, status, HTTPException, Header
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text

from shared.config import get_cron_secret, get_env
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.exceptions import ConfigurationError, SyncInProgressError, UpstreamError
from shared.models import ArchiveResult, SyncProgress
from services.readwise_client.client import ReadwiseClientCache
from services.sync_service.archive import ArchiveService
from services.sync_service.state_machine import SyncEngine

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
client_cache: Optional[ReadwiseClientCache] = None
sync_engine: Optional[SyncEngine] = None
archive_service: Optional[ArchiveService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, client_cache, sync_engine, archive_service

    logger.info("Sync Service starting up...")

    db_ops = DatabaseOperations()
    if get_env("AUTO_CREATE_TABLES", "false").lower() == "true":
        db_ops.create_tables()
    logger.info("Database connection initialized")

    encryption_service = EncryptionService()

    # One client cache per process so sync and archive share a rate limiter
    client_cache = ReadwiseClientCache()
    sync_engine = SyncEngine(db_ops, encryption_service, client_cache=client_cache)
    archive_service = ArchiveService(db_ops, encryption_service, client_cache=client_cache)
    logger.info("Sync engine initialized")

    yield

    await client_cache.aclose()
    logger.info("Sync Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Sync Service",
    description="Mirrors a Readwise Reader library into the local store",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


@app.exception_handler(SyncInProgressError)
async def sync_in_progress_handler(request: Request, exc: SyncInProgressError):
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})


# Health check endpoint
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    db_healthy = False
    try:
        with db_ops.get_session() as session:
            session.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_healthy else "degraded",
        "service": "sync_service",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        }
    }


@app.get("/", status_code=status.HTTP_200_OK)
async def root():
    """Root endpoint."""
    return {
        "service": "Sync Service",
        "version": "0.1.0",
        "status": "running"
    }


# Request/Response models
class SyncProgressResponse(BaseModel):
    """Progress reported after every sync operation."""
    status: str
    total_synced: int
    current_batch: int
    has_more: bool
    error: Optional[str] = None


class SyncStateResponse(BaseModel):
    """Persisted sync state."""
    status: str
    last_cursor: Optional[str] = None
    last_sync_at: Optional[str] = None
    total_synced: int
    error_msg: Optional[str] = None


class SyncRunResponse(BaseModel):
    """Outcome of a scheduled run."""
    status: str
    pages: int
    documents_fetched: int
    total_synced: int
    error: Optional[str] = None


class ArchiveRequest(BaseModel):
    """Request model for archiving a selection of documents."""
    readwise_ids: List[str] = Field(..., min_length=1)


class ArchiveStaleRequest(BaseModel):
    """Request model for archiving stale documents."""
    older_than_days: int = Field(..., ge=0)
    categories: Optional[List[str]] = None
    site_names: Optional[List[str]] = None


class ArchiveSourceRequest(BaseModel):
    """Request model for archiving the unread documents of one site."""
    site_name: str = Field(..., min_length=1)


class ArchiveResponse(BaseModel):
    """Response model for archive actions."""
    success: int
    failed: int
    errors: List[str]


def _progress_response(progress: SyncProgress) -> SyncProgressResponse:
    return SyncProgressResponse(**progress.to_dict())


def _archive_response(result: ArchiveResult) -> ArchiveResponse:
    return ArchiveResponse(**result.to_dict())


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@app.get("/internal/sync/state", response_model=SyncStateResponse, status_code=status.HTTP_200_OK)
async def get_sync_state():
    """Get the persisted sync state."""
    state = sync_engine.get_state()
    if state is None:
        return SyncStateResponse(status="idle", total_synced=0)

    return SyncStateResponse(
        status=state.status,
        last_cursor=state.last_cursor,
        last_sync_at=_isoformat(state.last_sync_at),
        total_synced=state.total_synced,
        error_msg=state.error_msg
    )


@app.post("/internal/sync/start", response_model=SyncProgressResponse, status_code=status.HTTP_200_OK)
async def start_sync():
    """Start a sync cycle, or report progress if one is already running."""
    return _progress_response(await sync_engine.start_sync())


@app.post("/internal/sync/advance", response_model=SyncProgressResponse, status_code=status.HTTP_200_OK)
async def advance_sync():
    """
    Fetch and apply one page.

    Callers drive long syncs by calling this repeatedly while has_more is
    true, which keeps every request short and progress observable.
    """
    return _progress_response(await sync_engine.advance())


@app.post("/internal/sync/retry", response_model=SyncProgressResponse, status_code=status.HTTP_200_OK)
async def retry_sync():
    """Resume a failed sync at the cursor that failed."""
    return _progress_response(sync_engine.retry_from_same_point())


@app.post("/internal/sync/skip", response_model=SyncProgressResponse, status_code=status.HTTP_200_OK)
async def skip_cursor():
    """Abandon a failed cursor and only pick up changes made from now on."""
    return _progress_response(sync_engine.skip_problematic_cursor())


@app.post("/internal/sync/reset", response_model=SyncProgressResponse, status_code=status.HTTP_200_OK)
async def reset_sync():
    """Delete all synced documents and forget the cursor, forcing a full resync."""
    return _progress_response(sync_engine.reset())


@app.api_route("/internal/sync/cron", methods=["GET", "POST"], response_model=SyncRunResponse)
async def run_scheduled_sync(authorization: Optional[str] = Header(None)):
    """
    Run a full sync to its terminal state (for schedulers).

    When CRON_SECRET is set the request must carry it as a bearer token.
    """
    cron_secret = get_cron_secret()
    if cron_secret and authorization != f"Bearer {cron_secret}":
        logger.warning("Rejected scheduled sync with invalid credentials")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized"
        )

    summary = await sync_engine.run_to_completion()
    response = SyncRunResponse(**summary)

    if summary["status"] == "error":
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump()
        )
    return response


@app.post("/internal/archive", response_model=ArchiveResponse, status_code=status.HTTP_200_OK)
async def archive_documents(request: ArchiveRequest):
    """Archive a selection of documents in Readwise and locally."""
    return _archive_response(await archive_service.archive_documents(request.readwise_ids))


@app.post("/internal/archive/stale", response_model=ArchiveResponse, status_code=status.HTTP_200_OK)
async def archive_stale_documents(request: ArchiveStaleRequest):
    """Archive unread, unstarted documents older than a threshold."""
    result = await archive_service.archive_stale_documents(
        older_than_days=request.older_than_days,
        categories=request.categories,
        site_names=request.site_names
    )
    return _archive_response(result)


@app.post("/internal/archive/source", response_model=ArchiveResponse, status_code=status.HTTP_200_OK)
async def archive_source_documents(request: ArchiveSourceRequest):
    """Archive every unread document from one site."""
    return _archive_response(await archive_service.archive_documents_from_source(request.site_name))


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("SYNC_SERVICE_PORT", 8005))
    uvicorn.run(app, host="0.0.0.0", port=port)
