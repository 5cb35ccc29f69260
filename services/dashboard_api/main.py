"""Dashboard API - FastAPI application."""

import logging
import sys
import os
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

from fastapi import FastAPI, Request, status, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from sqlalchemy import text

from shared.config import get_env
from shared.db_operations import DatabaseOperations
from shared.encryption import EncryptionService
from shared.exceptions import AuthError
from shared.models import TriageSettings
from services.dashboard_api.analytics import AnalyticsService
from services.dashboard_api.settings import SettingsService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
db_ops: Optional[DatabaseOperations] = None
analytics: Optional[AnalyticsService] = None
settings_service: Optional[SettingsService] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global db_ops, analytics, settings_service

    logger.info("Dashboard API starting up...")

    db_ops = DatabaseOperations()
    if get_env("AUTO_CREATE_TABLES", "false").lower() == "true":
        db_ops.create_tables()
    logger.info("Database connection initialized")

    analytics = AnalyticsService(db_ops)
    settings_service = SettingsService(db_ops, EncryptionService())

    yield

    logger.info("Dashboard API shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Dashboard API",
    description="Statistics and triage over a synced Readwise Reader library",
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


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": str(exc)})


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
        "service": "dashboard_api",
        "version": "0.1.0",
        "dependencies": {
            "database": "up" if db_healthy else "down"
        }
    }


# Request/Response models
class TriageSettingsModel(BaseModel):
    """Stale thresholds in days."""
    stale_news_threshold: int = Field(..., gt=0)
    stale_article_threshold: int = Field(..., gt=0)
    stale_default_threshold: int = Field(..., gt=0)


class ApiTokenRequest(BaseModel):
    """Request model for storing the Readwise API token."""
    token: str = Field(..., min_length=1)


class ApiTokenStatus(BaseModel):
    """Whether a token is configured; the token itself is never returned."""
    configured: bool


class SyncLogEntry(BaseModel):
    """One sync audit entry."""
    level: str
    message: str
    cursor: Optional[str] = None
    created_at: str


# Dashboard

@app.get("/api/stats")
async def get_document_stats():
    return analytics.document_stats()


@app.get("/api/stats/added")
async def get_documents_added(days: int = Query(30, ge=1, le=365)):
    return analytics.documents_added_over_time(days)


@app.get("/api/stats/read")
async def get_documents_read(days: int = Query(30, ge=1, le=365)):
    return analytics.documents_read_over_time(days)


@app.get("/api/documents/recent")
async def get_recent_documents(limit: int = Query(10, ge=1, le=100)):
    return analytics.recent_documents(limit)


@app.get("/api/documents/search")
async def search_documents(q: str = Query(..., min_length=1), limit: int = Query(20, ge=1, le=100)):
    return analytics.search_documents(q, limit)


# Triage

@app.get("/api/triage/velocity")
async def get_velocity():
    return analytics.velocity_metrics()


@app.get("/api/triage/stale")
async def get_stale_documents(limit: int = Query(50, ge=0, le=500)):
    return analytics.stale_documents(limit)


@app.get("/api/triage/stale-by-age")
async def get_stale_documents_by_age(
    older_than_days: int = Query(..., ge=0),
    limit: int = Query(50, ge=0, le=500)
):
    return analytics.stale_documents_by_age(older_than_days, limit)


@app.get("/api/triage/sources")
async def get_low_engagement_sources(min_docs: int = Query(5, ge=1)):
    return analytics.low_engagement_sources(min_docs)


@app.get("/api/triage/tags")
async def get_tag_engagement():
    return analytics.tag_engagement()


@app.get("/api/triage/summary")
async def get_triage_summary():
    return analytics.triage_summary()


# Settings

@app.get("/api/settings/triage", response_model=TriageSettingsModel)
async def get_triage_settings():
    return TriageSettingsModel(**asdict(settings_service.get_triage_settings()))


@app.put("/api/settings/triage", response_model=TriageSettingsModel)
async def save_triage_settings(request: TriageSettingsModel):
    saved = settings_service.save_triage_settings(TriageSettings(**request.model_dump()))
    return TriageSettingsModel(**asdict(saved))


@app.get("/api/settings/token", response_model=ApiTokenStatus)
async def get_token_status():
    return ApiTokenStatus(configured=settings_service.has_api_token())


@app.put("/api/settings/token", response_model=ApiTokenStatus)
async def save_api_token(request: ApiTokenRequest):
    """Validate the token with Readwise and store it encrypted."""
    await settings_service.save_api_token(request.token)
    return ApiTokenStatus(configured=True)


@app.delete("/api/settings/token", response_model=ApiTokenStatus)
async def delete_api_token():
    settings_service.delete_api_token()
    return ApiTokenStatus(configured=False)


# Sync audit trail

@app.get("/api/sync/logs", response_model=List[SyncLogEntry])
async def get_sync_logs(limit: int = Query(100, ge=1, le=1000)):
    return [
        SyncLogEntry(
            level=log.level,
            message=log.message,
            cursor=log.cursor,
            created_at=log.created_at.isoformat()
        )
        for log in db_ops.get_sync_logs(limit)
    ]


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("DASHBOARD_API_PORT", 8006))
    uvicorn.run(app, host="0.0.0.0", port=port)
