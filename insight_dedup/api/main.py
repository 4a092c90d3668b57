"""
FastAPI application for insight-dedup.

Provides REST API for:
- Embedding backfill for raw insights
- Batch clustering into merge proposals (narrow and cluster-all)
- Cluster-all job status
- Review actions on merge proposals
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from config import get_settings
from insight_dedup import __version__
from insight_dedup.db.database import get_engine, init_db
from insight_dedup.exceptions import ConfigurationError
from insight_dedup.logging_setup import configure_logging

settings = get_settings()


def _check_database_health() -> tuple[str, str | None]:
    """
    Check database connectivity.

    Returns:
        Tuple of (status, error_message). Status is "ok", "error" or "not_configured".
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return "ok", None
    except ConfigurationError as e:
        return "not_configured", str(e)
    except SQLAlchemyError as e:
        return "error", str(e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    configure_logging(settings)
    logger.info("Starting insight-dedup service...")
    init_db()
    logger.info(f"Service started on {settings.api_host}:{settings.api_port}")

    yield

    logger.info("Shutting down insight-dedup service...")


app = FastAPI(
    title="Insight Dedup",
    description="""
    Semantic deduplication of extracted insights.

    ## Data Flow

    ```
    Raw insights (extracted)
        ↓ embedding backfill
    Raw insights + vectors
        ↓ cluster builder
    Pending merge clusters
        ↓ human review
    Unique insights (with evidence)
    ```
    """,
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ========================================
# Health & Status Endpoints
# ========================================


@app.get("/", tags=["Health"])
def root() -> dict[str, str]:
    """Root endpoint returning service info."""
    return {
        "service": "insight-dedup",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health", tags=["Health"])
def health_check() -> dict[str, Any]:
    """Health check with an actual database round trip."""
    db_status, db_error = _check_database_health()

    result = {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "components": {
            "database": db_status,
            "embeddings": settings.embedding_provider,
        },
        "config": {
            "clustering": settings.get_clustering_config(),
            "embeddings": settings.get_embedding_config(),
        },
    }
    if db_error:
        result["errors"] = {"database": db_error}

    return result


# ========================================
# Import and mount routers
# ========================================

from insight_dedup.api.routers import insights_router  # noqa: E402

app.include_router(insights_router.router, prefix="/api/admin/insights", tags=["Insights"])
