"""
Insight deduplication router.

Endpoints for:
- Clustering one ingestion (source/run) into merge proposals
- Cluster-all jobs (embedding backfill + batched clustering), optionally
  streamed as server-sent events
- Job status with live "work remaining" counts
- Review actions: approve, reject, merge into an existing unique insight
"""
from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from insight_dedup.db.database import get_session, get_session_factory
from insight_dedup.db.models import MergeCluster, RawInsight, UniqueInsight
from insight_dedup.exceptions import (
    ConfigurationError,
    InsightDedupError,
    InvalidTransitionError,
    JobAlreadyRunningError,
    MergeConflictError,
    NotFoundError,
)
from insight_dedup.semantic import (
    BatchEmbeddingProcessor,
    ClusterAllOrchestrator,
    ClusterBuilder,
    ClusterStore,
    EmbeddingGateway,
    ProgressEvent,
    QueueProgressChannel,
    ReviewService,
)
from insight_dedup.semantic.progress import STAGE_CLUSTERING

router = APIRouter()


def get_gateway() -> EmbeddingGateway | None:
    """Embedding backend for this request; None selects the configured provider."""
    return None


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (MergeConflictError, InvalidTransitionError, JobAlreadyRunningError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ========================================
# Request/Response Models
# ========================================


class ClusterRequest(BaseModel):
    """Cluster the insights of one ingestion."""

    source_id: UUID | None = Field(None, description="Only insights from this source")
    run_id: UUID | None = Field(None, description="Only insights from this extraction run")
    limit: int | None = Field(None, description="Insights to consider (clamped to the max limit)")


class ClusterBatchResponse(BaseModel):
    processed: int
    clusters_created: int
    members_added: int
    merge_into_unique_suggestions: int
    errors: int
    cluster_ids: list[str] = Field(default_factory=list)


class ClusterAllRequest(BaseModel):
    """Options for a cluster-all job."""

    batch_size: int | None = Field(None, ge=1, description="Insights per clustering batch")
    max_batches: int | None = Field(None, ge=1, description="Maximum clustering batches")
    skip_embeddings: bool = Field(False, description="Skip the embedding backfill phase")


class ClusterAllResponse(BaseModel):
    job_id: str
    status: str
    embeddings: dict[str, int]
    clustering: dict[str, int]


class ClusterStatusResponse(BaseModel):
    """Most recent job plus live counts of remaining work."""

    job: dict[str, Any] | None
    missing_embeddings_count: int
    unclustered_insights_count: int
    needs_embeddings: bool
    needs_clustering: bool


class EmbeddingGenerateRequest(BaseModel):
    limit: int | None = Field(None, ge=1, description="Maximum insights to embed")


class EmbeddingGenerateResponse(BaseModel):
    total: int
    processed: int
    errors: int
    aborted: bool = False
    error_messages: list[str] = Field(default_factory=list)


class MergeRequest(BaseModel):
    """Approve a cluster with the reviewer's selection."""

    cluster_id: UUID
    selected_raw_ids: list[UUID] = Field(..., min_length=1)
    canonical_raw_id: UUID | None = None


class MergeResponse(BaseModel):
    unique_insight_id: str
    canonical_statement: str
    merged_count: int


class MergeIntoUniqueRequest(BaseModel):
    raw_insight_id: UUID
    unique_insight_id: UUID


class RejectRequest(BaseModel):
    cluster_id: UUID


class UniqueUpdateRequest(BaseModel):
    canonical_statement: str = Field(..., min_length=1)


class RawInsightModel(BaseModel):
    id: str
    statement: str
    context_note: str | None = None
    source_id: str | None = None
    unique_insight_id: str | None = None
    created_at: datetime | None = None


class ClusterMemberModel(BaseModel):
    raw_insight_id: str
    statement: str | None
    similarity: float
    is_selected: bool


class ClusterModel(BaseModel):
    id: str
    status: str
    created_by: str
    suggested_unique_insight_id: str | None
    suggested_canonical_raw_id: str | None
    created_at: datetime | None
    reviewed_at: datetime | None
    members: list[ClusterMemberModel]


class UniqueInsightModel(BaseModel):
    id: str
    canonical_statement: str
    canonical_raw_id: str | None
    canonical_source_id: str | None


def _str(value: Any) -> str | None:
    return str(value) if value is not None else None


def _raw_model(raw: RawInsight) -> RawInsightModel:
    return RawInsightModel(
        id=str(raw.id),
        statement=raw.statement,
        context_note=raw.context_note,
        source_id=_str(raw.source_id),
        unique_insight_id=_str(raw.unique_insight_id),
        created_at=raw.created_at,
    )


def _cluster_model(cluster: MergeCluster) -> ClusterModel:
    return ClusterModel(
        id=str(cluster.id),
        status=cluster.status,
        created_by=cluster.created_by,
        suggested_unique_insight_id=_str(cluster.suggested_unique_insight_id),
        suggested_canonical_raw_id=_str(cluster.suggested_canonical_raw_id),
        created_at=cluster.created_at,
        reviewed_at=cluster.reviewed_at,
        members=[
            ClusterMemberModel(
                raw_insight_id=str(member.raw_insight_id),
                statement=member.raw_insight.statement if member.raw_insight else None,
                similarity=member.similarity,
                is_selected=member.is_selected,
            )
            for member in cluster.members
        ],
    )


def _unique_model(unique: UniqueInsight) -> UniqueInsightModel:
    return UniqueInsightModel(
        id=str(unique.id),
        canonical_statement=unique.canonical_statement,
        canonical_raw_id=_str(unique.canonical_raw_id),
        canonical_source_id=_str(unique.canonical_source_id),
    )


# ========================================
# Clustering Endpoints
# ========================================


@router.post("/cluster", response_model=ClusterBatchResponse, summary="Cluster one ingestion")
def cluster_insights(
    request: ClusterRequest,
    db: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> ClusterBatchResponse:
    """
    Run one Cluster Builder batch, optionally restricted to a source or run.

    Only proposals are written; nothing is merged until a reviewer approves.
    """
    logger.info(
        f"Clustering requested: source={request.source_id}, run={request.run_id}, "
        f"limit={request.limit}"
    )

    try:
        builder = ClusterBuilder(db, settings=settings)
        result = builder.build_merge_clusters(
            source_id=request.source_id,
            run_id=request.run_id,
            limit=request.limit,
        )
        return ClusterBatchResponse(**result.to_dict())

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception("Failed to cluster insights")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/cluster-all", summary="Backfill embeddings and cluster everything")
def cluster_all(
    http_request: Request,
    request: ClusterAllRequest | None = None,
    db: Session = Depends(get_session),
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
    gateway: EmbeddingGateway | None = Depends(get_gateway),
):
    """
    Start a cluster-all job.

    With ``Accept: text/event-stream`` progress is streamed as server-sent
    events while the job runs in a worker thread; a client that disconnects
    stops receiving events but the job runs to the end. Otherwise the job runs
    synchronously and the final counters are returned.
    """
    request = request or ClusterAllRequest()
    options = {
        "batch_size": request.batch_size,
        "max_batches": request.max_batches,
        "skip_embeddings": request.skip_embeddings,
    }
    logger.info(f"Cluster-all requested: {options}")

    if "text/event-stream" in http_request.headers.get("accept", ""):
        return StreamingResponse(
            _stream_cluster_all(session_factory, settings, gateway, options),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    try:
        orchestrator = ClusterAllOrchestrator(db, settings=settings, gateway=gateway)
        result = orchestrator.run(**options)
        return ClusterAllResponse(**result.to_dict())

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception("Cluster-all job failed")
        raise HTTPException(status_code=500, detail=str(exc))


def _stream_cluster_all(
    session_factory: sessionmaker,
    settings: Settings,
    gateway: EmbeddingGateway | None,
    options: dict[str, Any],
):
    channel = QueueProgressChannel()

    def worker() -> None:
        session = session_factory()
        try:
            orchestrator = ClusterAllOrchestrator(session, settings=settings, gateway=gateway)
            orchestrator.run(channel=channel, **options)
        except (ConfigurationError, JobAlreadyRunningError) as e:
            # Raised before a job exists, so the orchestrator published nothing
            channel.publish(
                ProgressEvent(stage=STAGE_CLUSTERING, error=True, done=True, message=str(e))
            )
        except Exception as e:
            logger.warning(f"Streamed cluster-all job ended with error: {e}")
        finally:
            session.close()
            channel.close()

    threading.Thread(target=worker, name="cluster-all", daemon=True).start()

    try:
        for event in channel.events():
            yield f"data: {json.dumps(event.to_dict())}\n\n"
    finally:
        channel.close()


@router.get(
    "/cluster-all/status",
    response_model=ClusterStatusResponse,
    summary="Cluster-all job status",
)
def cluster_all_status(db: Session = Depends(get_session)) -> ClusterStatusResponse:
    """Most recent job plus how much embedding and clustering work remains."""
    try:
        store = ClusterStore(db)
        job = store.latest_job()
        missing = store.count_missing_embeddings()
        unclustered = store.count_unclustered()

        return ClusterStatusResponse(
            job=job.to_dict() if job else None,
            missing_embeddings_count=missing,
            unclustered_insights_count=unclustered,
            needs_embeddings=missing > 0,
            needs_clustering=unclustered > 0,
        )

    except Exception as exc:
        logger.exception("Failed to get cluster-all status")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post(
    "/generate-embeddings",
    response_model=EmbeddingGenerateResponse,
    summary="Backfill missing embeddings",
)
def generate_embeddings(
    request: EmbeddingGenerateRequest | None = None,
    db: Session = Depends(get_session),
    settings: Settings = Depends(get_settings),
    gateway: EmbeddingGateway | None = Depends(get_gateway),
) -> EmbeddingGenerateResponse:
    """Embed raw insights that have no vector yet."""
    request = request or EmbeddingGenerateRequest()
    logger.info(f"Embedding backfill requested: limit={request.limit}")

    try:
        processor = BatchEmbeddingProcessor(db, gateway=gateway, settings=settings)
        result = processor.generate_missing(limit=request.limit)
        return EmbeddingGenerateResponse(**result.to_dict())

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception("Failed to generate embeddings")
        raise HTTPException(status_code=500, detail=str(exc))


# ========================================
# Review Endpoints
# ========================================


@router.post("/merge", response_model=MergeResponse, summary="Approve a cluster")
def merge_cluster(
    request: MergeRequest,
    db: Session = Depends(get_session),
) -> MergeResponse:
    """Commit the selected members of a cluster as one unique insight."""
    try:
        unique = ReviewService(db).approve_cluster(
            request.cluster_id,
            request.selected_raw_ids,
            canonical_raw_id=request.canonical_raw_id,
        )
        return MergeResponse(
            unique_insight_id=str(unique.id),
            canonical_statement=unique.canonical_statement,
            merged_count=len(set(request.selected_raw_ids)),
        )

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception(f"Failed to merge cluster {request.cluster_id}")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post(
    "/merge-into-unique",
    response_model=RawInsightModel,
    summary="Merge one raw insight into a unique insight",
)
def merge_into_unique(
    request: MergeIntoUniqueRequest,
    db: Session = Depends(get_session),
) -> RawInsightModel:
    try:
        raw = ReviewService(db).merge_into_unique(request.raw_insight_id, request.unique_insight_id)
        return _raw_model(raw)

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception(f"Failed to merge raw insight {request.raw_insight_id}")
        raise HTTPException(status_code=500, detail=str(exc))


@router.post("/clusters/reject", response_model=ClusterModel, summary="Reject a cluster")
def reject_cluster(
    request: RejectRequest,
    db: Session = Depends(get_session),
) -> ClusterModel:
    try:
        cluster = ReviewService(db).reject_cluster(request.cluster_id)
        return _cluster_model(cluster)

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
    except Exception as exc:
        logger.exception(f"Failed to reject cluster {request.cluster_id}")
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/clusters", response_model=list[ClusterModel], summary="List clusters")
def list_clusters(
    status: str | None = Query("pending", description="pending, approved or rejected"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_session),
) -> list[ClusterModel]:
    try:
        clusters = ReviewService(db).list_clusters(status=status, limit=limit, offset=offset)
        return [_cluster_model(c) for c in clusters]

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)


@router.get("/clusters/{cluster_id}", response_model=ClusterModel, summary="Get a cluster")
def get_cluster(cluster_id: UUID, db: Session = Depends(get_session)) -> ClusterModel:
    try:
        return _cluster_model(ReviewService(db).get_cluster(cluster_id))
    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)


@router.get("/search-raw", response_model=list[RawInsightModel], summary="Search unmerged insights")
def search_raw(
    q: str = Query(..., min_length=1, description="Text to search for"),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_session),
) -> list[RawInsightModel]:
    """Unmerged insights whose statement contains ``q`` (case-insensitive)."""
    return [_raw_model(raw) for raw in ReviewService(db).search_unmerged(q, limit=limit)]


@router.patch(
    "/unique/{unique_insight_id}",
    response_model=UniqueInsightModel,
    summary="Edit a unique insight",
)
def update_unique(
    unique_insight_id: UUID,
    request: UniqueUpdateRequest,
    db: Session = Depends(get_session),
) -> UniqueInsightModel:
    try:
        unique = ReviewService(db).update_canonical_statement(
            unique_insight_id, request.canonical_statement
        )
        return _unique_model(unique)

    except (InsightDedupError, ValueError) as e:
        raise _http_error(e)
