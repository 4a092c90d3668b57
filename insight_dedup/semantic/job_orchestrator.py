"""
Cluster-All Orchestrator - Embedding backfill followed by batched clustering.

State machine per job: processing -> completed | failed.

Phase 1 (skippable) embeds every insight missing a vector. Phase 2 calls the
Cluster Builder with a fixed batch size until ``max_batches`` is reached or a
batch examines nothing. Counters are persisted after every batch so the status
endpoint can be polled, and the same snapshot is pushed to an optional
progress channel. A consumer that goes away never affects the job.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta

from loguru import logger
from sqlalchemy.orm import Session

from config import Settings, get_settings
from insight_dedup.db.models import JOB_COMPLETED, JOB_FAILED, ClusterJob
from insight_dedup.exceptions import ConfigurationError
from insight_dedup.semantic.batch_embedding import (
    BatchEmbeddingProcessor,
    EmbeddingBackfillResult,
)
from insight_dedup.semantic.cluster_store import ClusterStore
from insight_dedup.semantic.clustering_service import ClusterBatchResult, ClusterBuilder
from insight_dedup.semantic.embedding_service import EmbeddingGateway, get_embedding_gateway
from insight_dedup.semantic.progress import (
    STAGE_CLUSTERING,
    STAGE_EMBEDDINGS,
    NullProgressChannel,
    ProgressChannel,
    ProgressEvent,
)


@dataclass
class ClusterAllResult:
    """Final counters of one cluster-all run."""

    job_id: str
    status: str
    embeddings: dict = field(default_factory=dict)
    clustering: dict = field(default_factory=dict)

    @classmethod
    def from_job(cls, job: ClusterJob) -> ClusterAllResult:
        data = job.to_dict()
        return cls(
            job_id=data["id"],
            status=data["status"],
            embeddings=data["embeddings"],
            clustering=data["clustering"],
        )

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "embeddings": self.embeddings,
            "clustering": self.clustering,
        }


class _Counters:
    """Running totals for one job, shaped like the ClusterJob columns."""

    def __init__(self):
        self.values = {name: 0 for name in ClusterJob.COUNTER_COLUMNS}

    def set_embeddings(self, backfill: EmbeddingBackfillResult) -> None:
        self.values["embeddings_total"] = backfill.total
        self.values["embeddings_processed"] = backfill.processed
        self.values["embeddings_errors"] = backfill.errors

    def add_batch(self, batch: ClusterBatchResult) -> None:
        self.values["clustering_processed"] += batch.processed
        self.values["clusters_created"] += batch.clusters_created
        self.values["members_added"] += batch.members_added
        self.values["merge_into_unique_suggestions"] += batch.merge_into_unique_suggestions
        self.values["clustering_errors"] += batch.errors
        self.values["batches_processed"] += 1

    def clustering(self) -> dict[str, int]:
        return {
            "clusters_created": self.values["clusters_created"],
            "members_added": self.values["members_added"],
            "merge_into_unique_suggestions": self.values["merge_into_unique_suggestions"],
            "batches_processed": self.values["batches_processed"],
        }


class ClusterAllOrchestrator:
    """
    Drive a full "cluster everything" run.

    Example:
        >>> orchestrator = ClusterAllOrchestrator(db_session)
        >>> result = orchestrator.run(batch_size=200, max_batches=5)
        >>> print(result.clustering["clusters_created"])
    """

    def __init__(
        self,
        db_session: Session | None,
        settings: Settings | None = None,
        gateway: EmbeddingGateway | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the orchestrator.

        Args:
            db_session: Session for the job; None means no store is configured.
            settings: Settings override.
            gateway: Embedding backend (default from ``embedding_provider``).
            sleep: Delay function, replaceable in tests.
        """
        self.db = db_session
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.sleep = sleep

    def run(
        self,
        batch_size: int | None = None,
        max_batches: int | None = None,
        skip_embeddings: bool = False,
        channel: ProgressChannel | None = None,
    ) -> ClusterAllResult:
        """
        Run both phases under a new ClusterJob.

        Args:
            batch_size: Insights per clustering batch (capped at cluster_max_limit).
            max_batches: Upper bound on clustering batches.
            skip_embeddings: Skip the embedding backfill.
            channel: Optional progress consumer.

        Returns:
            ClusterAllResult with the job's final counters.

        Raises:
            ConfigurationError: No store or embedding backend; nothing was started.
            JobAlreadyRunningError: Another job is processing.
        """
        if self.db is None:
            raise ConfigurationError("No database configured (set DATABASE_URL)")
        if not skip_embeddings and self.gateway is None:
            self.gateway = get_embedding_gateway(self.settings)

        channel = channel or NullProgressChannel()
        store = ClusterStore(self.db)
        builder = ClusterBuilder(self.db, settings=self.settings, store=store)
        batch_size = builder.clamp_limit(batch_size)
        max_batches = max(1, max_batches or self.settings.cluster_max_batches)

        store.expire_stale_jobs(timedelta(minutes=self.settings.cluster_job_stale_minutes))
        job = store.create_job(
            options={
                "batch_size": batch_size,
                "max_batches": max_batches,
                "skip_embeddings": skip_embeddings,
            }
        )
        job_id = job.id
        counters = _Counters()

        logger.info(
            f"Cluster job {job_id} started (batch_size={batch_size}, "
            f"max_batches={max_batches}, skip_embeddings={skip_embeddings})"
        )

        try:
            self._embed_phase(store, job_id, counters, channel, skip_embeddings)
            self._cluster_phase(store, builder, job, counters, channel, batch_size, max_batches)
        except Exception as e:
            logger.exception(f"Cluster job {job_id} failed")
            self.db.rollback()
            try:
                store.finish_job(
                    job_id, JOB_FAILED, counters=counters.values, error_message=str(e)
                )
            except Exception:
                logger.exception(f"Could not record failure of cluster job {job_id}")
            channel.publish(
                ProgressEvent(
                    stage=STAGE_CLUSTERING,
                    job_id=str(job_id),
                    error=True,
                    done=True,
                    message=str(e),
                )
            )
            raise

        job = store.finish_job(job_id, JOB_COMPLETED, counters=counters.values)
        result = ClusterAllResult.from_job(job)
        channel.publish(
            ProgressEvent(
                stage=STAGE_CLUSTERING,
                job_id=str(job_id),
                total=counters.values["clustering_total"],
                processed=counters.values["clustering_processed"],
                errors=counters.values["clustering_errors"],
                complete=True,
                done=True,
                counters=counters.clustering(),
            )
        )
        logger.info(f"Cluster job {job_id} completed: {result.clustering}")
        return result

    def _embed_phase(
        self,
        store: ClusterStore,
        job_id,
        counters: _Counters,
        channel: ProgressChannel,
        skip: bool,
    ) -> None:
        if skip:
            channel.publish(
                ProgressEvent(stage=STAGE_EMBEDDINGS, job_id=str(job_id), skipped=True, complete=True)
            )
            return

        def on_progress(backfill: EmbeddingBackfillResult) -> None:
            counters.set_embeddings(backfill)
            store.update_job_progress(job_id, counters.values)
            channel.publish(
                ProgressEvent(
                    stage=STAGE_EMBEDDINGS,
                    job_id=str(job_id),
                    total=backfill.total,
                    processed=backfill.processed,
                    errors=backfill.errors,
                )
            )

        processor = BatchEmbeddingProcessor(
            self.db,
            gateway=self.gateway,
            settings=self.settings,
            store=store,
            sleep=self.sleep,
        )
        backfill = processor.generate_missing(on_progress=on_progress)

        counters.set_embeddings(backfill)
        store.update_job_progress(job_id, counters.values)
        channel.publish(
            ProgressEvent(
                stage=STAGE_EMBEDDINGS,
                job_id=str(job_id),
                total=backfill.total,
                processed=backfill.processed,
                errors=backfill.errors,
                complete=True,
                message="Embedding backfill aborted" if backfill.aborted else None,
            )
        )

    def _cluster_phase(
        self,
        store: ClusterStore,
        builder: ClusterBuilder,
        job: ClusterJob,
        counters: _Counters,
        channel: ProgressChannel,
        batch_size: int,
        max_batches: int,
    ) -> None:
        job_id = job.id
        # Insights stamped during this job have nothing new to offer until the next one
        checked_before = job.started_at

        counters.values["clustering_total"] = store.count_unclustered()
        store.update_job_progress(job_id, counters.values)

        for batch_number in range(1, max_batches + 1):
            batch = builder.build_merge_clusters(limit=batch_size, checked_before=checked_before)
            if batch.processed == 0:
                logger.info(f"Cluster job {job_id}: nothing left after {batch_number - 1} batches")
                break

            counters.add_batch(batch)
            store.update_job_progress(job_id, counters.values)
            channel.publish(
                ProgressEvent(
                    stage=STAGE_CLUSTERING,
                    job_id=str(job_id),
                    total=counters.values["clustering_total"],
                    processed=counters.values["clustering_processed"],
                    errors=counters.values["clustering_errors"],
                    counters=counters.clustering(),
                )
            )

            if batch_number < max_batches and self.settings.cluster_batch_delay_seconds > 0:
                self.sleep(self.settings.cluster_batch_delay_seconds)
