"""
Cluster Store - Persistence for insights, merge clusters and cluster jobs.

Every public write either commits or rolls back before returning, so a
failing item never leaves half-written state behind for the next one.

Guarantees:
- Committing a merge is atomic: all selected members get ``unique_insight_id``
  and the cluster becomes approved, or nothing changes.
- Cluster status only moves pending -> approved/rejected; non-pending
  clusters are frozen.
- At most one cluster job is processing (partial unique index).
- Job counters never decrease.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import Any
from uuid import UUID

import numpy as np
from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from insight_dedup.db.models import (
    CLUSTER_APPROVED,
    CLUSTER_PENDING,
    CLUSTER_REJECTED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    ClusterJob,
    MergeCluster,
    MergeClusterMember,
    RawInsight,
    UniqueInsight,
    utc_now,
)
from insight_dedup.exceptions import (
    InvalidTransitionError,
    JobAlreadyRunningError,
    MergeConflictError,
    NotFoundError,
)
from insight_dedup.semantic.embedding_service import EmbeddingResult


def _open_membership():
    """
    Correlated EXISTS: the insight sits in a pending cluster, or was selected
    in an approved one. Members left out of an approved merge are free again.
    """
    return (
        select(MergeClusterMember.raw_insight_id)
        .join(MergeCluster, MergeCluster.id == MergeClusterMember.cluster_id)
        .where(
            MergeClusterMember.raw_insight_id == RawInsight.id,
            or_(
                MergeCluster.status == CLUSTER_PENDING,
                and_(
                    MergeCluster.status == CLUSTER_APPROVED,
                    MergeClusterMember.is_selected.is_(True),
                ),
            ),
        )
        .exists()
    )


class ClusterStore:
    """
    Data access for the deduplication pipeline.

    Example:
        >>> store = ClusterStore(db_session)
        >>> candidates = store.fetch_unclustered(limit=500)
        >>> canonicals = store.fetch_canonical_embeddings()
    """

    def __init__(self, db_session: Session):
        """
        Initialize the store.

        Args:
            db_session: SQLAlchemy database session.
        """
        self.db = db_session

    # ========================================
    # Raw insights
    # ========================================

    def _unclustered_filter(self) -> list:
        return [
            RawInsight.deleted_at.is_(None),
            RawInsight.unique_insight_id.is_(None),
            RawInsight.embedding.is_not(None),
            ~_open_membership(),
        ]

    def fetch_unclustered(
        self,
        limit: int,
        source_id: UUID | None = None,
        run_id: UUID | None = None,
        checked_before: Any | None = None,
    ) -> list[RawInsight]:
        """
        Fetch candidate insights for clustering.

        Candidates have an embedding, are not merged, not deleted and not in
        an open cluster. Always queried fresh.

        Args:
            limit: Maximum insights to return.
            source_id: Restrict to one source document.
            run_id: Restrict to one extraction run.
            checked_before: Skip insights examined at or after this instant.

        Returns:
            Insights ordered by creation time, then id.
        """
        stmt = select(RawInsight).where(*self._unclustered_filter())

        if source_id:
            stmt = stmt.where(RawInsight.source_id == source_id)
        if run_id:
            stmt = stmt.where(RawInsight.run_id == run_id)
        if checked_before is not None:
            stmt = stmt.where(
                or_(
                    RawInsight.cluster_checked_at.is_(None),
                    RawInsight.cluster_checked_at < checked_before,
                )
            )

        stmt = stmt.order_by(RawInsight.created_at, RawInsight.id).limit(limit)
        return list(self.db.scalars(stmt))

    def count_unclustered(self) -> int:
        """Count insights that still need clustering."""
        stmt = select(func.count()).select_from(RawInsight).where(*self._unclustered_filter())
        return self.db.scalar(stmt) or 0

    def fetch_missing_embeddings(
        self,
        limit: int,
        exclude_ids: Iterable[UUID] = (),
    ) -> list[RawInsight]:
        """Fetch live insights without an embedding."""
        stmt = select(RawInsight).where(
            RawInsight.embedding.is_(None),
            RawInsight.deleted_at.is_(None),
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            stmt = stmt.where(RawInsight.id.not_in(exclude_ids))

        stmt = stmt.order_by(RawInsight.created_at, RawInsight.id).limit(limit)
        return list(self.db.scalars(stmt))

    def count_missing_embeddings(self) -> int:
        """Count live insights without an embedding."""
        stmt = (
            select(func.count())
            .select_from(RawInsight)
            .where(RawInsight.embedding.is_(None), RawInsight.deleted_at.is_(None))
        )
        return self.db.scalar(stmt) or 0

    def save_embedding(self, insight_id: UUID, result: EmbeddingResult) -> bool:
        """
        Store an insight's embedding.

        Returns:
            True if the insight was updated, False if it no longer exists.
        """
        try:
            updated = self.db.execute(
                update(RawInsight)
                .where(RawInsight.id == insight_id)
                .values(
                    embedding=result.to_bytes(),
                    embedding_model=result.model_name,
                    embedding_generated_at=result.generated_at,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return updated.rowcount > 0

    def mark_checked(self, insight_ids: Sequence[UUID], checked_at: Any | None = None) -> None:
        """Stamp insights as examined by the Cluster Builder."""
        if not insight_ids:
            return

        try:
            self.db.execute(
                update(RawInsight)
                .where(RawInsight.id.in_(list(insight_ids)))
                .values(cluster_checked_at=checked_at or utc_now())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def search_unmerged(self, query: str, limit: int = 20) -> list[RawInsight]:
        """Case-insensitive substring search over unmerged, live insights."""
        query = (query or "").strip()
        if not query:
            return []

        stmt = (
            select(RawInsight)
            .where(
                RawInsight.unique_insight_id.is_(None),
                RawInsight.deleted_at.is_(None),
                RawInsight.statement.ilike(f"%{query}%"),
            )
            .order_by(RawInsight.created_at.desc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt))

    # ========================================
    # Unique insights
    # ========================================

    def fetch_canonical_embeddings(self) -> list[tuple[UUID, np.ndarray]]:
        """
        Canonical embedding of every unique insight, ordered by id.

        A unique insight's canonical embedding is its canonical raw insight's
        embedding; unique insights without a readable one are skipped.
        """
        stmt = (
            select(UniqueInsight.id, RawInsight.embedding)
            .join(RawInsight, UniqueInsight.canonical_raw_id == RawInsight.id)
            .where(RawInsight.embedding.is_not(None))
            .order_by(UniqueInsight.id)
        )
        canonicals = []
        for row in self.db.execute(stmt):
            try:
                canonicals.append((row.id, EmbeddingResult.from_bytes(row.embedding)))
            except ValueError as e:
                logger.warning(f"Skipping unique insight {row.id}: corrupt embedding ({e})")
        return canonicals

    def update_canonical_statement(self, unique_insight_id: UUID, statement: str) -> UniqueInsight:
        """Edit a unique insight's wording. Membership is unaffected."""
        statement = (statement or "").strip()
        if not statement:
            raise ValueError("canonical_statement cannot be empty")

        unique = self.db.get(UniqueInsight, unique_insight_id)
        if unique is None:
            raise NotFoundError(f"Unique insight not found: {unique_insight_id}")

        unique.canonical_statement = statement
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return unique

    # ========================================
    # Merge clusters
    # ========================================

    def get_cluster(self, cluster_id: UUID) -> MergeCluster | None:
        return self.db.get(
            MergeCluster, cluster_id, options=[selectinload(MergeCluster.members)]
        )

    def list_clusters(
        self,
        status: str | None = CLUSTER_PENDING,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MergeCluster]:
        """List clusters, newest first."""
        stmt = select(MergeCluster).options(selectinload(MergeCluster.members))
        if status:
            stmt = stmt.where(MergeCluster.status == status)

        stmt = stmt.order_by(MergeCluster.created_at.desc()).offset(offset).limit(limit)
        return list(self.db.scalars(stmt))

    def create_cluster(
        self,
        members: Sequence[tuple[UUID, float]],
        suggested_unique_insight_id: UUID | None = None,
        suggested_canonical_raw_id: UUID | None = None,
        created_by: str = "system",
    ) -> MergeCluster:
        """
        Create a pending cluster with its members in one transaction.

        Args:
            members: (raw_insight_id, similarity) pairs.
            suggested_unique_insight_id: Target for merge-into-existing proposals.
            suggested_canonical_raw_id: Builder's canonical pick for new groups.
            created_by: Creator tag.

        Returns:
            The persisted MergeCluster.
        """
        if not members:
            raise ValueError("A cluster needs at least one member")

        cluster = MergeCluster(
            status=CLUSTER_PENDING,
            created_by=created_by,
            suggested_unique_insight_id=suggested_unique_insight_id,
            suggested_canonical_raw_id=suggested_canonical_raw_id,
        )
        seen: set[UUID] = set()
        for raw_insight_id, similarity in members:
            if raw_insight_id in seen:
                continue
            seen.add(raw_insight_id)
            cluster.members.append(
                MergeClusterMember(
                    raw_insight_id=raw_insight_id,
                    similarity=_check_similarity(similarity),
                    is_selected=True,
                )
            )

        self.db.add(cluster)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.debug(f"Created cluster {cluster.id} with {len(cluster.members)} members")
        return cluster

    def add_member(self, cluster_id: UUID, raw_insight_id: UUID, similarity: float) -> bool:
        """
        Append a member to a pending cluster.

        A duplicate link (e.g. left by an earlier partial success) is a benign
        no-op.

        Returns:
            True if a member row was inserted, False if it already existed.

        Raises:
            NotFoundError: Unknown cluster.
            InvalidTransitionError: The cluster is no longer pending.
        """
        cluster = self.db.get(MergeCluster, cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        if not cluster.is_pending:
            raise InvalidTransitionError(
                f"Cluster {cluster_id} is {cluster.status}; membership is frozen"
            )

        if self.db.get(MergeClusterMember, (cluster_id, raw_insight_id)) is not None:
            logger.debug(f"Insight {raw_insight_id} already in cluster {cluster_id}")
            return False

        self.db.add(
            MergeClusterMember(
                cluster_id=cluster_id,
                raw_insight_id=raw_insight_id,
                similarity=_check_similarity(similarity),
                is_selected=True,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Duplicate member link {raw_insight_id} -> {cluster_id} ignored")
            return False
        except Exception:
            self.db.rollback()
            raise
        return True

    def find_pending_suggestion(self, unique_insight_id: UUID) -> MergeCluster | None:
        """Oldest pending cluster suggesting a merge into ``unique_insight_id``."""
        stmt = (
            select(MergeCluster)
            .where(
                MergeCluster.status == CLUSTER_PENDING,
                MergeCluster.suggested_unique_insight_id == unique_insight_id,
            )
            .order_by(MergeCluster.created_at, MergeCluster.id)
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def in_open_cluster(self, raw_insight_ids: Sequence[UUID]) -> set[UUID]:
        """Subset of ``raw_insight_ids`` already held by an open cluster."""
        if not raw_insight_ids:
            return set()

        stmt = select(RawInsight.id).where(
            RawInsight.id.in_(list(raw_insight_ids)), _open_membership()
        )
        return set(self.db.scalars(stmt))

    def was_rejected(
        self,
        raw_insight_ids: Sequence[UUID],
        suggested_unique_insight_id: UUID | None = None,
    ) -> bool:
        """
        Whether a reviewer already rejected a cluster containing all of
        ``raw_insight_ids`` with the same suggestion target.
        """
        ids = list(dict.fromkeys(raw_insight_ids))
        if not ids:
            return False

        target = (
            MergeCluster.suggested_unique_insight_id == suggested_unique_insight_id
            if suggested_unique_insight_id is not None
            else MergeCluster.suggested_unique_insight_id.is_(None)
        )
        stmt = (
            select(MergeClusterMember.cluster_id)
            .join(MergeCluster, MergeCluster.id == MergeClusterMember.cluster_id)
            .where(
                MergeCluster.status == CLUSTER_REJECTED,
                target,
                MergeClusterMember.raw_insight_id.in_(ids),
            )
            .group_by(MergeClusterMember.cluster_id)
            .having(func.count(MergeClusterMember.raw_insight_id) == len(ids))
            .limit(1)
        )
        return self.db.scalars(stmt).first() is not None

    def set_cluster_status(self, cluster_id: UUID, status: str) -> MergeCluster:
        """
        Move a pending cluster to approved or rejected.

        Raises:
            ValueError: Unknown target status.
            NotFoundError: Unknown cluster.
            InvalidTransitionError: The cluster is not pending.
        """
        if status not in (CLUSTER_APPROVED, CLUSTER_REJECTED):
            raise ValueError(f"Invalid cluster status: {status}")

        cluster = self.db.get(MergeCluster, cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        if not cluster.is_pending:
            raise InvalidTransitionError(f"Cluster {cluster_id} is already {cluster.status}")

        cluster.status = status
        cluster.reviewed_at = utc_now()
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Cluster {cluster_id} marked {status}")
        return cluster

    def commit_merge(
        self,
        cluster_id: UUID,
        selected_raw_ids: Sequence[UUID],
        canonical_raw_id: UUID | None = None,
    ) -> UniqueInsight:
        """
        Link the selected members of a cluster to a unique insight.

        New-group clusters create a UniqueInsight from ``canonical_raw_id``
        (falling back to the builder's suggestion); merge-into-existing
        clusters link to their suggested unique insight. Unselected members get
        ``is_selected = False``. Everything happens in one transaction.

        Raises:
            NotFoundError: Unknown cluster, canonical insight or unique insight.
            InvalidTransitionError: The cluster is not pending.
            ValueError: Empty selection, foreign ids, or canonical outside selection.
            MergeConflictError: A selected insight is already merged or deleted.
        """
        selected = list(dict.fromkeys(selected_raw_ids))
        if not selected:
            raise ValueError("selected_raw_ids cannot be empty")

        try:
            cluster = self.get_cluster(cluster_id)
            if cluster is None:
                raise NotFoundError(f"Cluster not found: {cluster_id}")
            if not cluster.is_pending:
                raise InvalidTransitionError(f"Cluster {cluster_id} is already {cluster.status}")

            member_ids = {m.raw_insight_id for m in cluster.members}
            foreign = [raw_id for raw_id in selected if raw_id not in member_ids]
            if foreign:
                raise ValueError(f"Insights not in cluster {cluster_id}: {foreign}")

            if cluster.is_merge_into_existing:
                unique = self.db.get(UniqueInsight, cluster.suggested_unique_insight_id)
                if unique is None:
                    raise NotFoundError(
                        f"Unique insight not found: {cluster.suggested_unique_insight_id}"
                    )
            else:
                canonical_raw_id = canonical_raw_id or cluster.suggested_canonical_raw_id
                if canonical_raw_id is None or canonical_raw_id not in selected:
                    raise ValueError("canonical_raw_id must be one of selected_raw_ids")

                canonical = self.db.get(RawInsight, canonical_raw_id)
                if canonical is None:
                    raise NotFoundError(f"Canonical insight not found: {canonical_raw_id}")

                unique = UniqueInsight(
                    canonical_statement=canonical.statement,
                    canonical_raw_id=canonical.id,
                    canonical_source_id=canonical.source_id,
                )
                self.db.add(unique)
                self.db.flush()

            linked = self.db.execute(
                update(RawInsight)
                .where(
                    RawInsight.id.in_(selected),
                    RawInsight.unique_insight_id.is_(None),
                    RawInsight.deleted_at.is_(None),
                )
                .values(unique_insight_id=unique.id)
                .execution_options(synchronize_session=False)
            )
            if linked.rowcount != len(selected):
                raise MergeConflictError(
                    f"Only {linked.rowcount} of {len(selected)} selected insights could be "
                    "linked; some are already merged or deleted"
                )

            for member in cluster.members:
                member.is_selected = member.raw_insight_id in selected

            cluster.status = CLUSTER_APPROVED
            cluster.reviewed_at = utc_now()
            self.db.commit()

        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Merged {len(selected)} insights from cluster {cluster_id} into unique {unique.id}"
        )
        return unique

    def merge_into_unique(self, raw_insight_id: UUID, unique_insight_id: UUID) -> RawInsight:
        """
        Link one raw insight directly to an existing unique insight.

        The insight is deselected in any pending cluster so that a later
        approval cannot try to link it a second time.

        Raises:
            NotFoundError: Unknown raw or unique insight.
            MergeConflictError: The raw insight is already merged.
        """
        try:
            raw = self.db.get(RawInsight, raw_insight_id)
            if raw is None or raw.deleted_at is not None:
                raise NotFoundError(f"Raw insight not found: {raw_insight_id}")
            if self.db.get(UniqueInsight, unique_insight_id) is None:
                raise NotFoundError(f"Unique insight not found: {unique_insight_id}")
            if raw.is_resolved:
                raise MergeConflictError(
                    f"Raw insight {raw_insight_id} is already merged into {raw.unique_insight_id}"
                )

            linked = self.db.execute(
                update(RawInsight)
                .where(RawInsight.id == raw_insight_id, RawInsight.unique_insight_id.is_(None))
                .values(unique_insight_id=unique_insight_id)
                .execution_options(synchronize_session=False)
            )
            if linked.rowcount != 1:
                raise MergeConflictError(f"Raw insight {raw_insight_id} was merged concurrently")

            pending_ids = select(MergeCluster.id).where(MergeCluster.status == CLUSTER_PENDING)
            self.db.execute(
                update(MergeClusterMember)
                .where(
                    MergeClusterMember.raw_insight_id == raw_insight_id,
                    MergeClusterMember.cluster_id.in_(pending_ids),
                )
                .values(is_selected=False)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()

        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Merged raw insight {raw_insight_id} into unique {unique_insight_id}")
        self.db.refresh(raw)
        return raw

    # ========================================
    # Cluster jobs
    # ========================================

    def get_processing_job(self) -> ClusterJob | None:
        stmt = select(ClusterJob).where(ClusterJob.status == JOB_PROCESSING).limit(1)
        return self.db.scalars(stmt).first()

    def create_job(self, options: dict[str, Any] | None = None) -> ClusterJob:
        """
        Open a new processing job.

        Raises:
            JobAlreadyRunningError: Another job is processing.
        """
        job = ClusterJob(status=JOB_PROCESSING, options=options or {})
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            running = self.get_processing_job()
            raise JobAlreadyRunningError(str(running.id) if running else None) from None
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Created cluster job {job.id}")
        return job

    def get_job(self, job_id: UUID) -> ClusterJob | None:
        return self.db.get(ClusterJob, job_id)

    def latest_job(self) -> ClusterJob | None:
        """Most recently started job, if any."""
        stmt = select(ClusterJob).order_by(ClusterJob.started_at.desc()).limit(1)
        return self.db.scalars(stmt).first()

    def list_jobs(self, limit: int = 20) -> list[ClusterJob]:
        stmt = select(ClusterJob).order_by(ClusterJob.started_at.desc()).limit(limit)
        return list(self.db.scalars(stmt))

    def update_job_progress(self, job_id: UUID, counters: dict[str, int]) -> ClusterJob:
        """
        Persist live counters for a processing job.

        Counters only move upwards; a lower value than the stored one is ignored.
        """
        job = self.db.get(ClusterJob, job_id)
        if job is None:
            raise NotFoundError(f"Cluster job not found: {job_id}")
        if job.status != JOB_PROCESSING:
            raise InvalidTransitionError(f"Cluster job {job_id} is already {job.status}")

        _apply_counters(job, counters)
        job.updated_at = utc_now()
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return job

    def finish_job(
        self,
        job_id: UUID,
        status: str,
        counters: dict[str, int] | None = None,
        error_message: str | None = None,
    ) -> ClusterJob:
        """
        Finalize a job exactly once.

        Raises:
            ValueError: Status is not completed/failed.
            InvalidTransitionError: The job was already finalized.
        """
        if status not in (JOB_COMPLETED, JOB_FAILED):
            raise ValueError(f"Invalid final job status: {status}")

        job = self.db.get(ClusterJob, job_id)
        if job is None:
            raise NotFoundError(f"Cluster job not found: {job_id}")
        if job.status != JOB_PROCESSING:
            raise InvalidTransitionError(f"Cluster job {job_id} is already {job.status}")

        if counters:
            _apply_counters(job, counters)
        job.status = status
        job.error_message = error_message
        job.completed_at = utc_now()
        job.updated_at = job.completed_at
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Cluster job {job_id} {status}")
        return job

    def expire_stale_jobs(self, older_than: timedelta) -> int:
        """
        Fail processing jobs that stopped reporting progress.

        A crashed worker would otherwise hold the processing slot forever.

        Returns:
            Number of jobs failed.
        """
        now = utc_now()
        cutoff = now - older_than
        try:
            result = self.db.execute(
                update(ClusterJob)
                .where(ClusterJob.status == JOB_PROCESSING, ClusterJob.updated_at < cutoff)
                .values(
                    status=JOB_FAILED,
                    completed_at=now,
                    updated_at=now,
                    error_message=f"Abandoned: no progress for more than {older_than}",
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} stale cluster job(s) as failed")
        return result.rowcount


def _check_similarity(similarity: float) -> float:
    similarity = float(similarity)
    if not -1.0 <= similarity <= 1.0:
        raise ValueError(f"Similarity must be within [-1, 1], got {similarity}")
    return similarity


def _apply_counters(job: ClusterJob, counters: dict[str, int]) -> None:
    for name, value in counters.items():
        if name not in ClusterJob.COUNTER_COLUMNS:
            raise ValueError(f"Unknown job counter: {name}")
        current = getattr(job, name) or 0
        setattr(job, name, max(current, int(value)))
