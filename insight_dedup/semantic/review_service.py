"""
Review Service - Human decisions on merge proposals.

Nothing becomes a unique insight without passing through here: approving a
cluster commits the selected members, rejecting it keeps the builder from
proposing the same grouping again.
"""
from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy.orm import Session

from insight_dedup.db.models import (
    CLUSTER_REJECTED,
    CLUSTER_STATUSES,
    MergeCluster,
    RawInsight,
    UniqueInsight,
)
from insight_dedup.exceptions import NotFoundError
from insight_dedup.semantic.cluster_store import ClusterStore


class ReviewService:
    """
    Approve, reject and hand-merge insights.

    Example:
        >>> review = ReviewService(db_session)
        >>> unique = review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=a.id)
    """

    def __init__(self, db_session: Session, store: ClusterStore | None = None):
        self.store = store or ClusterStore(db_session)

    def approve_cluster(
        self,
        cluster_id: UUID,
        selected_raw_ids: Sequence[UUID],
        canonical_raw_id: UUID | None = None,
    ) -> UniqueInsight:
        """
        Commit a cluster's selected members as one unique insight.

        For a merge-into-existing cluster the members join the suggested
        unique insight and ``canonical_raw_id`` is ignored.
        """
        if not selected_raw_ids:
            raise ValueError("selected_raw_ids cannot be empty")

        unique = self.store.commit_merge(cluster_id, selected_raw_ids, canonical_raw_id)
        logger.info(f"Approved cluster {cluster_id} -> unique insight {unique.id}")
        return unique

    def reject_cluster(self, cluster_id: UUID) -> MergeCluster:
        return self.store.set_cluster_status(cluster_id, CLUSTER_REJECTED)

    def merge_into_unique(self, raw_insight_id: UUID, unique_insight_id: UUID) -> RawInsight:
        return self.store.merge_into_unique(raw_insight_id, unique_insight_id)

    def update_canonical_statement(self, unique_insight_id: UUID, statement: str) -> UniqueInsight:
        return self.store.update_canonical_statement(unique_insight_id, statement)

    def search_unmerged(self, query: str, limit: int = 20) -> list[RawInsight]:
        return self.store.search_unmerged(query, limit=max(1, min(limit, 100)))

    def list_clusters(
        self,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[MergeCluster]:
        if status and status not in CLUSTER_STATUSES:
            raise ValueError(f"Invalid status: {status}. Use: {list(CLUSTER_STATUSES)}")
        return self.store.list_clusters(status=status, limit=limit, offset=offset)

    def get_cluster(self, cluster_id: UUID) -> MergeCluster:
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        return cluster
