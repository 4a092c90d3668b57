"""
Cluster Builder - Turn unclustered raw insights into merge proposals.

One call examines a bounded batch of candidates (embedded, unmerged, not
deleted, not already in an open cluster) in (created_at, id) order:

1. Merge into existing: the best canonical match of an existing unique insight
   reaches ``cluster_existing_threshold``. The insight is appended to the
   pending cluster suggesting that unique insight, or a new one is opened.
2. New group: otherwise a single greedy pass groups the insight with earlier
   batch peers reaching ``cluster_new_threshold``. Matching an already grouped
   peer joins that group, so A~B and B~C yields one group even if A!~C.
3. No match: left alone until a later batch brings a neighbour.

The builder only proposes. Merges are committed by a reviewer through the
ReviewService.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from uuid import UUID

import numpy as np
from loguru import logger
from sqlalchemy.orm import Session

from config import Settings, get_settings
from insight_dedup.db.models import utc_now
from insight_dedup.semantic.cluster_store import ClusterStore
from insight_dedup.semantic.embedding_service import EmbeddingResult
from insight_dedup.semantic.similarity_service import (
    SemanticSimilarityService,
    SimilarityError,
    SimilarityMatch,
    similarity_matrix,
)


@dataclass
class ClusterBatchResult:
    """Counters for one Cluster Builder call."""

    processed: int = 0
    clusters_created: int = 0
    members_added: int = 0
    merge_into_unique_suggestions: int = 0
    errors: int = 0
    cluster_ids: list[UUID] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["cluster_ids"] = [str(cid) for cid in self.cluster_ids]
        return data


@dataclass
class _Candidate:
    id: UUID
    created_at: datetime
    vector: np.ndarray


def _sort_time(value: datetime | None) -> datetime:
    # SQLite hands back naive datetimes; compare everything as naive UTC
    if value is None:
        return datetime.min
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value


class ClusterBuilder:
    """
    Build merge clusters for one batch of unclustered insights.

    Example:
        >>> builder = ClusterBuilder(db_session)
        >>> result = builder.build_merge_clusters(limit=200)
        >>> print(f"{result.clusters_created} new clusters")
    """

    def __init__(
        self,
        db_session: Session,
        settings: Settings | None = None,
        store: ClusterStore | None = None,
        similarity: SemanticSimilarityService | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or ClusterStore(db_session)
        self.similarity = similarity or SemanticSimilarityService()

        self.existing_threshold = self.settings.cluster_existing_threshold
        self.new_threshold = self.settings.cluster_new_threshold

    def clamp_limit(self, limit: int | None) -> int:
        """Batch size bounded to 1..cluster_max_limit."""
        if limit is None:
            limit = self.settings.cluster_batch_size
        return max(1, min(int(limit), self.settings.cluster_max_limit))

    def build_merge_clusters(
        self,
        source_id: UUID | None = None,
        run_id: UUID | None = None,
        limit: int | None = None,
        checked_before: datetime | None = None,
    ) -> ClusterBatchResult:
        """
        Examine one batch of candidates and write proposals.

        Args:
            source_id: Only consider insights from this source.
            run_id: Only consider insights from this extraction run.
            limit: Batch size (default cluster_batch_size, capped at cluster_max_limit).
            checked_before: Skip insights examined at or after this instant.

        Returns:
            ClusterBatchResult. ``processed == 0`` means nothing was left to examine.
        """
        result = ClusterBatchResult()
        insights = self.store.fetch_unclustered(
            limit=self.clamp_limit(limit),
            source_id=source_id,
            run_id=run_id,
            checked_before=checked_before,
        )
        if not insights:
            logger.debug("No unclustered insights to process")
            return result

        result.processed = len(insights)
        examined_ids = [insight.id for insight in insights]
        candidates = self._decode(insights, result)

        canonicals = self.store.fetch_canonical_embeddings()
        logger.info(
            f"Clustering {len(candidates)} insights against {len(canonicals)} unique insights"
        )

        remaining = []
        for candidate in candidates:
            match = self.similarity.best_existing_match(candidate.vector, canonicals)
            if match and match.passes(self.existing_threshold):
                if self._suggest_existing(candidate, match, result):
                    continue
            remaining.append(candidate)

        matrix, groups = self._group(remaining)
        for group in groups:
            self._write_group(remaining, matrix, group, result)

        try:
            self.store.mark_checked(examined_ids, utc_now())
        except Exception as e:
            result.errors += 1
            logger.exception(f"Failed to stamp cluster_checked_at: {e}")

        logger.info(
            f"Clustering batch done: processed={result.processed}, "
            f"clusters={result.clusters_created}, members={result.members_added}, "
            f"suggestions={result.merge_into_unique_suggestions}, errors={result.errors}"
        )
        return result

    # ========================================
    # Steps
    # ========================================

    def _decode(self, insights, result: ClusterBatchResult) -> list[_Candidate]:
        """Unpack stored embeddings, counting unusable ones as errors."""
        expected = self.settings.embedding_dimension
        candidates = []

        for insight in insights:
            try:
                vector = EmbeddingResult.from_bytes(insight.embedding)
            except ValueError as e:
                result.errors += 1
                logger.warning(f"Skipping insight {insight.id}: corrupt embedding ({e})")
                continue

            if (
                vector.shape[0] != expected
                or not np.any(vector)
                or not np.all(np.isfinite(vector))
            ):
                result.errors += 1
                logger.warning(
                    f"Skipping insight {insight.id}: unusable embedding "
                    f"({vector.shape[0]} dims, expected {expected})"
                )
                continue
            candidates.append(_Candidate(insight.id, _sort_time(insight.created_at), vector))

        return candidates

    def _suggest_existing(
        self,
        candidate: _Candidate,
        match: SimilarityMatch,
        result: ClusterBatchResult,
    ) -> bool:
        """
        Propose merging ``candidate`` into the matched unique insight.

        Returns:
            True if the candidate is settled by this step (including on write
            failure), False if it should fall through to grouping.
        """
        unique_id = match.candidate_id

        try:
            if self.store.was_rejected([candidate.id], suggested_unique_insight_id=unique_id):
                logger.debug(f"Suggestion {candidate.id} -> {unique_id} was rejected before")
                return False

            cluster = self.store.find_pending_suggestion(unique_id)
            if cluster is not None:
                if not self.store.add_member(cluster.id, candidate.id, match.similarity_score):
                    return True
            else:
                cluster = self.store.create_cluster(
                    [(candidate.id, match.similarity_score)],
                    suggested_unique_insight_id=unique_id,
                )
                result.cluster_ids.append(cluster.id)
        except Exception as e:
            result.errors += 1
            logger.warning(f"Failed to suggest merge {candidate.id} -> {unique_id}: {e}")
            return True

        result.merge_into_unique_suggestions += 1
        logger.debug(
            f"Suggested merge {candidate.id} -> {unique_id} "
            f"(similarity {match.similarity_score:.3f})"
        )
        return True

    def _group(self, candidates: list[_Candidate]) -> tuple[np.ndarray, list[list[int]]]:
        """
        Single-pass greedy grouping of candidates in batch order.

        Returns:
            The pairwise similarity matrix and groups of candidate indices.
        """
        if len(candidates) < 2:
            return np.zeros((0, 0)), []

        try:
            matrix = similarity_matrix([c.vector for c in candidates])
        except SimilarityError as e:
            logger.warning(f"Cannot compare batch: {e}")
            return np.zeros((0, 0)), []

        groups: list[list[int]] = []
        group_of: dict[int, int] = {}
        seen: list[int] = []

        for index in range(len(candidates)):
            matched = self.similarity.neighbors(matrix, index, seen, self.new_threshold)
            if matched:
                joined = [group_of[j] for j in matched if j in group_of]
                if joined:
                    target = min(joined)
                else:
                    target = len(groups)
                    groups.append([])

                for j in [index, *matched]:
                    if j not in group_of:
                        group_of[j] = target
                        groups[target].append(j)
            seen.append(index)

        return matrix, [group for group in groups if len(group) >= 2]

    def _write_group(
        self,
        candidates: list[_Candidate],
        matrix: np.ndarray,
        group: list[int],
        result: ClusterBatchResult,
    ) -> None:
        """Persist one new group as a pending cluster."""
        try:
            held = self.store.in_open_cluster([candidates[j].id for j in group])
            group = [j for j in group if candidates[j].id not in held]
            if len(group) < 2:
                return

            ids = [candidates[j].id for j in group]
            if self.store.was_rejected(ids):
                logger.debug(f"Group of {len(ids)} insights was rejected before")
                return

            canonical, scored = self._score_group(candidates, matrix, group)
            cluster = self.store.create_cluster(
                scored, suggested_canonical_raw_id=candidates[canonical].id
            )
        except Exception as e:
            result.errors += 1
            logger.warning(f"Failed to create cluster for {len(group)} insights: {e}")
            return

        result.clusters_created += 1
        result.members_added += len(scored)
        result.cluster_ids.append(cluster.id)

    def _score_group(
        self,
        candidates: list[_Candidate],
        matrix: np.ndarray,
        group: list[int],
    ) -> tuple[int, list[tuple[UUID, float]]]:
        """
        Pick the canonical suggestion and each member's similarity to it.

        The canonical has the highest mean similarity to the others; ties go
        to the earliest created, then the lowest id.
        """

        def rank(j: int):
            mean = self.similarity.mean_similarity(matrix, j, group)
            return (-mean, candidates[j].created_at, candidates[j].id)

        canonical = min(group, key=rank)
        scored = [
            (candidates[j].id, 1.0 if j == canonical else float(matrix[canonical, j]))
            for j in group
        ]
        return canonical, scored
