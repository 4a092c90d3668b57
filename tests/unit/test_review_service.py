"""
Unit tests for the Review Service.
"""
from uuid import uuid4

import pytest

from insight_dedup.db.models import CLUSTER_APPROVED, CLUSTER_REJECTED, RawInsight
from insight_dedup.exceptions import (
    InvalidTransitionError,
    MergeConflictError,
    NotFoundError,
)
from insight_dedup.semantic.cluster_store import ClusterStore
from insight_dedup.semantic.clustering_service import ClusterBuilder
from insight_dedup.semantic.review_service import ReviewService
from tests.helpers import unit


@pytest.fixture
def review(db_session):
    return ReviewService(db_session)


@pytest.fixture
def proposed(db_session, test_settings, make_insight):
    """Three near-duplicates proposed as one new-group cluster."""
    insights = [
        make_insight("TCP retransmits lost segments", vector=unit(0)),
        make_insight("Lost TCP segments are retransmitted", vector=unit(3)),
        make_insight("TCP resends segments that were lost", vector=unit(6)),
    ]
    result = ClusterBuilder(db_session, settings=test_settings).build_merge_clusters()
    (cluster_id,) = result.cluster_ids
    return cluster_id, insights


class TestApprove:
    def test_approve_creates_unique_from_canonical(self, review, db_session, proposed):
        cluster_id, (a, b, c) = proposed

        unique = review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=b.id)

        assert unique.canonical_raw_id == b.id
        assert unique.canonical_statement == "Lost TCP segments are retransmitted"
        db_session.expire_all()
        assert db_session.get(RawInsight, a.id).unique_insight_id == unique.id
        assert db_session.get(RawInsight, b.id).unique_insight_id == unique.id
        assert db_session.get(RawInsight, c.id).unique_insight_id is None
        assert review.get_cluster(cluster_id).status == CLUSTER_APPROVED

    def test_unselected_member_can_be_clustered_again(self, review, db_session, proposed):
        cluster_id, (a, b, c) = proposed
        review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=a.id)

        candidates = ClusterStore(db_session).fetch_unclustered(limit=10)

        assert [i.id for i in candidates] == [c.id]

    def test_default_canonical_is_the_suggestion(self, review, proposed):
        cluster_id, insights = proposed
        suggested = review.get_cluster(cluster_id).suggested_canonical_raw_id

        unique = review.approve_cluster(cluster_id, [i.id for i in insights])

        assert unique.canonical_raw_id == suggested

    def test_approve_suggestion_joins_existing_unique(self, review, db_session, test_settings, make_insight, make_unique):
        unique = make_unique(unit(0))
        x = make_insight("Same idea again", vector=unit(1))
        result = ClusterBuilder(db_session, settings=test_settings).build_merge_clusters()

        joined = review.approve_cluster(result.cluster_ids[0], [x.id])

        assert joined.id == unique.id
        db_session.expire_all()
        assert db_session.get(RawInsight, x.id).unique_insight_id == unique.id

    def test_empty_selection(self, review, proposed):
        cluster_id, _ = proposed

        with pytest.raises(ValueError):
            review.approve_cluster(cluster_id, [])

    def test_canonical_outside_selection(self, review, proposed):
        cluster_id, (a, b, c) = proposed

        with pytest.raises(ValueError, match="canonical_raw_id"):
            review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=c.id)

    def test_approve_twice(self, review, proposed):
        cluster_id, (a, b, _c) = proposed
        review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=a.id)

        with pytest.raises(InvalidTransitionError):
            review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=a.id)

    def test_unknown_cluster(self, review):
        with pytest.raises(NotFoundError):
            review.approve_cluster(uuid4(), [uuid4()])


class TestReject:
    def test_reject(self, review, proposed):
        cluster_id, _ = proposed

        cluster = review.reject_cluster(cluster_id)

        assert cluster.status == CLUSTER_REJECTED
        assert cluster.reviewed_at is not None

    def test_rejected_cluster_cannot_be_approved(self, review, proposed):
        cluster_id, (a, b, _c) = proposed
        review.reject_cluster(cluster_id)

        with pytest.raises(InvalidTransitionError):
            review.approve_cluster(cluster_id, [a.id, b.id], canonical_raw_id=a.id)


class TestManualMerge:
    def test_merge_into_unique(self, review, make_insight, make_unique):
        unique = make_unique(unit(0))
        raw = make_insight("Hand-picked duplicate", vector=unit(80))

        merged = review.merge_into_unique(raw.id, unique.id)

        assert merged.unique_insight_id == unique.id

    def test_already_merged(self, review, make_insight, make_unique):
        first = make_unique(unit(0), "first")
        second = make_unique(unit(90), "second")
        raw = make_insight("Belongs somewhere", vector=unit(45))
        review.merge_into_unique(raw.id, first.id)

        with pytest.raises(MergeConflictError):
            review.merge_into_unique(raw.id, second.id)

    def test_unknown_unique(self, review, make_insight):
        raw = make_insight("Orphan", vector=unit(0))

        with pytest.raises(NotFoundError):
            review.merge_into_unique(raw.id, uuid4())

    def test_update_canonical_statement(self, review, make_unique):
        unique = make_unique(unit(0), "old wording")

        updated = review.update_canonical_statement(unique.id, "  new wording ")

        assert updated.canonical_statement == "new wording"

    def test_blank_canonical_statement(self, review, make_unique):
        unique = make_unique(unit(0))

        with pytest.raises(ValueError):
            review.update_canonical_statement(unique.id, "   ")


class TestQueries:
    def test_search_unmerged(self, review, make_insight, make_unique):
        make_unique(unit(0), "TCP handshake canonical")
        make_insight("TCP handshake has three steps", vector=unit(1))
        make_insight("UDP has no handshake", vector=unit(2))

        statements = [i.statement for i in review.search_unmerged("tcp")]

        assert statements == ["TCP handshake has three steps"]

    def test_blank_search(self, review, make_insight):
        make_insight("anything", vector=unit(0))

        assert review.search_unmerged("  ") == []

    def test_list_clusters_by_status(self, review, proposed):
        cluster_id, _ = proposed

        assert [c.id for c in review.list_clusters(status="pending")] == [cluster_id]
        assert review.list_clusters(status="approved") == []

    def test_invalid_status(self, review):
        with pytest.raises(ValueError, match="Invalid status"):
            review.list_clusters(status="maybe")

    def test_get_missing_cluster(self, review):
        with pytest.raises(NotFoundError):
            review.get_cluster(uuid4())
