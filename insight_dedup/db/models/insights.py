"""
Insight deduplication tables.

Raw insights are extracted statements (evidence); unique insights are the
canonical ideas they get merged into. Merge clusters are reviewable proposals
produced by the Cluster Builder, and cluster jobs record the progress of
"cluster everything" runs.

Column types are kept portable so the same models run on PostgreSQL and SQLite.
"""

from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

CLUSTER_PENDING = "pending"
CLUSTER_APPROVED = "approved"
CLUSTER_REJECTED = "rejected"
CLUSTER_STATUSES = (CLUSTER_PENDING, CLUSTER_APPROVED, CLUSTER_REJECTED)

JOB_PROCESSING = "processing"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)


def utc_now() -> datetime:
    return datetime.now(UTC)


# ========================================
# INSIGHTS
# ========================================


class RawInsight(Base):
    """An atomic, source-attributed claim extracted from a document."""

    __tablename__ = "insights"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    statement: Mapped[str] = mapped_column(Text, nullable=False)
    context_note: Mapped[str | None] = mapped_column(Text)
    source_id: Mapped[UUID | None] = mapped_column(Uuid, index=True)
    run_id: Mapped[UUID | None] = mapped_column(Uuid, index=True)

    # Embedding stored as float32 bytes
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    embedding_model: Mapped[str | None] = mapped_column(Text)
    embedding_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Set once merged (resolved)
    unique_insight_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("unique_insights.id", ondelete="SET NULL", use_alter=True), index=True
    )
    cluster_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    # Relationships
    unique_insight: Mapped[UniqueInsight | None] = relationship(
        back_populates="evidence", foreign_keys=[unique_insight_id]
    )
    memberships: Mapped[list[MergeClusterMember]] = relationship(back_populates="raw_insight")

    @property
    def is_resolved(self) -> bool:
        return self.unique_insight_id is not None

    def __repr__(self) -> str:
        return f"<RawInsight {self.id} resolved={self.is_resolved}>"


class UniqueInsight(Base):
    """A deduplicated, canonical idea backed by one or more raw insights."""

    __tablename__ = "unique_insights"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    canonical_statement: Mapped[str] = mapped_column(Text, nullable=False)
    canonical_raw_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("insights.id", ondelete="SET NULL")
    )
    canonical_source_id: Mapped[UUID | None] = mapped_column(Uuid)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    # Relationships
    canonical_raw: Mapped[RawInsight | None] = relationship(
        foreign_keys=[canonical_raw_id], post_update=True
    )
    evidence: Mapped[list[RawInsight]] = relationship(
        back_populates="unique_insight", foreign_keys="RawInsight.unique_insight_id"
    )


# ========================================
# MERGE CLUSTERS
# ========================================


class MergeCluster(Base):
    """A reviewable proposal grouping candidate duplicate raw insights."""

    __tablename__ = "merge_clusters"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')", name="ck_merge_clusters_status"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    status: Mapped[str] = mapped_column(Text, default=CLUSTER_PENDING, nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(Text, default="system", nullable=False)

    # Non-null only for "merge into existing" proposals
    suggested_unique_insight_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("unique_insights.id", ondelete="CASCADE"), index=True
    )
    # Builder's pick for the canonical wording of a new group
    suggested_canonical_raw_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("insights.id", ondelete="SET NULL")
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    members: Mapped[list[MergeClusterMember]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        order_by="MergeClusterMember.similarity.desc()",
    )
    suggested_unique_insight: Mapped[UniqueInsight | None] = relationship(
        foreign_keys=[suggested_unique_insight_id]
    )

    @property
    def is_pending(self) -> bool:
        return self.status == CLUSTER_PENDING

    @property
    def is_merge_into_existing(self) -> bool:
        return self.suggested_unique_insight_id is not None


class MergeClusterMember(Base):
    """One raw insight's participation in one merge cluster."""

    __tablename__ = "merge_cluster_members"
    __table_args__ = (
        CheckConstraint(
            "similarity >= -1.0 AND similarity <= 1.0", name="ck_merge_cluster_members_similarity"
        ),
    )

    cluster_id: Mapped[UUID] = mapped_column(
        ForeignKey("merge_clusters.id", ondelete="CASCADE"), primary_key=True
    )
    raw_insight_id: Mapped[UUID] = mapped_column(
        ForeignKey("insights.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    is_selected: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    cluster: Mapped[MergeCluster] = relationship(back_populates="members")
    raw_insight: Mapped[RawInsight] = relationship(back_populates="memberships")


# ========================================
# CLUSTER JOBS
# ========================================


class ClusterJob(Base):
    """Progress record for one "cluster everything" run."""

    __tablename__ = "cluster_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')", name="ck_cluster_jobs_status"
        ),
        # At most one processing job at any time
        Index(
            "uq_cluster_jobs_single_processing",
            "status",
            unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    status: Mapped[str] = mapped_column(Text, default=JOB_PROCESSING, nullable=False)

    # Timing
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Embedding phase
    embeddings_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embeddings_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    embeddings_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Clustering phase
    clustering_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clustering_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clusters_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    members_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    merge_into_unique_suggestions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    clustering_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    batches_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Run options (batch size, max batches, skip embeddings)
    options: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)

    COUNTER_COLUMNS = (
        "embeddings_total",
        "embeddings_processed",
        "embeddings_errors",
        "clustering_total",
        "clustering_processed",
        "clusters_created",
        "members_added",
        "merge_into_unique_suggestions",
        "clustering_errors",
        "batches_processed",
    )

    def to_dict(self) -> dict:
        """Serialize the job for status endpoints."""
        return {
            "id": str(self.id),
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "embeddings": {
                "total": self.embeddings_total,
                "processed": self.embeddings_processed,
                "errors": self.embeddings_errors,
            },
            "clustering": {
                "total": self.clustering_total,
                "processed": self.clustering_processed,
                "clusters_created": self.clusters_created,
                "members_added": self.members_added,
                "merge_into_unique_suggestions": self.merge_into_unique_suggestions,
                "errors": self.clustering_errors,
                "batches_processed": self.batches_processed,
            },
            "options": self.options or {},
            "error_message": self.error_message,
        }
