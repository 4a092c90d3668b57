# SQLAlchemy models
from .base import Base
from .insights import (
    CLUSTER_APPROVED,
    CLUSTER_PENDING,
    CLUSTER_REJECTED,
    CLUSTER_STATUSES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_STATUSES,
    ClusterJob,
    MergeCluster,
    MergeClusterMember,
    RawInsight,
    UniqueInsight,
    utc_now,
)

__all__ = [
    # Base
    "Base",
    # Insights
    "RawInsight",
    "UniqueInsight",
    # Review proposals
    "MergeCluster",
    "MergeClusterMember",
    "CLUSTER_PENDING",
    "CLUSTER_APPROVED",
    "CLUSTER_REJECTED",
    "CLUSTER_STATUSES",
    # Jobs
    "ClusterJob",
    "JOB_PROCESSING",
    "JOB_COMPLETED",
    "JOB_FAILED",
    "JOB_STATUSES",
    "utc_now",
]
