"""
Error taxonomy for the deduplication pipeline.

- EmbeddingGatewayError: the external embedding service failed for one item
- ConfigurationError: the pipeline cannot start (e.g. no backing store)
- JobAlreadyRunningError: another cluster-all job holds the processing slot
- Review errors: NotFoundError, MergeConflictError, InvalidTransitionError
"""

from __future__ import annotations


class InsightDedupError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(InsightDedupError):
    """Required configuration is missing or invalid."""


class EmbeddingGatewayError(InsightDedupError):
    """The embedding service failed, rate-limited, or returned a bad vector."""


class NotFoundError(InsightDedupError):
    """A referenced insight, cluster or job does not exist."""


class MergeConflictError(InsightDedupError):
    """A merge would double-link a raw insight or touch a resolved cluster."""


class InvalidTransitionError(InsightDedupError):
    """A cluster or job status change is not allowed from its current state."""


class JobAlreadyRunningError(InsightDedupError):
    """A cluster-all job is already processing."""

    def __init__(self, job_id: str | None = None):
        self.job_id = job_id
        message = "A cluster-all job is already processing"
        if job_id:
            message = f"{message} (job {job_id})"
        super().__init__(message)
