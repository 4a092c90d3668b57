"""
Batch Embedding Processor - Backfill embeddings for raw insights.

Insights without an embedding are fetched fresh in small batches, embedded
one at a time through the Embedding Gateway and stored immediately, with a
short delay between requests to stay under provider rate limits.

A failing item is counted and skipped for the rest of the run; a failing
fetch stops the backfill but leaves everything already stored in place.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from insight_dedup.exceptions import EmbeddingGatewayError
from insight_dedup.semantic.cluster_store import ClusterStore
from insight_dedup.semantic.embedding_service import (
    EmbeddingGateway,
    get_embedding_gateway,
    insight_text,
)

MAX_ERROR_MESSAGES = 10


@dataclass
class EmbeddingBackfillResult:
    """Counters for one backfill run."""

    total: int = 0
    processed: int = 0
    errors: int = 0
    aborted: bool = False
    error_messages: list[str] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return self.processed + self.errors

    def record_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_ERROR_MESSAGES:
            self.error_messages.append(message)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "errors": self.errors,
            "aborted": self.aborted,
            "error_messages": self.error_messages,
        }


class BatchEmbeddingProcessor:
    """
    Generate embeddings for raw insights that lack one.

    Example:
        >>> processor = BatchEmbeddingProcessor(db_session)
        >>> result = processor.generate_missing()
        >>> print(f"Generated {result.processed} embeddings ({result.errors} errors)")
    """

    def __init__(
        self,
        db_session: Session,
        gateway: EmbeddingGateway | None = None,
        settings: Settings | None = None,
        store: ClusterStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the batch processor.

        Args:
            db_session: SQLAlchemy database session.
            gateway: Embedding backend (default from ``embedding_provider``).
            settings: Settings override.
            store: ClusterStore override.
            sleep: Delay function, replaceable in tests.
        """
        self.settings = settings or get_settings()
        self.store = store or ClusterStore(db_session)
        self._gateway = gateway
        self.sleep = sleep

    @property
    def gateway(self) -> EmbeddingGateway:
        if self._gateway is None:
            self._gateway = get_embedding_gateway(self.settings)
        return self._gateway

    def generate_missing(
        self,
        limit: int | None = None,
        on_progress: Callable[[EmbeddingBackfillResult], None] | None = None,
    ) -> EmbeddingBackfillResult:
        """
        Embed every insight missing an embedding at the start of the run.

        Args:
            limit: Cap on insights to attempt.
            on_progress: Called every ``cluster_progress_every`` items and after
                each fetched batch.

        Returns:
            EmbeddingBackfillResult where ``processed + errors`` never exceeds
            ``total``.
        """
        result = EmbeddingBackfillResult()
        notify = on_progress or (lambda _result: None)
        batch_size = self.settings.embedding_batch_size
        progress_every = max(1, self.settings.cluster_progress_every)
        delay = self.settings.embedding_request_delay_seconds

        try:
            total = self.store.count_missing_embeddings()
        except SQLAlchemyError as e:
            logger.exception(f"Could not count insights missing embeddings: {e}")
            self.store.db.rollback()
            result.aborted = True
            return result

        result.total = min(total, limit) if limit else total
        logger.info(f"Generating embeddings for {result.total} insights")
        notify(result)

        failed_ids = set()
        while result.attempted < result.total:
            try:
                batch = self.store.fetch_missing_embeddings(
                    limit=min(batch_size, result.total - result.attempted),
                    exclude_ids=failed_ids,
                )
            except SQLAlchemyError as e:
                logger.exception(f"Fetching insights missing embeddings failed: {e}")
                self.store.db.rollback()
                result.aborted = True
                break

            if not batch:
                break

            for insight in batch:
                insight_id = insight.id
                try:
                    embedding = self.gateway.embed(
                        insight_text(insight.statement, insight.context_note)
                    )
                    if self.store.save_embedding(insight_id, embedding):
                        result.processed += 1
                    else:
                        result.record_error(f"{insight_id}: insight disappeared")
                except (EmbeddingGatewayError, SQLAlchemyError) as e:
                    failed_ids.add(insight_id)
                    result.record_error(f"{insight_id}: {e}")
                    logger.warning(f"Embedding failed for insight {insight_id}: {e}")

                if result.attempted % progress_every == 0:
                    notify(result)
                if delay > 0 and result.attempted < result.total:
                    self.sleep(delay)

            notify(result)

        logger.info(
            f"Embedding backfill done: {result.processed}/{result.total} processed, "
            f"{result.errors} errors"
        )
        return result
