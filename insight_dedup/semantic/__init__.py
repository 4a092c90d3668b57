"""
Semantic deduplication of raw insights.

Provides:
- Embedding generation through a pluggable gateway (OpenAI API or local
  sentence-transformers)
- Cosine similarity search between insights and canonical unique insights
- Greedy batch clustering into reviewable merge proposals
- The cluster-all job (embedding backfill + batched clustering)
- Review actions that commit or reject proposals
"""

from insight_dedup.semantic.batch_embedding import BatchEmbeddingProcessor, EmbeddingBackfillResult
from insight_dedup.semantic.cluster_store import ClusterStore
from insight_dedup.semantic.clustering_service import ClusterBatchResult, ClusterBuilder
from insight_dedup.semantic.embedding_service import (
    EmbeddingGateway,
    EmbeddingResult,
    OpenAIEmbeddingGateway,
    SentenceTransformerGateway,
    get_embedding_gateway,
    insight_text,
)
from insight_dedup.semantic.job_orchestrator import ClusterAllOrchestrator, ClusterAllResult
from insight_dedup.semantic.progress import ProgressEvent, QueueProgressChannel
from insight_dedup.semantic.review_service import ReviewService
from insight_dedup.semantic.similarity_service import (
    SemanticSimilarityService,
    SimilarityError,
    SimilarityMatch,
    cosine_similarity,
)

__all__ = [
    # Embedding
    "EmbeddingGateway",
    "EmbeddingResult",
    "OpenAIEmbeddingGateway",
    "SentenceTransformerGateway",
    "get_embedding_gateway",
    "insight_text",
    "BatchEmbeddingProcessor",
    "EmbeddingBackfillResult",
    # Similarity
    "SemanticSimilarityService",
    "SimilarityMatch",
    "SimilarityError",
    "cosine_similarity",
    # Clustering
    "ClusterStore",
    "ClusterBuilder",
    "ClusterBatchResult",
    "ClusterAllOrchestrator",
    "ClusterAllResult",
    "ProgressEvent",
    "QueueProgressChannel",
    # Review
    "ReviewService",
]
