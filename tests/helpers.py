"""Vector helpers and a fake embedding gateway shared by the test suites."""
import math
from datetime import UTC, datetime

import numpy as np

from insight_dedup.exceptions import EmbeddingGatewayError
from insight_dedup.semantic.embedding_service import EmbeddingGateway

DIMENSION = 4
BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def unit(angle_degrees: float, plane: int = 0) -> np.ndarray:
    """Unit vector at ``angle_degrees`` in the (2*plane, 2*plane+1) plane."""
    vector = np.zeros(DIMENSION, dtype=np.float32)
    radians = math.radians(angle_degrees)
    vector[2 * plane] = math.cos(radians)
    vector[2 * plane + 1] = math.sin(radians)
    return vector


def angle_for(similarity: float) -> float:
    """Angle whose cosine is ``similarity``."""
    return math.degrees(math.acos(similarity))


class FakeEmbeddingGateway(EmbeddingGateway):
    """Deterministic gateway: known texts map to fixed vectors, others to a seeded one."""

    def __init__(self, vectors=None, fail_on=(), dimension: int = DIMENSION):
        self.model_name = "fake-embed"
        self.expected_dimension = dimension
        self.vectors = dict(vectors or {})
        self.fail_on = set(fail_on)
        self.calls = []

    def _embed_texts(self, texts):
        self.calls.extend(texts)
        out = []
        for text in texts:
            if text in self.fail_on:
                raise EmbeddingGatewayError(f"rate limited: {text}")
            if text in self.vectors:
                out.append(np.asarray(self.vectors[text], dtype=np.float32))
            else:
                seed = sum(text.encode("utf-8")) + len(text)
                rng = np.random.default_rng(seed)
                out.append(rng.normal(size=self.expected_dimension).astype(np.float32))
        return out
