"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import timedelta
from pathlib import Path

import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from insight_dedup.db.models import Base, RawInsight, UniqueInsight  # noqa: E402
from tests.helpers import BASE_TIME, DIMENSION, FakeEmbeddingGateway  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (FastAPI + SQLite)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def test_settings():
    """Settings for tests: in-memory store, 4-dim vectors, no delays."""
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        embedding_provider="openai",
        openai_api_key="test-key",
        embedding_model="fake-embed",
        embedding_dimension=DIMENSION,
        embedding_batch_size=8,
        embedding_request_delay_seconds=0,
        cluster_existing_threshold=0.90,
        cluster_new_threshold=0.85,
        cluster_batch_size=500,
        cluster_max_limit=1000,
        cluster_max_batches=10,
        cluster_batch_delay_seconds=0,
        cluster_job_stale_minutes=60,
        cluster_progress_every=10,
    )


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_gateway():
    return FakeEmbeddingGateway()


@pytest.fixture
def make_insight(db_session):
    """
    Factory for raw insights with deterministic creation order.

    Each call is one second after the previous one unless ``created_at`` is given.
    """
    counter = {"n": 0}

    def _make(
        statement: str = None,
        vector=None,
        created_at=None,
        context_note=None,
        source_id=None,
        run_id=None,
        unique_insight_id=None,
        deleted: bool = False,
    ) -> RawInsight:
        counter["n"] += 1
        insight = RawInsight(
            statement=statement or f"Insight {counter['n']}",
            context_note=context_note,
            source_id=source_id,
            run_id=run_id,
            embedding=np.asarray(vector, dtype=np.float32).tobytes() if vector is not None else None,
            embedding_model="fake-embed" if vector is not None else None,
            unique_insight_id=unique_insight_id,
            deleted_at=BASE_TIME if deleted else None,
            created_at=created_at or BASE_TIME + timedelta(seconds=counter["n"]),
        )
        db_session.add(insight)
        db_session.commit()
        return insight

    return _make


@pytest.fixture
def make_unique(db_session, make_insight):
    """Factory for a unique insight whose canonical raw insight has ``vector``."""

    def _make(vector, statement: str = "Canonical idea", unique_id=None) -> UniqueInsight:
        raw = make_insight(statement, vector=vector)
        unique = UniqueInsight(
            canonical_statement=statement,
            canonical_raw_id=raw.id,
            canonical_source_id=raw.source_id,
        )
        if unique_id is not None:
            unique.id = unique_id
        db_session.add(unique)
        db_session.flush()
        raw.unique_insight_id = unique.id
        db_session.commit()
        return unique

    return _make
