# Pytest Configuration and Shared Fixtures
# Common test fixtures and configuration for the test suite

import os
import sys

# Set test database URL BEFORE importing any app modules
# This ensures db.py never points at a developer database during tests
os.environ["DATABASE_URL"] = "sqlite:///./test.db"

# Add the project root to the Python path for test imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import hashlib
from unittest.mock import MagicMock, Mock

import pytest

from rag.schemas import PaperMetadata, PaperRecord, RetrievedChunk


def fake_embedding(text: str, dim: int = 8) -> list[float]:
    """Deterministic pseudo-embedding derived from an md5 of the text."""
    digest = hashlib.md5(text.strip().lower().encode()).digest()
    return [(b - 128) / 128.0 for b in digest[:dim]]


# ============================================
# Database fixtures
# ============================================

@pytest.fixture
def mock_db_session():
    """Create a mock database session for unit tests."""
    mock = MagicMock()
    mock.query.return_value.filter.return_value.first.return_value = None
    mock.query.return_value.filter.return_value.all.return_value = []
    mock.add = MagicMock()
    mock.commit = MagicMock()
    mock.rollback = MagicMock()
    return mock


@pytest.fixture
def db_engine():
    """In-memory SQLite engine shared by every session of one test."""
    from sqlalchemy import create_engine
    from sqlalchemy.pool import StaticPool

    from models.database import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from sqlalchemy.orm import sessionmaker

    return sessionmaker(bind=db_engine, autoflush=False)


@pytest.fixture
def in_memory_db(session_factory):
    """Create an in-memory SQLite session for integration tests."""
    session = session_factory()
    yield session
    session.close()


# ============================================
# Service fixtures
# ============================================

@pytest.fixture
def mock_embedding_service():
    """
    Embedding service returning deterministic vectors.

    Identical texts always embed identically, so cosine similarity of a
    text with itself is 1.0.
    """
    mock = Mock()
    mock.embed = Mock(side_effect=fake_embedding)
    mock.embed_texts = Mock(side_effect=lambda texts: [fake_embedding(t) for t in texts])
    return mock


@pytest.fixture
def mock_backend():
    """Search backend mock with empty results by default."""
    mock = Mock()
    mock.hybrid_search = Mock(return_value=[])
    mock.vector_search = Mock(return_value=[])
    mock.keyword_search = Mock(return_value=[])
    mock.match_claims = Mock(return_value=[])
    return mock


@pytest.fixture
def unavailable_reranker():
    mock = Mock()
    mock.is_available = False
    return mock


# ============================================
# Sample data
# ============================================

@pytest.fixture
def sample_chunks():
    """Provide chunks from three papers, best first."""
    return [
        RetrievedChunk(
            id="c1", paper_id="p1", chunk_index=0, score=0.92,
            content="Transformers rely on self-attention to model long-range dependencies in text.",
        ),
        RetrievedChunk(
            id="c2", paper_id="p1", chunk_index=1, score=0.81,
            content="Multi-head attention lets the model attend to several representation subspaces.",
        ),
        RetrievedChunk(
            id="c3", paper_id="p2", chunk_index=0, score=0.74,
            content="Recurrent networks process tokens sequentially and struggle with long contexts.",
        ),
        RetrievedChunk(
            id="c4", paper_id="p3", chunk_index=0, score=0.55,
            content="Convolutional sequence models trade global context for parallel computation.",
        ),
    ]


@pytest.fixture
def sample_papers():
    """Provide metadata for the sample chunks' papers."""
    return {
        "p1": PaperMetadata(id="p1", title="Attention Is All You Need",
                            authors=["Ashish Vaswani", "Noam Shazeer"], year=2017),
        "p2": PaperMetadata(id="p2", title="Long Short-Term Memory",
                            authors=["Sepp Hochreiter", "Jürgen Schmidhuber"], year=1997),
        "p3": PaperMetadata(id="p3", title="Convolutional Sequence to Sequence Learning",
                            authors=["Jonas Gehring"], year=2017),
    }


@pytest.fixture
def sample_paper_records():
    """Provide library paper records with abstracts long enough for fallbacks."""
    abstract = (
        "This paper studies how attention mechanisms improve sequence modelling across "
        "translation, summarization and question answering benchmarks."
    )
    return [
        PaperRecord(id="p1", title="Attention Is All You Need", abstract=abstract,
                    authors=["Ashish Vaswani"], year=2017),
        PaperRecord(id="p2", title="Long Short-Term Memory", abstract=abstract,
                    authors=["Sepp Hochreiter"], year=1997),
        PaperRecord(id="p3", title="Short Note", abstract="Too short.",
                    authors=["Jonas Gehring"], year=2017),
    ]


# Markers for different test categories
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
