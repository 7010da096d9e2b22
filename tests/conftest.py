"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests:
an in-memory SQLite database with every table created, plus helpers
to seed notes, embeddings, history and cluster assignments.
"""
import sys
from contextlib import contextmanager
from pathlib import Path

import numpy as np
import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import Settings  # noqa: E402
from src.db.models import Base  # noqa: E402
from src.semantic.vector_math import float32_to_bytes  # noqa: E402

DIM = 8


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
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
def settings():
    """Default settings, isolated from any .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across connections."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db_session(engine):
    """Session bound to the in-memory database."""
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def session_factory(engine):
    """A session_scope() replacement bound to the in-memory database."""
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)

    @contextmanager
    def _scope():
        session = Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _scope


# ========================================
# Seeding helpers
# ========================================


def unit_vector(*components, dim=DIM):
    """Normalized vector from leading components (rest zero)."""
    vec = np.zeros(dim, dtype=np.float64)
    vec[: len(components)] = components
    norm = np.linalg.norm(vec)
    return vec / norm if norm > 0 else vec


def blend(a, b, cos):
    """Unit vector with the given cosine to unit vector ``a``, rotated toward ``b``."""
    ortho = b - np.dot(a, b) * a
    ortho = ortho / np.linalg.norm(ortho)
    return cos * a + np.sqrt(1 - cos**2) * ortho


def add_note(session, note_id, title="", content="", cluster_id=None, category=None, created_at=0, embedding=None):
    session.execute(
        text("""
            INSERT INTO notes (id, title, content, cluster_id, category, created_at, updated_at)
            VALUES (:id, :title, :content, :cluster_id, :category, :created_at, :created_at)
        """),
        {
            "id": note_id,
            "title": title,
            "content": content,
            "cluster_id": cluster_id,
            "category": category,
            "created_at": created_at,
        },
    )
    if embedding is not None:
        add_embedding(session, note_id, embedding)


def add_embedding(session, note_id, vector):
    session.execute(
        text("""
            INSERT INTO note_embeddings (note_id, embedding, model_name, dimensions, created_at)
            VALUES (:note_id, :embedding, 'all-MiniLM-L6-v2', :dimensions, 0)
        """),
        {"note_id": note_id, "embedding": float32_to_bytes(vector), "dimensions": len(vector)},
    )


def add_history(
    session,
    history_id,
    note_id,
    created_at,
    semantic_diff=None,
    prev_cluster_id=None,
    new_cluster_id=None,
    content="",
    old_embedding=None,
    drift_score=None,
    change_type=None,
):
    session.execute(
        text("""
            INSERT INTO note_history (
                id, note_id, content, diff, semantic_diff, old_embedding,
                prev_cluster_id, new_cluster_id, change_type, drift_score, created_at
            ) VALUES (
                :id, :note_id, :content, NULL, :semantic_diff, :old_embedding,
                :prev_cluster_id, :new_cluster_id, :change_type, :drift_score, :created_at
            )
        """),
        {
            "id": history_id,
            "note_id": note_id,
            "content": content,
            "semantic_diff": None if semantic_diff is None else str(semantic_diff),
            "old_embedding": None if old_embedding is None else float32_to_bytes(old_embedding),
            "prev_cluster_id": prev_cluster_id,
            "new_cluster_id": new_cluster_id,
            "change_type": change_type,
            "drift_score": drift_score,
            "created_at": created_at,
        },
    )


def add_cluster_assignment(session, note_id, cluster_id, assigned_at):
    session.execute(
        text("""
            INSERT INTO cluster_history (note_id, cluster_id, assigned_at)
            VALUES (:note_id, :cluster_id, :assigned_at)
        """),
        {"note_id": note_id, "cluster_id": cluster_id, "assigned_at": assigned_at},
    )
