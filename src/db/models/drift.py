"""
Semantic Drift Models.

SQLAlchemy models for the note corpus the engine reads and the derived
tables it owns:
- Notes, embeddings, edit history and cluster assignments (written by the
  edit path and the external clustering job; read here)
- Drift events, daily cluster dynamics, concept influence edges and cached
  cluster identities (cleared and repopulated by the rebuild jobs)

Embeddings and centroids are stored as little-endian float32 buffers.
Timestamps are Unix epoch seconds.
"""

from __future__ import annotations

from sqlalchemy import (
    Float,
    Index,
    Integer,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

# ========================================
# Source tables (external writers)
# ========================================


class Note(Base):
    """A note in the corpus. cluster_id is the latest external assignment."""

    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    cluster_id: Mapped[int | None] = mapped_column(Integer, index=True)
    category: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<Note id={self.id} cluster={self.cluster_id}>"


class NoteEmbedding(Base):
    """Current embedding of a note (384-dim, L2-normalized)."""

    __tablename__ = "note_embeddings"

    note_id: Mapped[str] = mapped_column(Text, primary_key=True)
    embedding: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    model_name: Mapped[str] = mapped_column(Text, default="all-MiniLM-L6-v2")
    dimensions: Mapped[int] = mapped_column(Integer, default=384)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class NoteHistory(Base):
    """
    Append-only snapshot of a note revision.

    semantic_diff is stored as text because upstream writers are not
    guaranteed to produce a number; rows that do not parse are skipped.
    drift_score / change_type are filled once and never recomputed.
    """

    __tablename__ = "note_history"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    note_id: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    diff: Mapped[str | None] = mapped_column(Text)
    semantic_diff: Mapped[str | None] = mapped_column(Text)
    old_embedding: Mapped[bytes | None] = mapped_column(LargeBinary)
    prev_cluster_id: Mapped[int | None] = mapped_column(Integer)
    new_cluster_id: Mapped[int | None] = mapped_column(Integer)
    change_type: Mapped[str | None] = mapped_column(Text)
    change_detail: Mapped[str | None] = mapped_column(Text)
    drift_score: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("idx_note_history_note_id", "note_id"),
        Index("idx_note_history_created_at", "created_at"),
    )


class Cluster(Base):
    """Cluster as maintained by the external k-means job."""

    __tablename__ = "clusters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    centroid: Mapped[bytes | None] = mapped_column(LargeBinary)
    size: Mapped[int] = mapped_column(Integer, default=0)
    sample_note_id: Mapped[str | None] = mapped_column(Text)
    updated_at: Mapped[int] = mapped_column(Integer, default=0)


class ClusterHistory(Base):
    """Ordered cluster assignments of a note."""

    __tablename__ = "cluster_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    note_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    cluster_id: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_at: Mapped[int] = mapped_column(Integer, nullable=False)


# ========================================
# Derived tables (owned by the engine)
# ========================================


class DriftEvent(Base):
    """An inflection point detected in the edit history."""

    __tablename__ = "drift_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    detected_at: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[str] = mapped_column(Text, nullable=False)  # low | mid | high
    type: Mapped[str] = mapped_column(Text, nullable=False)  # cluster_bias | drift_drop | over_focus
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_cluster: Mapped[int | None] = mapped_column(Integer)
    resolved_at: Mapped[int | None] = mapped_column(Integer)

    __table_args__ = (Index("idx_drift_events_detected_at", "detected_at"),)

    def __repr__(self) -> str:
        return f"<DriftEvent id={self.id} type={self.type} severity={self.severity}>"


class ClusterDynamics(Base):
    """Daily per-cluster geometry snapshot."""

    __tablename__ = "cluster_dynamics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[str] = mapped_column(Text, nullable=False)  # YYYY-MM-DD
    cluster_id: Mapped[int] = mapped_column(Integer, nullable=False)
    centroid: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    cohesion: Mapped[float] = mapped_column(Float, nullable=False)
    note_count: Mapped[int] = mapped_column(Integer, nullable=False)
    interactions: Mapped[str | None] = mapped_column(Text)  # JSON {cluster_id: cosine}
    stability_score: Mapped[float | None] = mapped_column(Float)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("date", "cluster_id", name="uq_cluster_dynamics_date_cluster"),
        Index("idx_cluster_dynamics_cluster", "cluster_id"),
    )


class NoteInfluenceEdge(Base):
    """Directed influence A -> B: A's content direction resembles B's drift."""

    __tablename__ = "note_influence_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_note_id: Mapped[str] = mapped_column(Text, nullable=False)
    target_note_id: Mapped[str] = mapped_column(Text, nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    cosine_sim: Mapped[float] = mapped_column(Float, nullable=False)
    drift_score: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("source_note_id", "target_note_id", name="uq_influence_source_target"),
        Index("idx_influence_target", "target_note_id"),
    )


class ClusterIdentityCache(Base):
    """Cached cluster identity view, rebuilt by the identity service."""

    __tablename__ = "cluster_identities"

    cluster_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    keywords: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    representatives: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    drift_summary: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    influence_summary: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    cohesion: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    note_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
