# SQLAlchemy models
from .base import Base
from .drift import (
    Cluster,
    ClusterDynamics,
    ClusterHistory,
    ClusterIdentityCache,
    DriftEvent,
    Note,
    NoteEmbedding,
    NoteHistory,
    NoteInfluenceEdge,
)

__all__ = [
    "Base",
    # Source tables
    "Note",
    "NoteEmbedding",
    "NoteHistory",
    "Cluster",
    "ClusterHistory",
    # Derived tables
    "DriftEvent",
    "ClusterDynamics",
    "NoteInfluenceEdge",
    "ClusterIdentityCache",
]
