"""
Semantic analysis module for embedding geometry and edit classification.

Provides:
- Vector math over pre-normalized 384-dim embeddings (cosine = dot product)
- Little-endian float32 storage codec
- Semantic change classification of note edits

Embeddings themselves are produced outside this package (all-MiniLM-L6-v2).
"""

from src.semantic.semantic_change import (
    EmbeddingDimensionError,
    SemanticChangeAnalyzer,
    SemanticChangeDetail,
    deserialize_change_detail,
    serialize_change_detail,
)
from src.semantic.vector_math import (
    bytes_to_float32,
    cosine_similarity,
    float32_to_bytes,
    l2_norm,
    mean_vector,
    normalize_vector,
    round4,
)

__all__ = [
    # Vector math
    "cosine_similarity",
    "l2_norm",
    "mean_vector",
    "normalize_vector",
    "round4",
    "float32_to_bytes",
    "bytes_to_float32",
    # Change classification
    "SemanticChangeAnalyzer",
    "SemanticChangeDetail",
    "EmbeddingDimensionError",
    "serialize_change_detail",
    "deserialize_change_detail",
]
