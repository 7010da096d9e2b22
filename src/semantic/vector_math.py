"""
Vector math and the float32 storage codec.

Embeddings are produced externally and are already L2-normalized, so cosine
similarity is the plain dot product. All computation happens on 1-D float64
numpy arrays; float32 is used only at the storage boundary.

Neutral defaults instead of exceptions: mismatched or empty inputs give 0.0
(similarity) or an empty vector (mean).
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence

import numpy as np

# Little-endian IEEE-754 float32, 4 bytes per dimension
STORAGE_DTYPE = np.dtype("<f4")

Vector = np.ndarray


def as_vector(values: Iterable[float] | np.ndarray | None) -> Vector:
    """Coerce a sequence (or None) into a 1-D float64 array."""
    if values is None:
        return np.zeros(0, dtype=np.float64)
    return np.asarray(values, dtype=np.float64).reshape(-1)


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """
    Cosine similarity of two pre-normalized vectors.

    Returns 0.0 when either vector is empty or the dimensions differ.
    No renormalization is performed.
    """
    va, vb = as_vector(a), as_vector(b)
    if va.size == 0 or vb.size == 0 or va.size != vb.size:
        return 0.0
    return float(np.dot(va, vb))


def l2_norm(v: Sequence[float] | np.ndarray) -> float:
    """Euclidean norm (0.0 for the empty vector)."""
    return float(np.linalg.norm(as_vector(v)))


def mean_vector(vectors: Sequence[Sequence[float] | np.ndarray]) -> Vector:
    """Per-dimension mean. Empty input or mixed dimensions give an empty vector."""
    if len(vectors) == 0:
        return np.zeros(0, dtype=np.float64)
    arrays = [as_vector(v) for v in vectors]
    dim = arrays[0].size
    if any(arr.size != dim for arr in arrays):
        return np.zeros(0, dtype=np.float64)
    return np.mean(np.vstack(arrays), axis=0)


def normalize_vector(v: Sequence[float] | np.ndarray) -> Vector:
    """Divide by the L2 norm; a zero vector is returned unchanged."""
    arr = as_vector(v)
    norm = np.linalg.norm(arr)
    if norm == 0:
        return arr.copy()
    return arr / norm


def round4(x: float) -> float:
    """Round to 4 decimals for storage-stable comparisons."""
    return round(float(x), 4)


def round3(x: float) -> float:
    return round(float(x), 3)


def float32_to_bytes(v: Sequence[float] | np.ndarray) -> bytes:
    """Serialize a vector for BLOB/BYTEA storage (4 x dims bytes)."""
    return as_vector(v).astype(STORAGE_DTYPE).tobytes()


def bytes_to_float32(data: bytes | memoryview | None) -> Vector:
    """
    Deserialize a float32 storage buffer into a float64 working vector.

    Raises:
        ValueError: If the buffer length is not a multiple of 4.
    """
    if data is None:
        return np.zeros(0, dtype=np.float64)
    raw = bytes(data)
    if len(raw) % STORAGE_DTYPE.itemsize != 0:
        raise ValueError(f"Invalid float32 buffer length: {len(raw)} bytes")
    return np.frombuffer(raw, dtype=STORAGE_DTYPE).astype(np.float64)
