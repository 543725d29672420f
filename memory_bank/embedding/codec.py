"""
Binary quantization and similarity helpers for entry embeddings.

A 384-dimensional float vector is reduced to one sign bit per component,
packed little-endian within each byte (component ``i`` lives in byte
``i // 8`` at bit ``i % 8``), giving a 48-byte blob.  Dequantizing expands
each bit back to ±1.0, so only the sign pattern survives.
"""

from __future__ import annotations

from typing import Sequence, Union

import numpy as np

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMBED_DIMENSIONS = 384
QUANTIZED_BYTES = EMBED_DIMENSIONS // 8  # 48

VectorLike = Union[np.ndarray, Sequence[float]]


def _as_vector(vec: VectorLike) -> np.ndarray:
    return np.asarray(vec, dtype=np.float32).reshape(-1)


def quantize(embedding: VectorLike) -> bytes:
    """
    Pack *embedding* into one sign bit per component.

    Parameters
    ----------
    embedding:
        A 384-dimensional float vector.

    Returns
    -------
    bytes
        48 bytes; bit set where the component is strictly positive.

    Raises
    ------
    ValueError
        If the vector does not have 384 components.
    """
    vec = _as_vector(embedding)
    if vec.shape[0] != EMBED_DIMENSIONS:
        raise ValueError(
            f"Expected {EMBED_DIMENSIONS}-dimensional embedding, got {vec.shape[0]}"
        )
    bits = (vec > 0).astype(np.uint8)
    return np.packbits(bits, bitorder="little").tobytes()


def dequantize(quantized: bytes) -> np.ndarray:
    """
    Expand a 48-byte quantized blob back to a ±1.0 float vector.

    The result preserves only the sign of each original component.

    Raises
    ------
    ValueError
        If *quantized* is not exactly 48 bytes.
    """
    if quantized is None or len(quantized) != QUANTIZED_BYTES:
        size = 0 if quantized is None else len(quantized)
        raise ValueError(f"Expected {QUANTIZED_BYTES}-byte quantized embedding, got {size}")
    bits = np.unpackbits(np.frombuffer(bytes(quantized), dtype=np.uint8), bitorder="little")
    return np.where(bits[:EMBED_DIMENSIONS] == 1, 1.0, -1.0).astype(np.float32)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """
    Normalised dot product of *a* and *b*, in ``[-1, 1]``.

    Returns 0.0 (never NaN) when either vector has zero magnitude.

    Raises
    ------
    ValueError
        If the vectors have different lengths.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        raise ValueError("Embedding dimensions must match")
    norm_a = float(np.linalg.norm(va))
    norm_b = float(np.linalg.norm(vb))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / (norm_a * norm_b)
    return max(-1.0, min(1.0, sim))


def normalized_similarity(query_vector: VectorLike, quantized: bytes) -> float:
    """Map the similarity between a query vector and a stored blob into ``[0, 1]``."""
    return (cosine_similarity(query_vector, dequantize(quantized)) + 1.0) / 2.0
