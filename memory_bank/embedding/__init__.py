from .codec import (
    EMBED_DIMENSIONS,
    QUANTIZED_BYTES,
    cosine_similarity,
    dequantize,
    normalized_similarity,
    quantize,
)
from .embedder import Embedder, backfill_embeddings, create_backend
from .worker import EmbeddingWorker

__all__ = [
    "EMBED_DIMENSIONS",
    "QUANTIZED_BYTES",
    "Embedder",
    "EmbeddingWorker",
    "backfill_embeddings",
    "cosine_similarity",
    "create_backend",
    "dequantize",
    "normalized_similarity",
    "quantize",
]
