"""
Chunk Indexer

Embeds law chunks in fixed-size batches, optionally on a small bounded
thread pool. The first failing batch aborts the whole call; no partial
result is returned.
"""

import logging
from dataclasses import dataclass, replace
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import numpy as np

from .chunker import LawChunk
from .vector_store import EmbeddingDimensionError

logger = logging.getLogger(__name__)


@dataclass
class IndexerConfig:
    """Configuration for batch embedding."""
    batch_size: int = 32
    max_workers: int = 1  # 1 = sequential


class LawIndexer:
    """Attaches embeddings to chunks."""

    def __init__(self, embedding_service, config: Optional[IndexerConfig] = None):
        self.embeddings = embedding_service
        self.config = config or IndexerConfig()
        if self.config.batch_size <= 0 or self.config.max_workers <= 0:
            raise ValueError("batch_size and max_workers must be positive")

    def _batches(self, chunks: list[LawChunk]) -> list[list[LawChunk]]:
        size = self.config.batch_size
        return [chunks[i:i + size] for i in range(0, len(chunks), size)]

    def _embed_batch(self, batch: list[LawChunk]) -> np.ndarray:
        vectors = self.embeddings.embed_documents([c.body_text for c in batch])
        try:
            matrix = np.asarray(vectors, dtype=np.float64)
        except ValueError as e:
            raise EmbeddingDimensionError(f"Ragged embedding batch: {e}") from e
        if matrix.ndim != 2 or matrix.shape[0] != len(batch):
            raise RuntimeError(
                f"Embedding batch of {len(batch)} chunks returned shape {matrix.shape}"
            )
        return matrix

    def embed_chunks(
        self,
        chunks: list[LawChunk],
        expected_dimensions: Optional[int] = None,
    ) -> list[LawChunk]:
        """
        Embed chunks, preserving order.

        Args:
            chunks: Chunks to embed
            expected_dimensions: Dimension of the existing embedding column, if any

        Returns:
            New LawChunk objects with embeddings attached

        Raises:
            EmbeddingDimensionError: vectors disagree with each other or with
                expected_dimensions
        """
        if not chunks:
            return []

        batches = self._batches(chunks)
        logger.info(
            f"Indexing {len(chunks)} chunks in {len(batches)} batches "
            f"(workers={self.config.max_workers})"
        )

        if self.config.max_workers == 1:
            matrices = [self._embed_batch(b) for b in batches]
        else:
            with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
                # map() re-raises the first batch error in submission order
                matrices = list(pool.map(self._embed_batch, batches))

        dims = {m.shape[1] for m in matrices}
        if len(dims) != 1:
            raise EmbeddingDimensionError(f"Mixed embedding dimensions in one run: {sorted(dims)}")
        dim = dims.pop()
        if expected_dimensions is not None and dim != expected_dimensions:
            raise EmbeddingDimensionError(
                f"Embeddings have {dim} dimensions, the store expects {expected_dimensions}"
            )

        vectors = np.vstack(matrices)
        return [
            replace(chunk, embedding=vector.tolist())
            for chunk, vector in zip(chunks, vectors)
        ]
