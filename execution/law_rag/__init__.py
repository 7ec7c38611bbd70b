"""
Law RAG - Statute Retrieval with Citation Guard

This module provides:
- Versioned ingestion of federal law XML (gii-norm) into PostgreSQL + pgvector
- Bounded chunking of statute paragraphs
- Two-stage retrieval: law catalog selection, then chunk ranking
- A citation guard that keeps generated answers to norms found in the evidence
"""

from .chunker import LawChunker
from .embeddings import get_embedding_service
from .vector_store import VectorStore
from .versions import VersionStore
from .indexer import LawIndexer
from .ingest import LawIngestor, IngestionError
from .catalog import LawCatalogBuilder
from .retriever import LawRetriever
from .citation_guard import CitationGuard
from .answer import GroundedAnswerer

__all__ = [
    "LawChunker",
    "get_embedding_service",
    "VectorStore",
    "VersionStore",
    "LawIndexer",
    "LawIngestor",
    "IngestionError",
    "LawCatalogBuilder",
    "LawRetriever",
    "CitationGuard",
    "GroundedAnswerer",
]

__version__ = "0.1.0"
