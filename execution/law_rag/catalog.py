"""
Law Catalog Builder

Maintains one embedded row per law code of a version, used by the retriever
to pick the laws worth searching before ranking chunks.
"""

import logging
from typing import Optional

from .vector_store import VectorStore, CatalogEntry, EmbeddingDimensionError

logger = logging.getLogger(__name__)


def catalog_text(law_code: str, title: str = "", alt_title: str = "") -> str:
    """Text embedded for a law: 'law_code | title | alt_title'."""
    return " | ".join([law_code, title or "", alt_title or ""])


class LawCatalogBuilder:
    """Rebuilds the law catalog from the chunks of a version."""

    def __init__(self, store: VectorStore, embedding_service):
        self.store = store
        self.embeddings = embedding_service

    def rebuild(
        self,
        version_tag: Optional[str] = None,
        alt_titles: Optional[dict[str, str]] = None,
    ) -> int:
        """
        Replace the catalog with the laws of version_tag.

        Args:
            version_tag: Version to read; defaults to the version retrieval resolves
            alt_titles: Optional law_code -> alternative title (e.g. a translation)

        Returns:
            Number of catalog rows written
        """
        version_tag = version_tag or self.store.resolve_version_tag()
        if not version_tag:
            logger.warning("No version with chunks, catalog not rebuilt")
            return 0

        dim = self.store.ensure_catalog_table()
        laws = self.store.list_law_titles(version_tag)
        alt_titles = alt_titles or {}
        logger.info(f"Rebuilding law catalog for version {version_tag}: {len(laws)} laws, VECTOR({dim})")

        texts = [catalog_text(code, title, alt_titles.get(code, "")) for code, title in laws]
        vectors = self.embeddings.embed_documents(texts) if texts else []

        entries = []
        for (code, title), vector in zip(laws, vectors):
            if len(vector) != dim:
                raise EmbeddingDimensionError(
                    f"Catalog embedding for {code} has {len(vector)} dimensions, expected {dim}"
                )
            entries.append(CatalogEntry(
                law_code=code,
                title=title,
                alt_title=alt_titles.get(code, ""),
                embedding=vector,
            ))

        with self.store.transaction() as conn:
            written = self.store.replace_catalog_with_conn(conn, entries)

        logger.info(f"Law catalog rebuilt: {written} laws")
        return written
