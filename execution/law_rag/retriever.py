"""
Two-Stage Law Retriever

Retrieves statutory evidence for a user question:
1. Legal-basis detection: "which law/article governs this?" questions are
   enriched with domain anchor terms and topic hints
2. Law selection: the law catalog names the most relevant law codes
3. Chunk ranking: cosine search restricted to those law codes
4. Fallback: if the evidence contains no citable norm, a fixed high-recall
   anchor query is merged in

Every search runs against the active version (or the newest version with
chunks if the pointer is stale). Provider and store failures degrade to
partial or empty evidence; they are logged, never raised to the caller.
"""

import re
import json
import logging
from typing import Optional
from dataclasses import dataclass, field

from .vector_store import VectorStore, SearchResult
from .citation_guard import NormAllowlist, build_allowlist
from .language_patterns import (
    LEGAL_BASIS_PATTERNS,
    LEGAL_BASIS_HINTS,
    LEGAL_BASIS_ANCHORS,
    DOMAIN_ANCHOR_TERMS,
)

logger = logging.getLogger(__name__)

NO_LAW_CODES: list[str] = []

_LEGAL_BASIS_RE = [
    re.compile(pattern, re.IGNORECASE)
    for patterns in LEGAL_BASIS_PATTERNS.values()
    for pattern in patterns
]
_HINTS_RE = [(re.compile(pattern, re.IGNORECASE), hint) for pattern, hint in LEGAL_BASIS_HINTS]


@dataclass
class RetrievalConfig:
    """Configuration for retrieval pipeline."""
    plain_top_k: int = 6
    legal_basis_top_k: int = 10
    catalog_top_n: int = 3
    fallback_top_k: int = 14
    max_allowlist_norms: int = 80


@dataclass
class EvidenceSource:
    """A retrieved chunk numbered for the generator (S1, S2, ...)."""
    id: str
    law_code: str
    section_label: Optional[str]
    title: Optional[str]
    body_text: str
    origin: str
    score: float

    @classmethod
    def from_result(cls, source_id: str, result: SearchResult) -> "EvidenceSource":
        return cls(
            id=source_id,
            law_code=result.law_code,
            section_label=result.section_label,
            title=result.title,
            body_text=result.body_text,
            origin=result.origin,
            score=result.score,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "law": self.law_code,
            "section": self.section_label,
            "title": self.title,
            "text": self.body_text,
            "source": self.origin,
        }


@dataclass
class EvidenceBundle:
    """Evidence and allowlist handed to the generator and the citation guard."""
    query: str
    sources: list[EvidenceSource] = field(default_factory=list)
    allowlist: NormAllowlist = field(default_factory=NormAllowlist)
    legal_basis_mode: bool = False
    retrieval_query: str = ""
    top_k: int = 0
    law_codes: list[str] = field(default_factory=list)
    fallback_used: bool = False

    def to_generator_payload(self) -> dict:
        return {
            "legal_sources": [s.to_dict() for s in self.sources],
            "allowed_norms": self.allowlist.allowed_norms,
            "norm_sources": self.allowlist.norm_sources_text.splitlines(),
        }


def is_legal_basis_request(text: str) -> bool:
    """True if the question asks which law, article or paragraph applies."""
    if not text:
        return False
    return any(pattern.search(text) for pattern in _LEGAL_BASIS_RE)


def build_legal_basis_query(text: str) -> str:
    """Retrieval query for a legal-basis question: anchors, then the enriched question."""
    raw = (text or "").strip()
    query = raw
    for pattern, hint in _HINTS_RE:
        if pattern.search(raw):
            query += f" | {hint}"
    return " | ".join(LEGAL_BASIS_ANCHORS + [query])


def merge_unique(primary: list[SearchResult], secondary: list[SearchResult]) -> list[SearchResult]:
    """Concatenate result lists, keeping the first occurrence of each chunk identity."""
    merged = []
    seen = set()
    for result in list(primary) + list(secondary):
        key = result.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        merged.append(result)
    return merged


class LawRetriever:
    """
    Retrieves law chunks and assembles generator evidence.

    Usage:
        retriever = LawRetriever(store, embeddings)
        bundle = retriever.retrieve_evidence("Welche Norm regelt die Urlaubsabgeltung?")
    """

    def __init__(
        self,
        store: VectorStore,
        embedding_service,
        config: Optional[RetrievalConfig] = None,
    ):
        self.store = store
        self.embeddings = embedding_service
        self.config = config or RetrievalConfig()

    def _embed_query(self, text: str) -> Optional[list[float]]:
        try:
            embedding = self.embeddings.embed_query(text)
        except Exception as e:
            logger.warning(f"Query embedding failed, no evidence: {e}")
            return None
        return embedding or None

    def _resolve_version(self) -> Optional[str]:
        try:
            return self.store.resolve_version_tag()
        except Exception as e:
            logger.warning(f"Could not resolve law version: {e}")
            return None

    def select_top_law_codes(
        self,
        query_embedding: list[float],
        top_n: Optional[int] = None,
    ) -> list[str]:
        """Law codes nearest to the query in the catalog; NO_LAW_CODES on failure."""
        try:
            return self.store.search_catalog(query_embedding, top_n or self.config.catalog_top_n)
        except Exception as e:
            logger.warning(f"LAW_CATALOG_LOOKUP_FAILED {e}")
            return NO_LAW_CODES

    def retrieve(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        law_codes: Optional[list[str]] = None,
        query_embedding: Optional[list[float]] = None,
    ) -> list[SearchResult]:
        """
        Rank chunks of the effective version by cosine similarity.

        Args:
            query_text: Search text; blank text returns [] without any provider call
            top_k: Number of results (default: plain_top_k)
            law_codes: Optional restriction to these law codes
            query_embedding: Precomputed embedding of query_text

        Returns:
            SearchResults best first; [] when nothing can be retrieved
        """
        query = (query_text or "").strip()
        if not query:
            return []
        top_k = top_k or self.config.plain_top_k
        codes = sorted({c for c in (law_codes or []) if c})

        version_tag = self._resolve_version()
        if not version_tag:
            logger.warning("LAW_RETRIEVAL_EMPTY no law version with chunks")
            return []

        embedding = query_embedding or self._embed_query(query)
        if embedding is None:
            return []

        try:
            results = self.store.search(embedding, version_tag, top_k=top_k, law_codes=codes)
        except Exception as e:
            logger.warning(f"Law search failed, no evidence: {e}")
            return []

        if not results:
            record = {"query_sample": query[:200], "top_k": top_k, "law_codes": codes}
            logger.warning(f"LAW_RETRIEVAL_EMPTY {json.dumps(record, ensure_ascii=False)}")
        return results

    def retrieve_evidence(self, question: str, request_id: Optional[str] = None) -> EvidenceBundle:
        """
        Full retrieval for one user question.

        Legal-basis questions use two-stage retrieval and fall back to the
        anchor query when the evidence yields no citable norm.
        """
        question = (question or "").strip()
        bundle = EvidenceBundle(query=question)
        if not question:
            return bundle

        bundle.legal_basis_mode = is_legal_basis_request(question)
        if bundle.legal_basis_mode:
            bundle.retrieval_query = build_legal_basis_query(question)
            bundle.top_k = self.config.legal_basis_top_k
        else:
            bundle.retrieval_query = question
            bundle.top_k = self.config.plain_top_k

        embedding = None
        provider_down = False
        if bundle.legal_basis_mode:
            embedding = self._embed_query(bundle.retrieval_query)
            if embedding is None:
                provider_down = True
            else:
                bundle.law_codes = self.select_top_law_codes(embedding)

        results = []
        if not provider_down:
            results = self.retrieve(
                bundle.retrieval_query,
                top_k=bundle.top_k,
                law_codes=bundle.law_codes,
                query_embedding=embedding,
            )
        self._attach(bundle, results)

        # The anchor query needs the same provider; skip it when the question embedding failed
        if bundle.legal_basis_mode and not provider_down and len(bundle.allowlist) == 0:
            fallback = self.retrieve(" | ".join(DOMAIN_ANCHOR_TERMS), top_k=self.config.fallback_top_k)
            self._attach(bundle, merge_unique(results, fallback))
            bundle.fallback_used = True

        record = {
            "request_id": request_id,
            "legal_sources_count": len(bundle.sources),
            "allowed_norms_count": len(bundle.allowlist),
            "allowed_norms_preview": bundle.allowlist.allowed_norms[:10],
            "retrieval_mode": "legal_basis_enriched" if bundle.legal_basis_mode else "default",
            "retrieval_top_k": bundle.top_k,
            "law_catalog_top_law_codes": bundle.law_codes,
            "fallback_retrieval_used": bundle.fallback_used,
            "source_ids": [s.id for s in bundle.sources],
        }
        logger.info(f"CITATION_GUARD_ALLOWLIST {json.dumps(record, ensure_ascii=False)}")
        return bundle

    def _attach(self, bundle: EvidenceBundle, results: list[SearchResult]) -> None:
        bundle.sources = [
            EvidenceSource.from_result(f"S{i + 1}", r) for i, r in enumerate(results)
        ]
        bundle.allowlist = build_allowlist(
            [s.to_dict() for s in bundle.sources],
            max_norms=self.config.max_allowlist_norms,
        )


def get_retriever(store: VectorStore, embedding_service, **kwargs) -> LawRetriever:
    """Factory function to get a configured retriever."""
    return LawRetriever(store, embedding_service, RetrievalConfig(**kwargs))


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    from .embeddings import get_embedding_service

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = VectorStore()
    store.connect()
    retriever = get_retriever(store, get_embedding_service())

    question = " ".join(sys.argv[1:]) or "Welcher Paragraph regelt die Urlaubsabgeltung?"
    print(f"\nQuestion: {question}")
    print("-" * 50)

    bundle = retriever.retrieve_evidence(question)
    print(f"Mode: {'legal basis' if bundle.legal_basis_mode else 'default'}  law codes: {bundle.law_codes}")
    for source in bundle.sources:
        print(f"\n[{source.id}] {source.law_code} {source.section_label or ''} (score: {source.score:.4f})")
        print(f"   {source.body_text[:200]}...")
    print(f"\nAllowed norms:\n{bundle.allowlist.allowed_norms_text or '(none)'}")
    store.close()
