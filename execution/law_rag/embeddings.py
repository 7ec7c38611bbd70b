"""
Embedding Service for the Law Corpus

Provides embeddings via OpenAI (text-embedding-3-small, default), Voyage AI or
Cohere. Supports batching, caching and different input types (documents vs
queries).

Architecture:
    BaseEmbeddingService  -- shared caching, batching, embed_documents, embed_query
        OpenAIEmbeddingService    -- OpenAI embeddings endpoint
        VoyageEmbeddingService    -- Voyage AI provider
        CohereEmbeddingService    -- Cohere embed-v3 provider

The vector dimension is whatever the configured model returns. It is probed
once and never assumed, so a model change cannot silently mix dimensions in
the store.
"""

import os
import json
import hashlib
import logging
from typing import Optional
from dataclasses import dataclass
from pathlib import Path

from .language_config import LanguageConfig

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai", "voyage" or "cohere"
    model: str = "text-embedding-3-small"
    batch_size: int = 32
    max_chars_per_input: int = 8000  # inputs are truncated, never rejected
    timeout: float = 30.0  # seconds per provider request
    api_key: Optional[str] = None  # falls back to the provider's env var
    cache_dir: Optional[str] = None
    use_cache: bool = True


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Provides shared functionality:
    - Fixed-size batching with progress logging
    - Memory and file-based caching
    - Document vs query input type distinction
    - Dimension probing

    Subclasses implement:
    - _init_client(): create the provider client
    - _request(texts, input_type): one provider call, one vector per text

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    - _doc_input_type / _query_input_type: provider input type strings
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""
    _doc_input_type: str = "document"
    _query_input_type: str = "query"

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache = {}
        self._dimensions: Optional[int] = None

        if self.config.cache_dir:
            self._cache_path = Path(self.config.cache_dir)
            self._cache_path.mkdir(parents=True, exist_ok=True)
        else:
            self._cache_path = None

        self._init_client()

    def _api_key(self) -> Optional[str]:
        return self.config.api_key or os.getenv(self._env_var_name)

    def _init_client(self):
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _request(self, texts: list[str], input_type: str) -> list[list[float]]:
        raise NotImplementedError("Subclasses must implement _request()")

    def _require_client(self) -> None:
        if not self._client:
            raise RuntimeError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

    def _create_batches(self, texts: list[str]) -> list[list[str]]:
        """Split texts into fixed-size batches."""
        size = self.config.batch_size
        return [texts[i:i + size] for i in range(0, len(texts), size)]

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts as documents; one vector per input, same order."""
        return self.embed_documents(texts)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for document chunks.

        Any provider error propagates; the caller decides whether that aborts
        an ingestion run.
        """
        if not texts:
            return []
        self._require_client()

        batches = self._create_batches(texts)
        logger.info(
            f"Embedding {len(texts)} documents in {len(batches)} batches"
            f" with {self._provider_name}"
        )

        embeddings = []
        for batch_idx, batch in enumerate(batches):
            embeddings.extend(self._embed_batch(batch, input_type=self._doc_input_type))
            if (batch_idx + 1) % 10 == 0:
                logger.info(f"Processed batch {batch_idx + 1}/{len(batches)}")
        return embeddings

    def embed_query(self, query: str) -> list[float]:
        """Generate the embedding for a search query."""
        self._require_client()
        result = self._embed_batch([query], input_type=self._query_input_type)
        return result[0] if result else []

    def _embed_batch(self, texts: list[str], input_type: str) -> list[list[float]]:
        """Embed one batch, serving cached vectors and requesting the rest."""
        results = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._get_cached(self._get_cache_key(text, input_type))
            if cached is not None:
                results.append((i, cached))
            else:
                uncached_texts.append(text[:self.config.max_chars_per_input])
                uncached_indices.append(i)

        if uncached_texts:
            try:
                vectors = self._request(uncached_texts, input_type)
            except Exception as e:
                logger.error(f"{self._provider_name} embedding failed: {e}")
                raise
            if len(vectors) != len(uncached_texts):
                raise RuntimeError(
                    f"{self._provider_name} returned {len(vectors)} embeddings "
                    f"for {len(uncached_texts)} inputs"
                )
            for idx, vector in zip(uncached_indices, vectors):
                vector = list(vector)
                self._set_cached(self._get_cache_key(texts[idx], input_type), vector)
                results.append((idx, vector))

        results.sort(key=lambda x: x[0])
        return [emb for _, emb in results]

    def _get_cache_key(self, text: str, input_type: str) -> str:
        content = f"{self.config.model}:{input_type}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None

        if key in self._cache:
            return self._cache[key]

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            if cache_file.exists():
                try:
                    with open(cache_file) as f:
                        embedding = json.load(f)
                        self._cache[key] = embedding
                        return embedding
                except (OSError, ValueError) as e:
                    logger.debug(f"Failed to read embedding cache file {cache_file}: {e}")

        return None

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache:
            return

        self._cache[key] = embedding

        if self._cache_path:
            cache_file = self._cache_path / f"{key}.json"
            try:
                with open(cache_file, "w") as f:
                    json.dump(embedding, f)
            except OSError as e:
                logger.warning(f"Failed to cache embedding: {e}")

    @property
    def dimensions(self) -> int:
        """Dimension of the configured model, probed with one request."""
        if self._dimensions is None:
            probe = self.embed_query("dimension probe")
            if not probe:
                raise RuntimeError(f"{self._provider_name} returned an empty probe embedding")
            self._dimensions = len(probe)
            logger.info(f"{self._provider_name} model {self.config.model}: {self._dimensions} dimensions")
        return self._dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """Embeddings from the OpenAI embeddings endpoint (no input types)."""

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        api_key = self._api_key()
        if not api_key:
            logger.warning("OPENAI_API_KEY not found. Embeddings will fail.")
            return

        from openai import OpenAI
        self._client = OpenAI(api_key=api_key, timeout=self.config.timeout)
        logger.info(f"OpenAI client initialized with model {self.config.model}")

    def _request(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embeddings.create(model=self.config.model, input=texts)
        ordered = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in ordered]


class VoyageEmbeddingService(BaseEmbeddingService):
    """Embedding service using Voyage AI (voyage-multilingual-2 for German law)."""

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"
    _doc_input_type = "document"
    _query_input_type = "query"

    def _init_client(self):
        api_key = self._api_key()
        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        import voyageai
        self._client = voyageai.Client(api_key=api_key, timeout=self.config.timeout)
        logger.info(f"Voyage AI client initialized with model {self.config.model}")

    def _request(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(texts=texts, model=self.config.model, input_type=input_type)
        return response.embeddings


class CohereEmbeddingService(BaseEmbeddingService):
    """Embeddings using Cohere's multilingual embed-v3 model."""

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"
    _doc_input_type = "search_document"
    _query_input_type = "search_query"

    def _init_client(self):
        api_key = self._api_key()
        if not api_key:
            logger.warning("COHERE_API_KEY not found. Embeddings will fail.")
            return

        import cohere
        self._client = cohere.Client(api_key, timeout=self.config.timeout)
        logger.info(f"Cohere client initialized with model {self.config.model}")

    def _request(self, texts: list[str], input_type: str) -> list[list[float]]:
        response = self._client.embed(texts=texts, model=self.config.model, input_type=input_type)
        return response.embeddings


DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "voyage": "voyage-multilingual-2",
    "cohere": "embed-multilingual-v3.0",
}

_PROVIDERS = {
    "openai": OpenAIEmbeddingService,
    "voyage": VoyageEmbeddingService,
    "cohere": CohereEmbeddingService,
}


def get_embedding_service(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    batch_size: int = 32,
    timeout: float = 30.0,
    language_config: Optional[LanguageConfig] = None,
) -> BaseEmbeddingService:
    """
    Factory function to get the configured embedding service.

    Args:
        provider: "openai" (default), "voyage" or "cohere"
        model: Model name; defaults to the language config's model
        api_key: API key; defaults to the provider's environment variable
        batch_size: Inputs per provider request
        timeout: Seconds per provider request
        language_config: Optional LanguageConfig supplying provider and model
    """
    language_config = language_config or LanguageConfig()
    prov = provider or language_config.embedding_provider
    if prov not in _PROVIDERS:
        raise ValueError(f"Unknown embedding provider: {prov}")

    config = EmbeddingConfig(
        provider=prov,
        model=model or (
            language_config.embedding_model
            if prov == language_config.embedding_provider
            else DEFAULT_MODELS[prov]
        ),
        batch_size=batch_size,
        timeout=timeout,
        api_key=api_key,
    )
    return _PROVIDERS[prov](config)


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    provider = os.getenv("EMBEDDING_PROVIDER", "openai")
    print(f"Using embedding provider: {provider}")

    service = get_embedding_service(provider=provider)
    query = " ".join(sys.argv[1:]) or "Urlaubsabgeltung bei Beendigung des Arbeitsverhältnisses"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
