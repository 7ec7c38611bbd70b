"""
Settings for the Law Corpus Pipeline

All runtime configuration comes from environment variables (optionally loaded
from a .env file). Component-level dataclass configs (ChunkConfig,
EmbeddingConfig, VectorStoreConfig, ...) are derived from these settings by
the entry points.

Missing endpoint credentials are a configuration error and are reported once
at process start, never per request.
"""

import os
import logging
from datetime import date
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .embeddings import DEFAULT_MODELS
from .language_config import LanguageConfig

logger = logging.getLogger(__name__)

INGEST_MODES = ("replace", "append")

# Environment variable holding the API key of each embedding provider
PROVIDER_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "cohere": "COHERE_API_KEY",
}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class Settings:
    """Process-wide settings resolved from the environment."""
    database_url: Optional[str] = None
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"
    provider_api_key: Optional[str] = None
    law_xml_dir: str = os.path.join("kb", "laws_xml")
    chunk_max_chars: int = 1800
    embed_batch_size: int = 32
    embed_workers: int = 1
    version_tag: str = ""
    source_url: str = ""
    ingest_mode: str = "replace"
    batch_state_file: Optional[str] = None
    guard_language: str = "de"
    provider_timeout: float = 30.0
    statement_timeout_ms: int = 15000

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            dotenv: Load a .env file from the working directory first.
        """
        if dotenv:
            load_dotenv()

        provider = os.getenv("EMBEDDING_PROVIDER", "openai").strip().lower()
        key_var = PROVIDER_KEY_VARS.get(provider, "")
        if provider == "openai":
            model = (
                os.getenv("OPENAI_EMBED_MODEL")
                or os.getenv("OPENAI_EMBEDDING_MODEL")
                or _default_model(provider)
            )
        else:
            model = os.getenv("EMBEDDING_MODEL") or _default_model(provider)

        return cls(
            database_url=os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URL"),
            embedding_provider=provider,
            embedding_model=model,
            provider_api_key=os.getenv(key_var) if key_var else None,
            law_xml_dir=os.getenv("LAW_XML_DIR", os.path.join("kb", "laws_xml")),
            chunk_max_chars=_int_env("LAW_CHUNK_MAX_CHARS", 1800),
            embed_batch_size=_int_env("LAW_EMBED_BATCH_SIZE", 32),
            embed_workers=_int_env("LAW_EMBED_WORKERS", 1),
            version_tag=os.getenv("LAW_VERSION_TAG") or date.today().isoformat(),
            source_url=os.getenv("LAW_SOURCE_URL", ""),
            ingest_mode=os.getenv("LAW_INGEST_MODE", "replace").strip().lower(),
            batch_state_file=os.getenv("LAW_BATCH_STATE_FILE"),
            guard_language=os.getenv("LAW_GUARD_LANGUAGE", "de"),
            provider_timeout=float(os.getenv("LAW_PROVIDER_TIMEOUT", "30")),
            statement_timeout_ms=_int_env("LAW_STATEMENT_TIMEOUT_MS", 15000),
        )

    def validate(self, require_database: bool = True) -> "Settings":
        """
        Fail fast on missing credentials or invalid values.

        Returns self so callers can chain ``Settings.from_env().validate()``.
        """
        if require_database and not self.database_url:
            raise ConfigurationError("DATABASE_URL is required")
        if self.embedding_provider not in PROVIDER_KEY_VARS:
            raise ConfigurationError(
                f"Unknown EMBEDDING_PROVIDER '{self.embedding_provider}' "
                f"(expected one of {', '.join(PROVIDER_KEY_VARS)})"
            )
        if not self.provider_api_key:
            raise ConfigurationError(
                f"{PROVIDER_KEY_VARS[self.embedding_provider]} is required"
            )
        if self.ingest_mode not in INGEST_MODES:
            raise ConfigurationError(
                f"LAW_INGEST_MODE must be 'replace' or 'append', got '{self.ingest_mode}'"
            )
        if self.chunk_max_chars <= 0 or self.embed_batch_size <= 0 or self.embed_workers <= 0:
            raise ConfigurationError(
                "LAW_CHUNK_MAX_CHARS, LAW_EMBED_BATCH_SIZE and LAW_EMBED_WORKERS must be positive"
            )
        logger.debug(
            f"Settings valid: provider={self.embedding_provider} model={self.embedding_model} "
            f"mode={self.ingest_mode} version={self.version_tag}"
        )
        return self

    def language_config(self) -> LanguageConfig:
        """Language and embedding model of this deployment."""
        config = LanguageConfig.for_language(self.guard_language)
        config.embedding_provider = self.embedding_provider
        config.embedding_model = self.embedding_model
        return config


def _default_model(provider: str) -> str:
    return DEFAULT_MODELS.get(provider, DEFAULT_MODELS["openai"])


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")
