"""
Language Configuration for the Law Corpus

Provides per-deployment language configuration. The statutory corpus is
German federal law; the language setting controls which user-facing labels the
citation guard writes and which legal-basis patterns the retriever applies to
incoming questions.
"""

from dataclasses import dataclass


# Supported answer languages
SUPPORTED_LANGUAGES = {
    "de": {"name": "German"},
    "en": {"name": "English"},
    "ru": {"name": "Russian"},
}


@dataclass
class LanguageConfig:
    """Per-deployment language and embedding model configuration."""
    language: str = "de"
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-3-small"

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning defaults for a given language.

        Unknown languages fall back to German, the language of the corpus.

        Args:
            language: ISO 639-1 code ("de", "en" or "ru")
        """
        if language not in SUPPORTED_LANGUAGES:
            language = "de"
        return cls(language=language)

    def is_supported(self) -> bool:
        return self.language in SUPPORTED_LANGUAGES
