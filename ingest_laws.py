"""
Versioned ingestion of German federal law XML (gii-norm) into the law corpus.

Each run writes one version tag and, on success, makes it the single active
version. Any failure rolls the run back, marks the version failed and exits 1;
the previously active version keeps serving. After every activation the law
catalog is rebuilt for the new version unless --skip-catalog is given.

Usage:
    python ingest_laws.py --dir kb/laws_xml --version-tag 2026-03-01
    python ingest_laws.py --dir kb/laws_xml/unzipped --batched
    python ingest_laws.py --skip-ingest --rebuild-catalog --prune
"""

import sys
import argparse
import logging
from pathlib import Path
from dotenv import load_dotenv

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(PROJECT_ROOT))
load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

from execution.law_rag.config import Settings, ConfigurationError  # noqa: E402
from execution.law_rag.chunker import LawChunker, ChunkConfig  # noqa: E402
from execution.law_rag.embeddings import get_embedding_service  # noqa: E402
from execution.law_rag.indexer import LawIndexer, IndexerConfig  # noqa: E402
from execution.law_rag.ingest import LawIngestor, IngestionError  # noqa: E402
from execution.law_rag.catalog import LawCatalogBuilder  # noqa: E402
from execution.law_rag.vector_store import (  # noqa: E402
    VectorStore,
    VectorStoreConfig,
    EmbeddingDimensionError,
)


def build_parser() -> argparse.ArgumentParser:
    arg_parser = argparse.ArgumentParser(description="Ingest German federal law XML")
    arg_parser.add_argument("--dir", type=str, default=None, help="XML directory (default: LAW_XML_DIR)")
    arg_parser.add_argument("--version-tag", type=str, default=None, help="Version tag (default: LAW_VERSION_TAG or today)")
    arg_parser.add_argument("--source-url", type=str, default=None, help="Download URL recorded on the version")
    arg_parser.add_argument("--mode", choices=["replace", "append"], default=None, help="Ingestion mode (default: LAW_INGEST_MODE)")
    arg_parser.add_argument("--batched", action="store_true", help="One run per law subdirectory, resumable")
    arg_parser.add_argument("--state-file", type=str, default=None, help="Progress file for --batched")
    arg_parser.add_argument("--rebuild-catalog", action="store_true", help="Rebuild the law catalog for the effective version (with --skip-ingest)")
    arg_parser.add_argument("--skip-catalog", action="store_true", help="Do not rebuild the law catalog after activation")
    arg_parser.add_argument("--prune", action="store_true", help="Delete chunks of all other versions afterwards")
    arg_parser.add_argument("--skip-ingest", action="store_true", help="Only run --rebuild-catalog / --prune")
    return arg_parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env(dotenv=False).validate()
    except ConfigurationError as e:
        logger.error(f"INGEST_FAILED configuration: {e}")
        return 1

    version_tag = args.version_tag or settings.version_tag
    xml_dir = args.dir or settings.law_xml_dir
    mode = args.mode or settings.ingest_mode

    store = VectorStore(VectorStoreConfig(
        connection_string=settings.database_url,
        statement_timeout_ms=settings.statement_timeout_ms,
    ))
    embeddings = get_embedding_service(
        language_config=settings.language_config(),
        api_key=settings.provider_api_key,
        batch_size=settings.embed_batch_size,
        timeout=settings.provider_timeout,
    )
    indexer = LawIndexer(embeddings, IndexerConfig(
        batch_size=settings.embed_batch_size,
        max_workers=settings.embed_workers,
    ))
    catalog = None if args.skip_catalog else LawCatalogBuilder(store, embeddings)
    ingestor = LawIngestor(
        store,
        indexer,
        chunker=LawChunker(ChunkConfig(max_chars=settings.chunk_max_chars)),
        catalog=catalog,
    )

    try:
        if not args.skip_ingest:
            if args.batched:
                reports = ingestor.run_batched(
                    xml_dir,
                    version_tag=version_tag,
                    source_url=args.source_url or settings.source_url,
                    state_file=args.state_file or settings.batch_state_file,
                )
                total = sum(r.chunks for r in reports)
                logger.info(f"Batched ingest finished: {len(reports)} runs, {total} chunks")
            else:
                report = ingestor.run(
                    version_tag=version_tag,
                    xml_dir=xml_dir,
                    source_url=args.source_url or settings.source_url,
                    mode=mode,
                )
                logger.info(f"Ingest finished: {report.to_dict()}")

        if args.skip_ingest and args.rebuild_catalog:
            LawCatalogBuilder(store, embeddings).rebuild()

        if args.prune:
            pruned = store.prune_versions(version_tag)
            logger.info(f"Pruned versions: {pruned}")
    except (IngestionError, EmbeddingDimensionError, FileNotFoundError) as e:
        logger.error(f"INGEST_FAILED {e}")
        return 1
    finally:
        store.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
