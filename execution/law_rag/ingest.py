"""
Law Corpus Ingestion

One ingestion run reads gii-norm XML files, chunks and embeds them and writes
the chunks under a version tag. The version row, the chunk writes and the
activation share one transaction: a run either becomes the single active
version or leaves nothing behind but a version marked failed. A failed run
never touches the version the active pointer names. After each activation the
law catalog is rebuilt for the new version.

Batched ingestion splits a large dump into one run per law directory (first
in replace mode, then append) and records progress in a JSON state file so an
interrupted import resumes where it stopped. The version is activated once,
after the last directory.
"""

import os
import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Optional, Union

from .catalog import LawCatalogBuilder
from .chunker import LawChunker, find_xml_files
from .config import INGEST_MODES
from .indexer import LawIndexer
from .vector_store import VectorStore
from .versions import VersionStore

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Raised when an ingestion run aborts; the run's writes are rolled back."""


@dataclass
class IngestionReport:
    """Outcome of one ingestion run."""
    version_tag: str
    mode: str
    files: int = 0
    chunks: int = 0
    deleted: int = 0
    laws: set = field(default_factory=set)
    status: str = "skipped"

    def to_dict(self) -> dict:
        return {
            "version_tag": self.version_tag,
            "mode": self.mode,
            "files": self.files,
            "chunks": self.chunks,
            "deleted": self.deleted,
            "laws": sorted(self.laws),
            "status": self.status,
        }


def default_state_file(version_tag: str) -> str:
    return os.path.join("kb", "_monthly_tmp", f"ingest-progress-{version_tag}.json")


class LawIngestor:
    """Runs versioned ingestion of statute XML into the chunk store."""

    def __init__(
        self,
        store: VectorStore,
        indexer: LawIndexer,
        chunker: Optional[LawChunker] = None,
        versions: Optional[VersionStore] = None,
        catalog: Optional[LawCatalogBuilder] = None,
    ):
        self.store = store
        self.indexer = indexer
        self.chunker = chunker or LawChunker()
        self.versions = versions or VersionStore(store)
        self.catalog = catalog  # rebuilt after every activation when set

    def _prepare_schema(self) -> int:
        """Create missing tables with the live column's dimension, or the model's."""
        dim = self.store.detect_embedding_dimensions()
        if dim is None:
            dim = self.indexer.embeddings.dimensions
        return self.store.initialize_schema(dim)

    def _mark_failed(self, version_tag: str) -> None:
        """Mark a version failed unless the active pointer still serves it."""
        try:
            if self.versions.active_version_tag() == version_tag:
                logger.warning(
                    f"Version {version_tag} is still active; its committed chunks keep serving"
                )
                return
            self.versions.fail_version(version_tag)
        except Exception as mark_error:
            logger.error(f"Could not mark version {version_tag} failed: {mark_error}")

    def _rebuild_catalog(self, version_tag: str) -> None:
        if self.catalog is None:
            return
        try:
            self.catalog.rebuild(version_tag=version_tag)
        except Exception as e:
            logger.error(f"INGEST_FAILED version={version_tag}: catalog rebuild: {e}")
            raise IngestionError(
                f"Version {version_tag} is active but the law catalog rebuild failed: {e}"
            ) from e

    def activate(self, version_tag: str) -> None:
        """
        Make version_tag the single active version and rebuild the catalog.

        Raises:
            IngestionError: the activation was rolled back, or the catalog
                rebuild failed after activation
        """
        try:
            with self.store.transaction() as conn:
                self.versions.commit_version(conn, version_tag)
        except Exception as e:
            logger.error(f"INGEST_FAILED version={version_tag}: activation: {e}")
            self._mark_failed(version_tag)
            raise IngestionError(f"Activation of version {version_tag} failed: {e}") from e

        logger.info(f"Version {version_tag} is now active")
        self._rebuild_catalog(version_tag)

    def run(
        self,
        version_tag: str,
        xml_dir: Optional[Union[str, Path]] = None,
        files: Optional[list[Union[str, Path]]] = None,
        source_url: str = "",
        mode: str = "replace",
        activate: bool = True,
    ) -> IngestionReport:
        """
        Ingest XML files under version_tag and make it the active version.

        Args:
            version_tag: Version the chunks are written under
            xml_dir: Directory searched recursively for *.xml (ignored if files given)
            files: Explicit XML files
            source_url: Recorded on the version row
            mode: "replace" deletes the version's chunks first, "append" keeps them
            activate: Commit the chunks and activate the version in one
                transaction; False leaves the version loading

        Raises:
            IngestionError: any chunking, embedding or store error; the run is
                rolled back and the version marked failed unless it is the
                active one
        """
        if mode not in INGEST_MODES:
            raise ValueError(f"mode must be one of {INGEST_MODES}, got '{mode}'")
        if not version_tag:
            raise ValueError("version_tag is required")

        if files is None:
            if xml_dir is None:
                raise ValueError("xml_dir or files is required")
            files = find_xml_files(xml_dir)
        files = [Path(f) for f in files]

        report = IngestionReport(version_tag=version_tag, mode=mode, files=len(files))
        logger.info(f"Ingest start: version={version_tag} mode={mode} files={len(files)}")
        if not files:
            logger.warning("No XML files found, nothing to ingest")
            return report

        try:
            dim = self._prepare_schema()
        except Exception as e:
            logger.error(f"INGEST_FAILED version={version_tag}: schema setup: {e}")
            raise IngestionError(f"Schema setup failed: {e}") from e

        try:
            with self.store.transaction() as conn:
                self.versions.begin_version(conn, version_tag, source_url)
                if mode == "replace":
                    report.deleted = self.store.delete_version_chunks_with_conn(conn, version_tag)

                for path in files:
                    chunks = self.chunker.chunk_file(path, version_tag=version_tag)
                    if not chunks:
                        continue
                    embedded = self.indexer.embed_chunks(chunks, expected_dimensions=dim)
                    report.chunks += self.store.insert_chunks_with_conn(conn, embedded, version_tag)
                    report.laws.update(c.law_code for c in chunks)

                if activate:
                    self.versions.commit_version(conn, version_tag)
        except Exception as e:
            logger.error(f"INGEST_FAILED version={version_tag}: {e}")
            self._mark_failed(version_tag)
            raise IngestionError(f"Ingestion of version {version_tag} failed: {e}") from e

        report.status = "active" if activate else "loading"
        logger.info(
            f"Ingest done: version={version_tag} status={report.status} chunks={report.chunks} "
            f"laws={len(report.laws)} deleted={report.deleted}"
        )
        if activate:
            self._rebuild_catalog(version_tag)
        return report

    def run_batched(
        self,
        root_dir: Union[str, Path],
        version_tag: str,
        source_url: str = "",
        state_file: Optional[Union[str, Path]] = None,
    ) -> list[IngestionReport]:
        """
        Ingest each law directory below root_dir as its own run.

        The first directory replaces the version's chunks, the rest append.
        Completed directories are recorded in state_file and skipped when the
        same version is resumed. The version stays loading until the last
        directory is written and is then activated once.

        Raises:
            IngestionError: a directory failed, or version_tag is the active
                version (its chunks would be replaced while serving)
        """
        root = Path(root_dir)
        if not root.is_dir():
            raise IngestionError(f"Law XML directory not found: {root}")
        law_dirs = sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name)
        if not law_dirs:
            raise IngestionError(f"No law directories found in {root}")
        if self.versions.active_version_tag() == version_tag:
            raise IngestionError(
                f"Version {version_tag} is active; batched ingestion needs a new version tag"
            )

        state_path = Path(state_file or default_state_file(version_tag))
        state = load_batch_state(state_path, version_tag)
        done = list(state["done"])

        logger.info(
            f"Batched ingest start: version={version_tag} dirs={len(law_dirs)} "
            f"already_done={len(done)} state={state_path}"
        )

        reports = []
        for law_dir in law_dirs:
            if law_dir.name in done:
                continue
            mode = "replace" if not done else "append"
            logger.info(f"[{len(done) + 1}/{len(law_dirs)}] {law_dir.name} ({mode})")

            reports.append(self.run(
                version_tag=version_tag,
                xml_dir=law_dir,
                source_url=source_url,
                mode=mode,
                activate=False,
            ))

            done.append(law_dir.name)
            state["done"] = done
            state["lastCompleted"] = law_dir.name
            state["lastUpdatedAt"] = _now_iso()
            save_batch_state(state_path, state)

        self.activate(version_tag)
        for report in reports:
            report.status = "active"

        logger.info(
            f"Batched ingest completed: processed={len(reports)} "
            f"total={len(done)}/{len(law_dirs)}"
        )
        return reports


def load_batch_state(path: Union[str, Path], version_tag: str) -> dict:
    """Read the progress file; a missing, unreadable or other-version file starts fresh."""
    path = Path(path)
    fresh = {"versionTag": version_tag, "done": [], "startedAt": _now_iso()}
    if not path.exists():
        return fresh
    try:
        with open(path, encoding="utf-8") as f:
            state = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable batch state {path}: {e}")
        return fresh
    if state.get("versionTag") != version_tag:
        logger.warning(
            f"Batch state {path} belongs to version {state.get('versionTag')!r}, starting fresh"
        )
        return fresh
    state.setdefault("done", [])
    return state


def save_batch_state(path: Union[str, Path], state: dict) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, ensure_ascii=False)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
