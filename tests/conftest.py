"""
Shared fixtures and test utilities for Law RAG tests.

Provides mock services, sample statute XML and reusable fixtures so that all
tests run without API keys, databases, or external network access.
"""

import sys
import copy
import hashlib
import math
from pathlib import Path
from contextlib import contextmanager
from unittest.mock import MagicMock

import pytest
from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

# ---------------------------------------------------------------------------
# Sample gii-norm XML
# ---------------------------------------------------------------------------

SAMPLE_BURLG_XML = """<?xml version="1.0" encoding="UTF-8"?>
<dokumente builddate="20240101000000" doknr="BJNR000020963">
<norm builddate="20240101000000" doknr="BJNR000020963">
<metadaten><jurabk>BUrlG</jurabk><amtabk>BUrlG</amtabk>
<langue>Mindesturlaubsgesetz für Arbeitnehmer</langue></metadaten>
</norm>
<norm builddate="20240101000000" doknr="BJNR000020963BJNE000700307">
<metadaten><jurabk>BUrlG</jurabk><enbez>§ 7</enbez>
<titel format="parat">Zeitpunkt, Übertragbarkeit und Abgeltung des Urlaubs</titel></metadaten>
<textdaten><text format="XML"><Content>
<P>(1) Bei der zeitlichen Festlegung des Urlaubs sind die Urlaubswünsche des Arbeitnehmers zu berücksichtigen.</P>
<P>(4) Kann der Urlaub wegen Beendigung des Arbeitsverhältnisses ganz oder teilweise nicht mehr gewährt werden, so ist er abzugelten.</P>
</Content></text></textdaten>
</norm>
<norm builddate="20240101000000" doknr="BJNR000020963BJNE001100307">
<metadaten><jurabk>BUrlG</jurabk><enbez>§ 11</enbez>
<titel format="parat">Urlaubsentgelt</titel></metadaten>
<textdaten><text format="XML"><Content>
<P>(1) Das Urlaubsentgelt bemisst sich nach dem durchschnittlichen Arbeitsverdienst &amp; wird vor Antritt des Urlaubs ausgezahlt.</P>
</Content></text></textdaten>
</norm>
</dokumente>
"""

SAMPLE_BGB_XML = """<?xml version="1.0" encoding="UTF-8"?>
<dokumente>
<norm>
<metadaten><jurabk>BGB</jurabk><enbez>§ 823</enbez><titel>Schadensersatzpflicht</titel></metadaten>
<textdaten><text format="XML"><Content>
<P>(1) Wer vorsätzlich oder fahrlässig das Leben, den Körper, die Gesundheit, die Freiheit, das Eigentum oder ein sonstiges Recht eines anderen widerrechtlich verletzt, ist dem anderen zum Ersatz des daraus entstehenden Schadens verpflichtet.</P>
<P>(2) Die gleiche Verpflichtung trifft denjenigen, welcher gegen ein den Schutz eines anderen bezweckendes Gesetz verstößt.</P>
</Content></text></textdaten>
</norm>
</dokumente>
"""


@pytest.fixture
def burlg_xml():
    return SAMPLE_BURLG_XML


@pytest.fixture
def bgb_xml():
    return SAMPLE_BGB_XML


@pytest.fixture
def law_xml_dir(tmp_path):
    """Directory laid out like an extracted dump: one subdirectory per law."""
    root = tmp_path / "unzipped"
    (root / "burlg").mkdir(parents=True)
    (root / "bgb").mkdir(parents=True)
    (root / "burlg" / "BJNR000020963.xml").write_text(SAMPLE_BURLG_XML, encoding="utf-8")
    (root / "bgb" / "BJNR001950896.xml").write_text(SAMPLE_BGB_XML, encoding="utf-8")
    return root


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=8, fail_on=None):
        self._dimensions = dimensions
        self._call_count = 0
        self.document_calls = 0
        self.fail_on = fail_on  # substring that makes embed_documents raise

    def embed_documents(self, texts):
        self.document_calls += 1
        if self.fail_on and any(self.fail_on in t for t in texts):
            raise RuntimeError("embedding provider unavailable")
        return [self._deterministic_embedding(t) for t in texts]

    def embed_query(self, query):
        self._call_count += 1
        return self._deterministic_embedding(query)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 + 0.001 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService(dimensions=8)


# ---------------------------------------------------------------------------
# Mock law store (no database needed)
# ---------------------------------------------------------------------------

def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class MockLawStore:
    """In-memory stand-in for VectorStore with transactional rollback."""

    def __init__(self, dimensions=None):
        from execution.law_rag.vector_store import VectorStoreConfig
        self.config = VectorStoreConfig()
        self.dimensions = dimensions
        self.chunks = []
        self.versions = {}
        self.meta = {}
        self.catalog = {}
        self.fail_insert_for_law = None
        self.fail_search = False
        self.fail_catalog = False
        self._next_id = 1

    def connect(self):
        pass

    def close(self):
        pass

    def detect_embedding_dimensions(self, table=None):
        return self.dimensions

    def initialize_schema(self, embedding_dimensions):
        from execution.law_rag.vector_store import EmbeddingDimensionError
        if self.dimensions is not None and self.dimensions != embedding_dimensions:
            raise EmbeddingDimensionError("dimension mismatch")
        self.dimensions = embedding_dimensions
        return embedding_dimensions

    def _state(self):
        return (self.chunks, self.versions, self.meta, self.catalog, self._next_id)

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self._state())
        try:
            yield MagicMock()
        except BaseException:
            self.chunks, self.versions, self.meta, self.catalog, self._next_id = snapshot
            raise

    def delete_version_chunks_with_conn(self, conn, version_tag):
        before = len(self.chunks)
        self.chunks = [c for c in self.chunks if c["version_tag"] != version_tag]
        return before - len(self.chunks)

    def insert_chunks_with_conn(self, conn, chunks, version_tag):
        if self.fail_insert_for_law and any(c.law_code == self.fail_insert_for_law for c in chunks):
            raise RuntimeError("insert failed")
        for c in chunks:
            self.chunks.append({
                "id": self._next_id,
                "version_tag": version_tag,
                "law": c.law_code,
                "section": c.section_label,
                "title": c.title,
                "text": c.body_text,
                "source": c.origin_path,
                "embedding": list(c.embedding),
            })
            self._next_id += 1
        return len(chunks)

    def add_chunk(self, version_tag, law, section, title, text, embedding, source="test.xml"):
        self.chunks.append({
            "id": self._next_id, "version_tag": version_tag, "law": law,
            "section": section, "title": title, "text": text,
            "source": source, "embedding": list(embedding),
        })
        self._next_id += 1

    def count_chunks(self, version_tag):
        return sum(1 for c in self.chunks if c["version_tag"] == version_tag)

    def get_active_version_tag(self):
        return self.meta.get("active_version_tag")

    def _status(self, version_tag):
        return self.versions.get(version_tag, {}).get("status")

    def resolve_version_tag(self):
        active = self.get_active_version_tag()
        if active and self.count_chunks(active) and self._status(active) != "failed":
            return active
        tags = [
            c["version_tag"] for c in self.chunks
            if self._status(c["version_tag"]) not in ("failed", "loading")
        ]
        return max(tags) if tags else None

    def search(self, query_embedding, version_tag, top_k=6, law_codes=None):
        from execution.law_rag.vector_store import SearchResult
        if self.fail_search:
            raise RuntimeError("statement timeout")
        rows = [
            c for c in self.chunks
            if c["version_tag"] == version_tag and (not law_codes or c["law"] in law_codes)
        ]
        scored = [(_cosine(query_embedding, c["embedding"]), c) for c in rows]
        scored.sort(key=lambda pair: -pair[0])
        return [
            SearchResult(
                law_code=c["law"], section_label=c["section"], title=c["title"],
                body_text=c["text"], origin=c["source"], score=round(score, 4),
                chunk_id=c["id"], version_tag=c["version_tag"],
            )
            for score, c in scored[:top_k]
        ]

    def ensure_catalog_table(self):
        return self.dimensions

    def list_law_titles(self, version_tag):
        titles = {}
        for c in self.chunks:
            if c["version_tag"] != version_tag or not (c["law"] or "").strip():
                continue
            current = titles.setdefault(c["law"], "")
            if c["title"] and c["title"] > current:
                titles[c["law"]] = c["title"]
        return sorted(titles.items())

    def replace_catalog_with_conn(self, conn, entries):
        self.catalog = {e.law_code: e for e in entries}
        return len(entries)

    def search_catalog(self, query_embedding, top_n=3):
        if self.fail_catalog:
            raise RuntimeError("law_catalog does not exist")
        ranked = sorted(
            self.catalog.values(),
            key=lambda e: -_cosine(query_embedding, e.embedding),
        )
        return [e.law_code for e in ranked[:top_n]]

    def prune_versions(self, keep_version_tag):
        protected = {keep_version_tag, self.get_active_version_tag()}
        pruned = [t for t in self.versions if t not in protected]
        self.chunks = [c for c in self.chunks if c["version_tag"] in protected]
        for tag in pruned:
            if self.versions[tag]["status"] != "failed":
                self.versions[tag]["status"] = "archived"
        return pruned


class MockVersionStore:
    """In-memory VersionStore operating on a MockLawStore's state."""

    def __init__(self, store):
        self.store = store

    def begin_version(self, conn, version_tag, source_url=""):
        self.store.versions[version_tag] = {"status": "loading", "source_url": source_url}

    def commit_version(self, conn, version_tag):
        for tag, row in self.store.versions.items():
            if row["status"] == "active" and tag != version_tag:
                row["status"] = "archived"
        self.store.versions[version_tag]["status"] = "active"
        self.store.meta["active_version_tag"] = version_tag

    def fail_version(self, version_tag):
        row = self.store.versions.setdefault(version_tag, {"source_url": ""})
        row["status"] = "failed"

    def active_version_tag(self):
        return self.store.get_active_version_tag()


@pytest.fixture
def mock_law_store():
    return MockLawStore()


@pytest.fixture
def mock_version_store(mock_law_store):
    return MockVersionStore(mock_law_store)
