"""
Tests for execution/law_rag/vector_store.py

Covers: VectorStoreConfig, SearchResult, connection string resolution,
        transactions and retry, dimension detection, schema creation,
        chunk writes, version resolution, search, catalog and pruning.

All database calls are mocked -- no PostgreSQL required.
"""

from unittest.mock import patch, MagicMock

import pytest


def _store():
    """VectorStore wired to a MagicMock connection; returns (store, conn, cursor)."""
    from execution.law_rag.vector_store import VectorStore, VectorStoreConfig
    store = VectorStore(VectorStoreConfig(connection_string="postgresql://test/law", use_pooling=False))
    conn = MagicMock()
    conn.closed = False
    cursor = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    store._conn = conn
    return store, conn, cursor


def _executed_sql(cursor):
    return [c.args[0] for c in cursor.execute.call_args_list]


# ---------------------------------------------------------------------------
# Config and dataclasses
# ---------------------------------------------------------------------------

class TestVectorStoreConfig:

    def test_defaults(self):
        from execution.law_rag.vector_store import VectorStoreConfig
        cfg = VectorStoreConfig()
        assert cfg.connection_string is None
        assert cfg.chunk_table == "law_chunks"
        assert cfg.versions_table == "law_dataset_versions"
        assert cfg.meta_table == "law_dataset_meta"
        assert cfg.catalog_table == "law_catalog"
        assert cfg.connect_timeout == 10
        assert cfg.statement_timeout_ms == 15000


class TestSearchResult:

    def test_dedup_key_uses_text_prefix(self):
        from execution.law_rag.vector_store import SearchResult
        a = SearchResult("BGB", "§ 823", "T", "x" * 300 + "tail one", "a.xml", 0.9)
        b = SearchResult("BGB", "§ 823", "T", "x" * 300 + "tail two", "b.xml", 0.5)
        assert a.dedup_key() == b.dedup_key()

    def test_dedup_key_none_fields(self):
        from execution.law_rag.vector_store import SearchResult
        r = SearchResult("BGB", None, None, "Text", "a.xml", 0.1)
        assert r.dedup_key() == ("BGB", "", "", "Text")

    def test_to_dict(self):
        from execution.law_rag.vector_store import SearchResult
        d = SearchResult("BGB", "§ 823", "T", "Text", "a.xml", 0.9, chunk_id=7, version_tag="v1").to_dict()
        assert d["law_code"] == "BGB"
        assert d["chunk_id"] == 7
        assert d["version_tag"] == "v1"


class TestConnectionString:

    def test_uses_config(self, monkeypatch):
        from execution.law_rag.vector_store import VectorStore, VectorStoreConfig
        monkeypatch.setenv("DATABASE_URL", "postgresql://env/db")
        store = VectorStore(VectorStoreConfig(connection_string="postgresql://cfg/db"))
        assert store._connection_string == "postgresql://cfg/db"

    def test_database_url_env(self, monkeypatch):
        from execution.law_rag.vector_store import VectorStore
        monkeypatch.setenv("DATABASE_URL", "postgresql://env/db")
        assert VectorStore()._connection_string == "postgresql://env/db"

    def test_postgres_url_env(self, monkeypatch):
        from execution.law_rag.vector_store import VectorStore
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("POSTGRES_URL", "postgresql://pg/db")
        assert VectorStore()._connection_string == "postgresql://pg/db"

    def test_connect_passes_timeouts(self):
        from execution.law_rag.vector_store import VectorStore, VectorStoreConfig
        store = VectorStore(VectorStoreConfig(
            connection_string="postgresql://test/law", use_pooling=False, statement_timeout_ms=5000,
        ))
        with patch("psycopg2.connect") as mock_connect:
            store.connect()
        _, kwargs = mock_connect.call_args
        assert kwargs["connect_timeout"] == 10
        assert kwargs["options"] == "-c statement_timeout=5000"


# ---------------------------------------------------------------------------
# Transactions and retry
# ---------------------------------------------------------------------------

class TestTransactions:

    def test_commit_on_success(self):
        store, conn, _ = _store()
        with store.transaction() as tx:
            assert tx is conn
        conn.commit.assert_called_once()
        conn.rollback.assert_not_called()

    def test_rollback_on_error(self):
        store, conn, _ = _store()
        with pytest.raises(RuntimeError):
            with store.transaction():
                raise RuntimeError("boom")
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()

    def test_retry_once_on_stale_connection(self):
        import psycopg2
        store, conn, _ = _store()
        calls = []

        def op(c):
            calls.append(c)
            if len(calls) == 1:
                raise psycopg2.OperationalError("server closed the connection")
            return "ok"

        with patch.object(store, "connect"):
            assert store._execute_with_retry(op, "test") == "ok"
        assert len(calls) == 2

    def test_other_errors_not_retried(self):
        store, conn, _ = _store()
        op = MagicMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            store._execute_with_retry(op, "test")
        assert op.call_count == 1
        conn.rollback.assert_called_once()

    def test_close(self):
        store, conn, _ = _store()
        store.close()
        conn.close.assert_called_once()
        assert store._conn is None


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class TestSchema:

    def test_detect_dimensions(self):
        store, _, cursor = _store()
        cursor.fetchone.return_value = {"dim": "1536"}
        assert store.detect_embedding_dimensions() == 1536
        sql, params = cursor.execute.call_args.args
        assert "format_type(a.atttypid, a.atttypmod)" in sql
        assert params == ("law_chunks",)

    def test_detect_dimensions_missing_table(self):
        store, _, cursor = _store()
        cursor.fetchone.return_value = None
        assert store.detect_embedding_dimensions() is None

    def test_initialize_schema_uses_observed_dimension(self):
        store, conn, cursor = _store()
        with patch.object(store, "detect_embedding_dimensions", return_value=None):
            assert store.initialize_schema(3072) == 3072
        sql = _executed_sql(cursor)[0]
        assert "VECTOR(3072)" in sql
        assert "law_dataset_versions" in sql
        assert "law_dataset_meta" in sql
        assert "vector_cosine_ops" in sql
        conn.commit.assert_called()

    def test_initialize_schema_rejects_other_dimension(self):
        from execution.law_rag.vector_store import EmbeddingDimensionError
        store, _, cursor = _store()
        with patch.object(store, "detect_embedding_dimensions", return_value=1536):
            with pytest.raises(EmbeddingDimensionError, match="vector\\(1536\\)"):
                store.initialize_schema(1024)
        cursor.execute.assert_not_called()

    def test_catalog_table_follows_chunk_dimension(self):
        store, _, cursor = _store()
        with patch.object(store, "detect_embedding_dimensions", side_effect=[1536, None]):
            assert store.ensure_catalog_table() == 1536
        sql = " ".join(_executed_sql(cursor))
        assert "CREATE TABLE IF NOT EXISTS law_catalog" in sql
        assert "VECTOR(1536)" in sql
        assert "DROP TABLE" not in sql

    def test_catalog_table_rebuilt_on_dimension_change(self):
        store, _, cursor = _store()
        with patch.object(store, "detect_embedding_dimensions", side_effect=[1536, 1024]):
            store.ensure_catalog_table()
        statements = _executed_sql(cursor)
        assert statements[0] == "DROP TABLE law_catalog"
        assert "VECTOR(1536)" in statements[1]

    def test_catalog_requires_chunk_table(self):
        from execution.law_rag.vector_store import EmbeddingDimensionError
        store, _, _ = _store()
        with patch.object(store, "detect_embedding_dimensions", return_value=None):
            with pytest.raises(EmbeddingDimensionError):
                store.ensure_catalog_table()


# ---------------------------------------------------------------------------
# Chunk writes
# ---------------------------------------------------------------------------

class TestChunkWrites:

    def test_insert_chunks(self):
        from execution.law_rag.chunker import LawChunk
        store, conn, _ = _store()
        chunks = [
            LawChunk("BUrlG", "§ 7", "Abgeltung", "Text A", "burlg.xml", embedding=[0.1, 0.2]),
            LawChunk("BUrlG", "§ 11", "Urlaubsentgelt", "Text B", "burlg.xml", embedding=[0.3, 0.4]),
        ]
        with patch("psycopg2.extras.execute_values") as mock_ev:
            assert store.insert_chunks_with_conn(conn, chunks, "2026-03-01") == 2
        _, sql, values = mock_ev.call_args.args
        assert "INSERT INTO law_chunks" in sql
        assert values[0] == ("2026-03-01", "BUrlG", "§ 7", "Abgeltung", "Text A", "burlg.xml", [0.1, 0.2])
        assert mock_ev.call_args.kwargs["template"].endswith("%s::vector)")
        conn.commit.assert_not_called()

    def test_insert_requires_embeddings(self):
        from execution.law_rag.chunker import LawChunk
        store, conn, _ = _store()
        with pytest.raises(ValueError, match="no embedding"):
            store.insert_chunks_with_conn(conn, [LawChunk("BGB", None, None, "T", "b.xml")], "v1")

    def test_insert_nothing(self):
        store, conn, _ = _store()
        assert store.insert_chunks_with_conn(conn, [], "v1") == 0

    def test_delete_version_chunks(self):
        store, conn, cursor = _store()
        cursor.rowcount = 42
        assert store.delete_version_chunks_with_conn(conn, "v1") == 42
        sql, params = cursor.execute.call_args.args
        assert sql == "DELETE FROM law_chunks WHERE version_tag = %s"
        assert params == ("v1",)
        conn.commit.assert_not_called()


# ---------------------------------------------------------------------------
# Version resolution
# ---------------------------------------------------------------------------

class TestResolveVersion:

    def test_active_pointer_with_chunks(self):
        store, _, cursor = _store()
        cursor.fetchone.side_effect = [{"value": "2026-03-01"}, {"present": 1}]
        assert store.resolve_version_tag() == "2026-03-01"

    def test_stale_pointer_falls_back_to_greatest_tag(self):
        store, _, cursor = _store()
        cursor.fetchone.side_effect = [{"value": "2026-03-01"}, None, {"version_tag": "2026-02-01"}]
        assert store.resolve_version_tag() == "2026-02-01"
        fallback_sql = _executed_sql(cursor)[-1]
        assert "MAX(c.version_tag)" in fallback_sql
        assert "'failed'" in fallback_sql

    def test_failed_pointer_target_not_served(self):
        store, _, cursor = _store()
        # the pointer check finds no chunks of a non-failed version
        cursor.fetchone.side_effect = [{"value": "2026-03-01"}, None, {"version_tag": "2026-02-01"}]
        assert store.resolve_version_tag() == "2026-02-01"

        pointer_check = cursor.execute.call_args_list[1]
        assert "IS DISTINCT FROM 'failed'" in pointer_check.args[0]
        assert pointer_check.args[1] == ("2026-03-01",)

    def test_fallback_skips_loading_versions(self):
        store, _, cursor = _store()
        cursor.fetchone.side_effect = [None, {"version_tag": None}]
        store.resolve_version_tag()
        assert "NOT IN ('failed', 'loading')" in _executed_sql(cursor)[-1]

    def test_empty_corpus(self):
        store, _, cursor = _store()
        cursor.fetchone.side_effect = [None, {"version_tag": None}]
        assert store.resolve_version_tag() is None

    def test_get_active_version_tag(self):
        store, _, cursor = _store()
        cursor.fetchone.return_value = {"value": "v9"}
        assert store.get_active_version_tag() == "v9"
        assert cursor.execute.call_args.args[1] == ("active_version_tag",)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:

    ROW = {
        "chunk_id": 3, "version_tag": "v1", "law": "BUrlG", "section": "§ 7",
        "title": "Abgeltung", "text": "Text", "source": "burlg.xml", "score": 0.876543,
    }

    def test_maps_rows(self):
        store, _, cursor = _store()
        cursor.fetchall.return_value = [self.ROW]
        results = store.search([0.1, 0.2], "v1", top_k=6)
        assert len(results) == 1
        r = results[0]
        assert (r.law_code, r.section_label, r.origin, r.chunk_id) == ("BUrlG", "§ 7", "burlg.xml", 3)
        assert r.score == 0.8765

    def test_version_scoped_cosine_query(self):
        store, _, cursor = _store()
        cursor.fetchall.return_value = []
        store.search([0.1, 0.2], "v1", top_k=6)
        sql, params = cursor.execute.call_args.args
        assert "<=>" in sql
        assert "c.version_tag = %s" in sql
        assert "ANY" not in sql
        assert params == [[0.1, 0.2], "v1", [0.1, 0.2], 6]

    def test_law_code_restriction(self):
        store, _, cursor = _store()
        cursor.fetchall.return_value = []
        store.search([0.1], "v1", top_k=10, law_codes=["BUrlG", "BGB"])
        sql, params = cursor.execute.call_args.args
        assert "c.law = ANY(%s)" in sql
        assert params == [[0.1], "v1", ["BUrlG", "BGB"], [0.1], 10]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestCatalog:

    def test_list_law_titles(self):
        store, _, cursor = _store()
        cursor.fetchall.return_value = [
            {"law_code": "BGB", "title": "Schadensersatzpflicht"},
            {"law_code": " BUrlG ", "title": ""},
        ]
        assert store.list_law_titles("v1") == [("BGB", "Schadensersatzpflicht"), ("BUrlG", "")]
        sql, params = cursor.execute.call_args.args
        assert "GROUP BY law" in sql
        assert params == ("v1",)

    def test_replace_catalog_deletes_absent_laws(self):
        from execution.law_rag.vector_store import CatalogEntry
        store, conn, cursor = _store()
        entries = [CatalogEntry("BGB", "Schadensersatzpflicht", [0.1]), CatalogEntry("BUrlG", "", [0.2])]
        with patch("psycopg2.extras.execute_values") as mock_ev:
            assert store.replace_catalog_with_conn(conn, entries) == 2
        assert "ON CONFLICT (law_code)" in mock_ev.call_args.args[1]
        sql, params = cursor.execute.call_args.args
        assert sql.startswith("DELETE FROM law_catalog")
        assert params == (["BGB", "BUrlG"],)

    def test_search_catalog(self):
        store, _, cursor = _store()
        cursor.fetchall.return_value = [{"law_code": "BUrlG"}, {"law_code": None}, {"law_code": "BGB"}]
        assert store.search_catalog([0.1], top_n=3) == ["BUrlG", "BGB"]
        assert cursor.execute.call_args.args[1] == ([0.1], 3)


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------

class TestPruneVersions:

    def test_keeps_pointer_and_requested_version(self):
        store, conn, cursor = _store()
        cursor.fetchone.return_value = {"value": "2026-03-01"}
        cursor.fetchall.return_value = [{"version_tag": "2026-01-01"}]
        assert store.prune_versions("2026-04-01") == ["2026-01-01"]

        calls = cursor.execute.call_args_list
        assert calls[1].args[1] == (["2026-03-01", "2026-04-01"],)
        assert calls[2].args == ("DELETE FROM law_chunks WHERE version_tag = %s", ("2026-01-01",))
        assert "SET status = 'archived'" in calls[3].args[0]
        conn.commit.assert_called()
