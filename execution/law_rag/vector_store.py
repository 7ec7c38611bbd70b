"""
Law Chunk Store with PostgreSQL + pgvector

Persists statute chunks, ingestion versions, the active-version pointer and
the per-law catalog. Provides cosine similarity search over the chunks of one
version, optionally restricted to a set of law codes.

The embedding column is created with the dimension observed at setup time and
detected from the live schema afterwards; nothing assumes a fixed dimension.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager
from datetime import datetime

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)

ACTIVE_VERSION_KEY = "active_version_tag"


class EmbeddingDimensionError(Exception):
    """Raised when vectors do not match the dimension of the stored column."""


@dataclass
class VectorStoreConfig:
    """Configuration for the law chunk store."""
    connection_string: Optional[str] = None
    chunk_table: str = "law_chunks"
    versions_table: str = "law_dataset_versions"
    meta_table: str = "law_dataset_meta"
    catalog_table: str = "law_catalog"
    index_lists: int = 100  # IVFFlat index parameter
    # Connection pooling settings
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True
    # Every query is bounded
    connect_timeout: int = 10  # seconds
    statement_timeout_ms: int = 15000


@dataclass
class SearchResult:
    """A single retrieved chunk with its cosine similarity."""
    law_code: str
    section_label: Optional[str]
    title: Optional[str]
    body_text: str
    origin: str
    score: float
    chunk_id: Optional[int] = None
    version_tag: Optional[str] = None

    def dedup_key(self) -> tuple:
        """Identity used when merging result lists."""
        return (
            self.law_code or "",
            self.section_label or "",
            self.title or "",
            (self.body_text or "")[:300],
        )

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "law_code": self.law_code,
            "section_label": self.section_label,
            "title": self.title,
            "body_text": self.body_text,
            "origin": self.origin,
            "score": self.score,
            "version_tag": self.version_tag,
        }


@dataclass
class CatalogEntry:
    """One row of the per-law catalog."""
    law_code: str
    title: str
    embedding: list[float]
    alt_title: str = ""
    updated_at: Optional[datetime] = None


class VectorStore:
    """
    PostgreSQL store for the law corpus.

    Features:
    - Cosine similarity search scoped to one ingestion version
    - Optional law-code restriction for two-stage retrieval
    - Batch insert with execute_values
    - Caller-managed transactions via transaction() and *_with_conn methods
    """

    def __init__(self, config: Optional[VectorStoreConfig] = None):
        """
        Initialize the store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or VectorStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("DATABASE_URL") or
            os.getenv("POSTGRES_URL") or
            "postgresql://localhost:5432/law_rag"
        )

    def _connect_kwargs(self) -> dict:
        return {
            "cursor_factory": psycopg2.extras.RealDictCursor,
            "connect_timeout": self.config.connect_timeout,
            "options": f"-c statement_timeout={self.config.statement_timeout_ms}",
        }

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    **self._connect_kwargs(),
                )
                conn = self._pool.getconn()
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(self._connection_string, **self._connect_kwargs())
                self._conn.autocommit = False
                conn = self._conn
                logger.info("Connected to PostgreSQL with pgvector (single connection)")

            try:
                with conn.cursor() as cur:
                    cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
                conn.commit()
            finally:
                self._release_connection(conn)

        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if self._pool:
            return self._pool.getconn()

        if self._conn is not None and self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()

        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _ensure_connection(self):
        """Ensure we have a connection (pool or single) and return it."""
        if not self._conn and not self._pool:
            self.connect()

        try:
            return self._get_connection()
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            logger.warning("Database error in _ensure_connection, retrying after reconnect...")
            self.connect()
            return self._get_connection()

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
        """
        conn = self._ensure_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    @contextmanager
    def transaction(self):
        """
        One transaction scope: commit on success, rollback on any error.

        Usage:
            with store.transaction() as conn:
                store.insert_chunks_with_conn(conn, chunks)
        """
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                self._safe_rollback(conn)
                raise

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            pass

    def _execute_with_retry(self, operation, label="db_operation"):
        """Execute a DB operation with one retry on stale connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.
        """
        for attempt in range(2):
            conn = self._ensure_connection()
            try:
                result = operation(conn)
                self._release_connection(conn)
                return result
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                self._safe_rollback(conn)
                self._release_connection(conn)
                if attempt == 0:
                    logger.warning(f"{label}: stale conn, reconnecting: {e}")
                    self.connect()
                    continue
                raise
            except Exception:
                self._safe_rollback(conn)
                self._release_connection(conn)
                raise

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Schema
    # =========================================================================

    def detect_embedding_dimensions(self, table: Optional[str] = None) -> Optional[int]:
        """Read N from the vector(N) type of table.embedding, or None if absent."""
        table = table or self.config.chunk_table
        sql = r"""
        SELECT (regexp_match(format_type(a.atttypid, a.atttypmod), 'vector\((\d+)\)'))[1] AS dim
        FROM pg_attribute a
        JOIN pg_class c ON c.oid = a.attrelid
        WHERE c.relname = %s
          AND a.attname = 'embedding'
          AND a.attnum > 0
          AND NOT a.attisdropped
        LIMIT 1
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (table,))
                row = cur.fetchone()
            conn.commit()
            if not row or row["dim"] is None:
                return None
            return int(row["dim"])

        return self._execute_with_retry(_op, "detect_embedding_dimensions")

    def initialize_schema(self, embedding_dimensions: int) -> int:
        """
        Create tables and indexes if they don't exist.

        Args:
            embedding_dimensions: Dimension reported by the embedding model

        Returns:
            The dimension of the chunk embedding column

        Raises:
            EmbeddingDimensionError: the existing column has another dimension
        """
        existing = self.detect_embedding_dimensions()
        if existing is not None and existing != embedding_dimensions:
            raise EmbeddingDimensionError(
                f"{self.config.chunk_table}.embedding is vector({existing}) but the "
                f"embedding model returns {embedding_dimensions} dimensions"
            )

        chunks = self.config.chunk_table
        schema_sql = f"""
        CREATE TABLE IF NOT EXISTS {chunks} (
            id BIGSERIAL PRIMARY KEY,
            version_tag TEXT NOT NULL DEFAULT 'legacy',
            law TEXT NOT NULL,
            section TEXT,
            title TEXT,
            text TEXT NOT NULL,
            source TEXT NOT NULL,
            embedding VECTOR({int(embedding_dimensions)}) NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS {chunks}_embedding_idx
            ON {chunks}
            USING ivfflat (embedding vector_cosine_ops)
            WITH (lists = {self.config.index_lists});
        CREATE INDEX IF NOT EXISTS {chunks}_law_idx ON {chunks} (law);
        CREATE INDEX IF NOT EXISTS {chunks}_section_idx ON {chunks} (section);
        CREATE INDEX IF NOT EXISTS {chunks}_version_idx ON {chunks} (version_tag);

        CREATE TABLE IF NOT EXISTS {self.config.versions_table} (
            version_tag TEXT PRIMARY KEY,
            source_url TEXT,
            imported_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            status TEXT NOT NULL CHECK (status IN ('loading', 'active', 'failed', 'archived'))
        );

        CREATE TABLE IF NOT EXISTS {self.config.meta_table} (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(schema_sql)
            conn.commit()
            logger.info(f"Schema initialized (VECTOR({embedding_dimensions}))")
            return int(embedding_dimensions)

        return self._execute_with_retry(_op, "initialize_schema")

    def ensure_catalog_table(self) -> int:
        """
        Create the law catalog with the chunk column's dimension.

        The catalog is derived data: a catalog built for another dimension is
        dropped and recreated rather than mixed.
        """
        chunk_dim = self.detect_embedding_dimensions()
        if chunk_dim is None:
            raise EmbeddingDimensionError(
                f"{self.config.chunk_table}.embedding not found; initialize the schema first"
            )

        catalog = self.config.catalog_table
        catalog_dim = self.detect_embedding_dimensions(catalog)

        def _op(conn):
            with conn.cursor() as cur:
                if catalog_dim is not None and catalog_dim != chunk_dim:
                    logger.warning(
                        f"{catalog} is VECTOR({catalog_dim}), chunks are VECTOR({chunk_dim}); rebuilding table"
                    )
                    cur.execute(f"DROP TABLE {catalog}")
                cur.execute(f"""
                CREATE TABLE IF NOT EXISTS {catalog} (
                    law_code TEXT PRIMARY KEY,
                    title TEXT,
                    alt_title TEXT,
                    embedding VECTOR({chunk_dim}),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                );
                CREATE INDEX IF NOT EXISTS {catalog}_embedding_idx
                    ON {catalog} USING ivfflat (embedding vector_cosine_ops);
                """)
            conn.commit()
            return chunk_dim

        return self._execute_with_retry(_op, "ensure_catalog_table")

    # =========================================================================
    # Chunk writes (caller manages the transaction)
    # =========================================================================

    def insert_chunks_with_conn(self, conn, chunks: list, version_tag: str) -> int:
        """
        Insert embedded chunks using an existing connection (no commit/rollback).

        Args:
            conn: An existing psycopg2 connection (caller manages transaction)
            chunks: LawChunk objects with embeddings attached
            version_tag: Version the chunks belong to
        """
        if not chunks:
            return 0

        missing = [c for c in chunks if not c.embedding]
        if missing:
            raise ValueError(f"{len(missing)} chunks have no embedding")

        from psycopg2.extras import execute_values

        sql = f"""
        INSERT INTO {self.config.chunk_table}
            (version_tag, law, section, title, text, source, embedding)
        VALUES %s
        """
        values = [
            (
                version_tag,
                c.law_code,
                c.section_label,
                c.title,
                c.body_text,
                c.origin_path,
                list(c.embedding),
            )
            for c in chunks
        ]

        with conn.cursor() as cur:
            execute_values(
                cur,
                sql,
                values,
                template="(%s, %s, %s, %s, %s, %s, %s::vector)",
                page_size=500,
            )
        logger.debug(f"Inserted {len(chunks)} chunks into version {version_tag}")
        return len(chunks)

    def delete_version_chunks_with_conn(self, conn, version_tag: str) -> int:
        """Delete every chunk of a version (no commit/rollback)."""
        with conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {self.config.chunk_table} WHERE version_tag = %s",
                (version_tag,),
            )
            deleted = cur.rowcount
        logger.info(f"Deleted {deleted} existing chunks of version {version_tag}")
        return deleted

    def count_chunks(self, version_tag: str) -> int:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT COUNT(*) AS n FROM {self.config.chunk_table} WHERE version_tag = %s",
                    (version_tag,),
                )
                row = cur.fetchone()
            conn.commit()
            return int(row["n"]) if row else 0

        return self._execute_with_retry(_op, "count_chunks")

    # =========================================================================
    # Reads
    # =========================================================================

    def get_active_version_tag(self) -> Optional[str]:
        """Read the active-version pointer."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT value FROM {self.config.meta_table} WHERE key = %s LIMIT 1",
                    (ACTIVE_VERSION_KEY,),
                )
                row = cur.fetchone()
            conn.commit()
            return row["value"] if row else None

        return self._execute_with_retry(_op, "get_active_version_tag")

    def resolve_version_tag(self) -> Optional[str]:
        """
        Version that queries should read.

        The pointer's version if it has chunks and did not fail; otherwise the
        greatest version tag with chunks that is neither failed nor still
        loading; None for an empty corpus.
        """
        chunks = self.config.chunk_table
        versions = self.config.versions_table

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT value FROM {self.config.meta_table} WHERE key = %s LIMIT 1",
                    (ACTIVE_VERSION_KEY,),
                )
                row = cur.fetchone()
                active = row["value"] if row else None

                if active:
                    cur.execute(f"""
                    SELECT 1 AS present
                    FROM {chunks} c
                    LEFT JOIN {versions} v ON v.version_tag = c.version_tag
                    WHERE c.version_tag = %s
                      AND v.status IS DISTINCT FROM 'failed'
                    LIMIT 1
                    """, (active,))
                    if cur.fetchone():
                        conn.commit()
                        return active

                cur.execute(f"""
                SELECT MAX(c.version_tag) AS version_tag
                FROM {chunks} c
                LEFT JOIN {versions} v ON v.version_tag = c.version_tag
                WHERE COALESCE(v.status, 'active') NOT IN ('failed', 'loading')
                """)
                row = cur.fetchone()
            conn.commit()

            fallback = row["version_tag"] if row else None
            if fallback:
                logger.warning(
                    f"Active version {active!r} has no servable chunks, falling back to {fallback}"
                )
            return fallback

        return self._execute_with_retry(_op, "resolve_version_tag")

    def search(
        self,
        query_embedding: list[float],
        version_tag: str,
        top_k: int = 6,
        law_codes: Optional[list[str]] = None,
    ) -> list[SearchResult]:
        """
        Semantic search using cosine distance, best first.

        Args:
            query_embedding: Query embedding vector
            version_tag: Version whose chunks are searched
            top_k: Number of results to return
            law_codes: Optional law codes restricting the search
        """
        filters = ["c.version_tag = %s"]
        filter_params = [version_tag]
        if law_codes:
            filters.append("c.law = ANY(%s)")
            filter_params.append(list(law_codes))

        sql = f"""
        SELECT
            c.id AS chunk_id,
            c.version_tag,
            c.law,
            c.section,
            c.title,
            c.text,
            c.source,
            1 - (c.embedding <=> %s::vector) AS score
        FROM {self.config.chunk_table} c
        WHERE {' AND '.join(filters)}
        ORDER BY c.embedding <=> %s::vector
        LIMIT %s
        """
        params = [list(query_embedding)] + filter_params + [list(query_embedding), top_k]

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [
                SearchResult(
                    law_code=row["law"],
                    section_label=row["section"],
                    title=row["title"],
                    body_text=row["text"],
                    origin=row["source"],
                    score=round(float(row["score"]), 4),
                    chunk_id=row["chunk_id"],
                    version_tag=row["version_tag"],
                )
                for row in rows
            ]

        return self._execute_with_retry(_op, "search")

    # =========================================================================
    # Law catalog
    # =========================================================================

    def list_law_titles(self, version_tag: str) -> list[tuple[str, str]]:
        """Distinct law codes of a version with their greatest non-empty title."""
        sql = f"""
        SELECT
            law AS law_code,
            COALESCE(MAX(NULLIF(btrim(title), '')), '') AS title
        FROM {self.config.chunk_table}
        WHERE version_tag = %s
          AND law IS NOT NULL
          AND btrim(law) <> ''
        GROUP BY law
        ORDER BY law
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (version_tag,))
                rows = cur.fetchall()
            conn.commit()
            return [(row["law_code"].strip(), row["title"]) for row in rows]

        return self._execute_with_retry(_op, "list_law_titles")

    def replace_catalog_with_conn(self, conn, entries: list[CatalogEntry]) -> int:
        """Upsert catalog rows and delete rows of laws not in entries (no commit)."""
        from psycopg2.extras import execute_values

        catalog = self.config.catalog_table
        with conn.cursor() as cur:
            if entries:
                execute_values(
                    cur,
                    f"""
                    INSERT INTO {catalog} (law_code, title, alt_title, embedding, updated_at)
                    VALUES %s
                    ON CONFLICT (law_code) DO UPDATE SET
                        title = EXCLUDED.title,
                        alt_title = EXCLUDED.alt_title,
                        embedding = EXCLUDED.embedding,
                        updated_at = NOW()
                    """,
                    [(e.law_code, e.title, e.alt_title, list(e.embedding)) for e in entries],
                    template="(%s, %s, %s, %s::vector, NOW())",
                )
            cur.execute(
                f"DELETE FROM {catalog} WHERE NOT (law_code = ANY(%s))",
                ([e.law_code for e in entries],),
            )
            removed = cur.rowcount
        if removed:
            logger.info(f"Removed {removed} catalog rows of laws no longer present")
        return len(entries)

    def search_catalog(self, query_embedding: list[float], top_n: int = 3) -> list[str]:
        """Law codes whose catalog embedding is nearest to the query."""
        sql = f"""
        SELECT law_code
        FROM {self.config.catalog_table}
        ORDER BY embedding <=> %s::vector
        LIMIT %s
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, (list(query_embedding), top_n))
                rows = cur.fetchall()
            conn.commit()
            return [row["law_code"] for row in rows if row["law_code"]]

        return self._execute_with_retry(_op, "search_catalog")

    # =========================================================================
    # Retention
    # =========================================================================

    def prune_versions(self, keep_version_tag: str) -> list[str]:
        """
        Delete chunks of every version except keep_version_tag and the version
        named by the active pointer; mark pruned versions archived.

        Returns:
            The pruned version tags
        """
        versions = self.config.versions_table

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT value FROM {self.config.meta_table} WHERE key = %s",
                    (ACTIVE_VERSION_KEY,),
                )
                row = cur.fetchone()
                protected = {keep_version_tag}
                if row and row["value"]:
                    protected.add(row["value"])

                cur.execute(
                    f"SELECT version_tag FROM {versions} WHERE NOT (version_tag = ANY(%s))",
                    (sorted(protected),),
                )
                pruned = [r["version_tag"] for r in cur.fetchall()]
                for tag in pruned:
                    cur.execute(
                        f"DELETE FROM {self.config.chunk_table} WHERE version_tag = %s", (tag,)
                    )
                    cur.execute(
                        f"UPDATE {versions} SET status = 'archived' "
                        f"WHERE version_tag = %s AND status <> 'failed'",
                        (tag,),
                    )
            conn.commit()
            logger.info(f"Pruned {len(pruned)} old versions (kept {sorted(protected)})")
            return pruned

        return self._execute_with_retry(_op, "prune_versions")
