"""
Dataset Version Store

Tracks every ingestion run as a version row (loading -> active | failed,
active -> archived) and owns the single active-version pointer that retrieval
reads. Status transitions that belong to a run are written on the run's
connection so they commit or roll back together with its chunk writes.
"""

import logging
from typing import Optional
from dataclasses import dataclass
from datetime import datetime

from .vector_store import VectorStore, ACTIVE_VERSION_KEY

logger = logging.getLogger(__name__)


class VersionStatus:
    LOADING = "loading"
    ACTIVE = "active"
    FAILED = "failed"
    ARCHIVED = "archived"

    ALL = (LOADING, ACTIVE, FAILED, ARCHIVED)


@dataclass
class Version:
    """One ingestion run of the law corpus."""
    version_tag: str
    status: str
    source_url: Optional[str] = None
    imported_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "version_tag": self.version_tag,
            "status": self.status,
            "source_url": self.source_url,
            "imported_at": self.imported_at.isoformat() if self.imported_at else None,
        }


class VersionStore:
    """Version rows and the active pointer, on top of the chunk store's connections."""

    def __init__(self, store: VectorStore):
        self.store = store
        self.versions_table = store.config.versions_table
        self.meta_table = store.config.meta_table

    def begin_version(self, conn, version_tag: str, source_url: str = "") -> None:
        """Upsert the version as loading and reset imported_at (no commit)."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.versions_table} (version_tag, source_url, imported_at, status)
                VALUES (%s, %s, NOW(), %s)
                ON CONFLICT (version_tag) DO UPDATE SET
                    source_url = EXCLUDED.source_url,
                    imported_at = NOW(),
                    status = EXCLUDED.status
                """,
                (version_tag, source_url or None, VersionStatus.LOADING),
            )
        logger.info(f"Version {version_tag} loading")

    def commit_version(self, conn, version_tag: str) -> None:
        """
        Make version_tag the only active version and point retrieval at it.

        Archive, activate and repoint are issued on the caller's connection so
        they land in one transaction (no commit here).
        """
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.versions_table}
                SET status = %s
                WHERE status = %s AND version_tag <> %s
                """,
                (VersionStatus.ARCHIVED, VersionStatus.ACTIVE, version_tag),
            )
            archived = cur.rowcount
            cur.execute(
                f"UPDATE {self.versions_table} SET status = %s WHERE version_tag = %s",
                (VersionStatus.ACTIVE, version_tag),
            )
            cur.execute(
                f"""
                INSERT INTO {self.meta_table} (key, value, updated_at)
                VALUES (%s, %s, NOW())
                ON CONFLICT (key) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                """,
                (ACTIVE_VERSION_KEY, version_tag),
            )
        logger.info(f"Version {version_tag} active ({archived} archived)")

    def fail_version(self, version_tag: str) -> None:
        """Mark a version failed on its own connection, after the run rolled back."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self.versions_table} (version_tag, imported_at, status)
                    VALUES (%s, NOW(), %s)
                    ON CONFLICT (version_tag) DO UPDATE SET status = EXCLUDED.status
                    """,
                    (version_tag, VersionStatus.FAILED),
                )
            conn.commit()

        self.store._execute_with_retry(_op, "fail_version")
        logger.warning(f"Version {version_tag} marked failed")

    def list_versions(self) -> list[Version]:
        """All versions, newest import first."""
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(f"""
                SELECT version_tag, source_url, imported_at, status
                FROM {self.versions_table}
                ORDER BY imported_at DESC, version_tag DESC
                """)
                rows = cur.fetchall()
            conn.commit()
            return [_row_to_version(row) for row in rows]

        return self.store._execute_with_retry(_op, "list_versions")

    def get_version(self, version_tag: str) -> Optional[Version]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT version_tag, source_url, imported_at, status
                    FROM {self.versions_table}
                    WHERE version_tag = %s
                    """,
                    (version_tag,),
                )
                row = cur.fetchone()
            conn.commit()
            return _row_to_version(row) if row else None

        return self.store._execute_with_retry(_op, "get_version")

    def active_version_tag(self) -> Optional[str]:
        return self.store.get_active_version_tag()


def _row_to_version(row) -> Version:
    return Version(
        version_tag=row["version_tag"],
        status=row["status"],
        source_url=row["source_url"],
        imported_at=row["imported_at"],
    )
