from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from portal.auth.errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA_SQL = Path(__file__).with_name("schema.sql")

# Serializes concurrent schema setup across processes; released at commit.
SCHEMA_LOCK_KEY = 0x706F7274616C  # "portal"


def _connect(dsn: str):
    import psycopg  # type: ignore[import-not-found]

    return psycopg.connect(dsn)


class PostgresDocumentStore:
    """
    JSONB document store.

    Merge-writes use `data || excluded.data`, so keys in the partial document win and
    the rest of the stored document is kept.
    """

    def __init__(self, *, dsn: str) -> None:
        self.dsn = dsn

    def _read_sync(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        import psycopg  # type: ignore[import-not-found]

        try:
            with _connect(self.dsn) as conn:
                row = conn.execute(
                    "SELECT data FROM documents WHERE collection = %s AND key = %s;",
                    (collection, key),
                ).fetchone()
        except psycopg.Error as e:
            raise StoreError(f"Failed to read {collection}/{key}: {e.__class__.__name__}") from e
        if not row:
            return None
        data = row[0]
        return data if isinstance(data, dict) else None

    def _merge_sync(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        import psycopg  # type: ignore[import-not-found]

        try:
            with _connect(self.dsn) as conn:
                with conn.transaction():
                    conn.execute(
                        """
                        INSERT INTO documents(collection, key, data)
                        VALUES (%s, %s, %s::jsonb)
                        ON CONFLICT (collection, key)
                        DO UPDATE SET data = documents.data || EXCLUDED.data, updated_at = now();
                        """,
                        (collection, key, json.dumps(partial, sort_keys=True)),
                    )
        except psycopg.Error as e:
            raise StoreError(f"Failed to write {collection}/{key}: {e.__class__.__name__}") from e
        logger.debug("Merged %d field(s) into %s/%s", len(partial), collection, key)

    async def read_document(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_sync, collection, key)

    async def merge_write_document(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._merge_sync, collection, key, dict(partial))

    def _ensure_schema_sync(self) -> bool:
        import psycopg  # type: ignore[import-not-found]

        sql = SCHEMA_SQL.read_text(encoding="utf-8")
        try:
            with _connect(self.dsn) as conn:
                with conn.transaction():
                    conn.execute("SELECT pg_advisory_xact_lock(%s);", (SCHEMA_LOCK_KEY,))
                    row = conn.execute("SELECT to_regclass('documents') IS NULL;").fetchone()
                    conn.execute(sql)
        except psycopg.Error as e:
            raise StoreError(f"Failed to prepare documents schema: {e.__class__.__name__}") from e
        created = bool(row and row[0])
        if created:
            logger.info("Created documents table")
        return created

    async def ensure_schema(self) -> bool:
        """Create the documents table and its indexes if missing. True when the table was created."""
        return await asyncio.to_thread(self._ensure_schema_sync)
