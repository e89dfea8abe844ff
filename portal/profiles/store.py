from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from portal.profiles.config import StoreConfig, build_postgres_dsn, load_store_config


class DocumentStore(Protocol):
    """
    Minimal document store interface.

    Writes are partial merges: keys present in `partial` overwrite stored keys, other
    stored keys are kept (last write wins per key). Failures raise `StoreError`.
    """

    async def read_document(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None if it does not exist."""

    async def merge_write_document(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        """Create the document or merge `partial` into it."""

    async def ensure_schema(self) -> bool:
        """Create whatever the backend needs before first use. True when anything was created."""


def build_store(cfg: Optional[StoreConfig] = None) -> DocumentStore:
    """
    Build the configured store.

    PROFILE_STORE=postgres requires a Postgres DSN; anything else uses local files.
    """
    cfg = cfg or load_store_config()
    if cfg.backend == "postgres":
        dsn = build_postgres_dsn(cfg)
        if not dsn:
            raise ValueError("PROFILE_STORE=postgres but Postgres is not configured (POSTGRES_DSN or POSTGRES_*)")
        from portal.profiles.postgres import PostgresDocumentStore

        return PostgresDocumentStore(dsn=dsn)

    from portal.profiles.local import LocalDocumentStore

    return LocalDocumentStore(base_dir=cfg.local_dir)


async def prepare_store(cfg: Optional[StoreConfig] = None) -> str:
    """
    Make the configured store ready for use and describe what happened.

    Shared by `main.py migrate` and API startup (DB_AUTO_MIGRATE=1). Raises
    `StoreError` when the backend is unreachable and ValueError when it is
    misconfigured.
    """
    cfg = cfg or load_store_config()
    store = build_store(cfg)
    created = await store.ensure_schema()
    return f"{cfg.backend} profile store {'initialized' if created else 'already initialized'}"
