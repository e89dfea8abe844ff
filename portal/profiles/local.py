"""Local filesystem document store for development (fallback when Postgres is not configured)."""

from __future__ import annotations

import asyncio
import json
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from portal.auth.errors import StoreError


def _check_segment(value: str, what: str) -> str:
    v = (value or "").strip()
    if not v or v in (".", "..") or "/" in v or "\\" in v:
        raise StoreError(f"Invalid document {what}: {value!r}")
    return v


@dataclass
class LocalDocumentStore:
    """One JSON file per document: <base_dir>/<collection>/<key>.json."""

    base_dir: str = "./profiles"
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        """Ensure base directory exists."""
        self.base_dir = os.path.abspath(self.base_dir)
        Path(self.base_dir).mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str, key: str) -> Path:
        return Path(self.base_dir) / _check_segment(collection, "collection") / f"{_check_segment(key, 'key')}.json"

    def _read_sync(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read {path.name}: {e}") from e
        if not isinstance(data, dict):
            raise StoreError(f"Document {path.name} is not an object")
        return data

    def _merge_sync(self, path: Path, partial: Dict[str, Any]) -> None:
        with self._lock:
            doc = self._read_sync(path) or {}
            doc.update(partial)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".json.tmp")
                tmp.write_text(json.dumps(doc, sort_keys=True, indent=2), encoding="utf-8")
                tmp.replace(path)
            except (OSError, TypeError, ValueError) as e:
                raise StoreError(f"Failed to write {path.name}: {e}") from e

    async def read_document(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        path = self._path(collection, key)
        return await asyncio.to_thread(self._read_sync, path)

    async def merge_write_document(self, collection: str, key: str, partial: Dict[str, Any]) -> None:
        path = self._path(collection, key)
        await asyncio.to_thread(self._merge_sync, path, dict(partial))

    async def ensure_schema(self) -> bool:
        # Collections are created on first write; only the base directory is needed.
        base = Path(self.base_dir)
        if base.is_dir():
            return False
        await asyncio.to_thread(base.mkdir, parents=True, exist_ok=True)
        return True
