"""
Storage layer: one backend selected at startup by STORAGE_BACKEND.

  file   JSON files under DATA_DIR (default)
  redis  Redis at REDIS_URL
"""

import os
from typing import Optional

from storage.backends import FileBackend, RedisBackend, StorageBackend
from storage.session_store import SessionStore

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "file")
DATA_DIR = os.getenv("DATA_DIR", "./data")

_store: Optional[SessionStore] = None


def create_backend(kind: str = STORAGE_BACKEND, data_dir: str = DATA_DIR) -> StorageBackend:
    kind = (kind or "file").strip().lower()
    if kind == "redis":
        return RedisBackend()
    if kind == "file":
        return FileBackend(data_dir)
    raise ValueError(f"Unknown STORAGE_BACKEND '{kind}'. Use 'file' or 'redis'.")


def get_store() -> SessionStore:
    """FastAPI dependency – shared SessionStore for the configured backend."""
    global _store
    if _store is None:
        _store = SessionStore(create_backend())
    return _store
