"""
Key-value storage backends.

Both backends store JSON documents under string keys ("session:<id>",
"sessions:list", "flashcards:deck:<id>", ...). The rest of the application
only sees get_json / set_json / delete and never knows which one is active.

  FileBackend   one JSON file per key under DATA_DIR ("session:ab12" →
                session-ab12.json), written atomically
  RedisBackend  one Redis string per key
"""

import asyncio
import json
import logging
import os
import re
import tempfile
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from generation.errors import StorageError

log = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9:_\-.]*$")


class StorageBackend:
    """Interface shared by the backends."""

    name = "base"

    async def get_json(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set_json(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError


# ─── File backend ──────────────────────────────────────────────────────────────

class FileBackend(StorageBackend):
    name = "file"

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def path_for(self, key: str) -> str:
        if not KEY_PATTERN.match(key) or ".." in key:
            raise StorageError(f"Invalid storage key '{key}'")
        return os.path.join(self.root, key.replace(":", "-") + ".json")

    def _read(self, path: str) -> Optional[Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt record {os.path.basename(path)}: {e}") from e
        except OSError as e:
            raise StorageError(f"Could not read {os.path.basename(path)}: {e}") from e

    def _write(self, path: str, value: Any) -> None:
        # Write to a temp file in the same directory, then swap it in
        try:
            os.makedirs(self.root, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(value, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StorageError(f"Could not write {os.path.basename(path)}: {e}") from e

    def _delete(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Could not delete {os.path.basename(path)}: {e}") from e

    async def get_json(self, key: str) -> Optional[Any]:
        return await asyncio.to_thread(self._read, self.path_for(key))

    async def set_json(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self._write, self.path_for(key), value)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, self.path_for(key))


# ─── Redis backend ─────────────────────────────────────────────────────────────

class RedisBackend(StorageBackend):
    name = "redis"

    def __init__(self, client: Optional[aioredis.Redis] = None):
        self._client = client

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            from storage.redis_client import get_redis
            self._client = get_redis()
        return self._client

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(key)
        except RedisError as e:
            raise StorageError(f"Redis read failed for {key}: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupt record {key}: {e}") from e

    async def set_json(self, key: str, value: Any) -> None:
        try:
            await self.client.set(key, json.dumps(value, ensure_ascii=False))
        except RedisError as e:
            raise StorageError(f"Redis write failed for {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(key)
        except RedisError as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e
