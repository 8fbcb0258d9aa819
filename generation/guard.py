"""
Per-session generation guards.

A guard makes sure only one continue pass advances a given session at a
time. LocalSessionGuard covers a single process; RedisLeaseGuard holds a
short lease in Redis so several replicas share the same exclusion.
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from generation.errors import GenerationBusyError, StorageError

log = logging.getLogger(__name__)

GENERATION_LOCK = os.getenv("GENERATION_LOCK", "local")
# Longer than one slot can take: 2 shape attempts x 3 model calls x 30 s, plus backoff
GENERATION_LOCK_TTL_SECONDS = int(os.getenv("GENERATION_LOCK_TTL_SECONDS", "300"))


class SessionGuard:
    """Interface shared by the guard implementations."""

    async def acquire(self, session_id: str) -> bool:
        raise NotImplementedError

    async def release(self, session_id: str) -> None:
        raise NotImplementedError

    async def is_held(self, session_id: str) -> bool:
        raise NotImplementedError

    async def renew(self, session_id: str) -> None:
        """Extend a held guard before a slot starts; a no-op where nothing expires."""
        return None

    @asynccontextmanager
    async def hold(self, session_id: str):
        """Hold the guard for the block, or raise GenerationBusyError."""
        if not await self.acquire(session_id):
            raise GenerationBusyError(session_id)
        try:
            yield
        finally:
            await self.release(session_id)


class LocalSessionGuard(SessionGuard):
    """In-process guard: a set of session ids currently being advanced."""

    def __init__(self):
        self._held: Set[str] = set()

    async def acquire(self, session_id: str) -> bool:
        # No await between the check and the add, so this is atomic on the loop
        if session_id in self._held:
            return False
        self._held.add(session_id)
        return True

    async def release(self, session_id: str) -> None:
        self._held.discard(session_id)

    async def is_held(self, session_id: str) -> bool:
        return session_id in self._held


class RedisLeaseGuard(SessionGuard):
    """
    Cross-process guard backed by a Redis lease.

    acquire:  SET generation:lock:<id> <token> NX EX ttl
    renew:    EXPIRE the key again before each slot while it still holds our token
    release:  delete the key only if it still holds our token, so an expired
              lease re-acquired by another replica is left alone
    """

    def __init__(self, client: Optional[aioredis.Redis] = None, ttl_seconds: int = GENERATION_LOCK_TTL_SECONDS):
        self._client = client
        self.ttl_seconds = ttl_seconds
        self._tokens: Dict[str, str] = {}

    @property
    def client(self) -> aioredis.Redis:
        if self._client is None:
            from storage.redis_client import get_redis
            self._client = get_redis()
        return self._client

    @staticmethod
    def _key(session_id: str) -> str:
        return f"generation:lock:{session_id}"

    async def acquire(self, session_id: str) -> bool:
        token = uuid.uuid4().hex
        try:
            acquired = await self.client.set(self._key(session_id), token, nx=True, ex=self.ttl_seconds)
        except RedisError as e:
            raise StorageError(f"Could not acquire generation lease: {e}") from e
        if acquired:
            self._tokens[session_id] = token
        return bool(acquired)

    async def release(self, session_id: str) -> None:
        token = self._tokens.pop(session_id, None)
        if token is None:
            return
        key = self._key(session_id)
        try:
            if await self.client.get(key) == token:
                await self.client.delete(key)
        except RedisError as e:
            # The lease expires on its own after ttl_seconds
            log.warning(f"Could not release generation lease for {session_id}: {e}")

    async def is_held(self, session_id: str) -> bool:
        try:
            return bool(await self.client.exists(self._key(session_id)))
        except RedisError as e:
            raise StorageError(f"Could not read generation lease: {e}") from e

    async def renew(self, session_id: str) -> None:
        token = self._tokens.get(session_id)
        if token is None:
            return
        key = self._key(session_id)
        try:
            if await self.client.get(key) == token:
                await self.client.expire(key, self.ttl_seconds)
            else:
                log.warning(f"Generation lease for {session_id} expired and was taken over")
        except RedisError as e:
            log.warning(f"Could not renew generation lease for {session_id}: {e}")


def create_guard(kind: str = GENERATION_LOCK) -> SessionGuard:
    """Build the guard selected by GENERATION_LOCK ("local" or "redis")."""
    kind = (kind or "local").strip().lower()
    if kind == "redis":
        return RedisLeaseGuard()
    if kind == "local":
        return LocalSessionGuard()
    raise ValueError(f"Unknown GENERATION_LOCK '{kind}'. Use 'local' or 'redis'.")
