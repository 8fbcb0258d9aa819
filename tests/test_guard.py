"""Tests for the per-session generation guards."""

import asyncio

import pytest

from generation.errors import GenerationBusyError, StorageError
from generation.guard import LocalSessionGuard, RedisLeaseGuard, create_guard

from conftest import FakeRedis


def _run(coro):
    return asyncio.run(coro)


class TestLocalGuard:
    def test_acquire_is_exclusive(self) -> None:
        guard = LocalSessionGuard()

        async def scenario():
            assert await guard.acquire("s1") is True
            assert await guard.acquire("s1") is False
            assert await guard.acquire("s2") is True
            await guard.release("s1")
            assert await guard.acquire("s1") is True

        _run(scenario())

    def test_hold_raises_busy(self) -> None:
        guard = LocalSessionGuard()

        async def scenario():
            async with guard.hold("s1"):
                assert await guard.is_held("s1")
                with pytest.raises(GenerationBusyError):
                    async with guard.hold("s1"):
                        pass
            assert not await guard.is_held("s1")

        _run(scenario())

    def test_hold_releases_on_error(self) -> None:
        guard = LocalSessionGuard()

        async def scenario():
            with pytest.raises(RuntimeError):
                async with guard.hold("s1"):
                    raise RuntimeError("boom")
            assert not await guard.is_held("s1")

        _run(scenario())


class TestRedisLeaseGuard:
    """Test the cross-replica lease."""

    def test_lease_uses_nx_and_ttl(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis, ttl_seconds=30)
        assert _run(guard.acquire("s1")) is True
        assert fake_redis.ttls["generation:lock:s1"] == 30
        assert _run(guard.is_held("s1")) is True

    def test_second_replica_is_refused(self, fake_redis: FakeRedis) -> None:
        first = RedisLeaseGuard(fake_redis)
        second = RedisLeaseGuard(fake_redis)
        assert _run(first.acquire("s1")) is True
        assert _run(second.acquire("s1")) is False
        _run(first.release("s1"))
        assert _run(second.acquire("s1")) is True

    def test_release_leaves_foreign_lease(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis)
        _run(guard.acquire("s1"))
        # Lease expired and was taken over by another replica
        fake_redis.data["generation:lock:s1"] = "someone-else"
        _run(guard.release("s1"))
        assert fake_redis.data["generation:lock:s1"] == "someone-else"

    def test_release_without_acquire_is_noop(self, fake_redis: FakeRedis) -> None:
        _run(RedisLeaseGuard(fake_redis).release("s1"))

    def test_outage_on_acquire(self, fake_redis: FakeRedis) -> None:
        fake_redis.fail = True
        with pytest.raises(StorageError):
            _run(RedisLeaseGuard(fake_redis).acquire("s1"))

    def test_outage_on_release_is_logged(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis)
        _run(guard.acquire("s1"))
        fake_redis.fail = True
        _run(guard.release("s1"))

    def test_renew_resets_ttl(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis, ttl_seconds=30)
        _run(guard.acquire("s1"))
        fake_redis.ttls["generation:lock:s1"] = 2
        _run(guard.renew("s1"))
        assert fake_redis.ttls["generation:lock:s1"] == 30

    def test_renew_leaves_foreign_lease(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis, ttl_seconds=30)
        _run(guard.acquire("s1"))
        fake_redis.data["generation:lock:s1"] = "someone-else"
        fake_redis.ttls["generation:lock:s1"] = 5
        _run(guard.renew("s1"))
        assert fake_redis.ttls["generation:lock:s1"] == 5
        assert fake_redis.expire_calls == []

    def test_renew_without_acquire_is_noop(self, fake_redis: FakeRedis) -> None:
        _run(RedisLeaseGuard(fake_redis).renew("s1"))
        assert fake_redis.expire_calls == []

    def test_outage_on_renew_is_logged(self, fake_redis: FakeRedis) -> None:
        guard = RedisLeaseGuard(fake_redis)
        _run(guard.acquire("s1"))
        fake_redis.fail = True
        _run(guard.renew("s1"))

    def test_default_ttl_outlasts_a_slot(self) -> None:
        # 2 shape attempts x 3 model calls x 30 s timeout, plus backoff
        assert RedisLeaseGuard(FakeRedis()).ttl_seconds > 2 * 3 * 30 + 6


class TestCreateGuard:
    def test_kinds(self) -> None:
        assert isinstance(create_guard("local"), LocalSessionGuard)
        assert isinstance(create_guard("Redis"), RedisLeaseGuard)

    def test_unknown(self) -> None:
        with pytest.raises(ValueError):
            create_guard("zookeeper")
