import asyncio
import json

import pytest
from structlog.testing import capture_logs

from conftest import BrokenRedis, FakeClock, FakeRedis
from trustpipe.engines.cache import VerificationCache, cache_key, subject_key
from trustpipe.engines.locks import SubjectLock
from trustpipe.engines.policy import VerificationType
from trustpipe.workers.metrics import MetricsRegistry


def test_cache_keys_are_namespaced() -> None:
    assert cache_key(VerificationType.SPAM_CHECK, "job-1") == "spam_check:job-1"
    assert cache_key("market_salary", subject_key("Engineer", "Berlin", None)) == "market_salary:Engineer:Berlin:"


def test_set_uses_the_type_ttl_by_default() -> None:
    redis = FakeRedis()
    cache = VerificationCache(redis)

    asyncio.run(cache.set(VerificationType.DUPLICATE_CHECK, "u:j", {"action": "allow"}))

    assert redis.ttls["duplicate_check:u:j"] == 3600
    assert json.loads(redis.store["duplicate_check:u:j"]) == {"action": "allow"}
    assert asyncio.run(cache.get(VerificationType.DUPLICATE_CHECK, "u:j")) == {"action": "allow"}


def test_custom_namespace_requires_a_ttl() -> None:
    cache = VerificationCache(FakeRedis())

    with pytest.raises(ValueError):
        asyncio.run(cache.set("request_status", "req-1", {"status": "completed"}))


def test_backend_failure_is_a_logged_miss() -> None:
    cache = VerificationCache(BrokenRedis())

    with capture_logs() as logs:
        value = asyncio.run(cache.get(VerificationType.SPAM_CHECK, "job-1"))
        stored = asyncio.run(cache.set(VerificationType.SPAM_CHECK, "job-1", {"x": 1}))

    assert value is None
    assert stored is False
    assert [entry["kind"] for entry in logs if entry["event"] == "Cache unavailable, treating as miss"] == ["cache", "cache"]


def test_corrupt_cache_entry_is_a_miss() -> None:
    redis = FakeRedis()
    redis.store["spam_check:job-1"] = "{not json"

    assert asyncio.run(VerificationCache(redis).get(VerificationType.SPAM_CHECK, "job-1")) is None


def test_lock_is_exclusive_and_released() -> None:
    redis = FakeRedis()
    clock = FakeClock()
    lock = SubjectLock(redis, ttl_seconds=60, wait_seconds=1.0, poll_seconds=0.5, clock=clock)

    async def scenario():
        async with lock.hold("salary_verification:job-1") as first:
            assert first is True
            assert redis.ttls["lock:salary_verification:job-1"] == 60
            async with lock.hold("salary_verification:job-1") as second:
                assert second is False
        return "lock:salary_verification:job-1" in redis.store

    still_held = asyncio.run(scenario())

    assert still_held is False
    assert clock.sleeps == [0.5, 0.5]


def test_lock_degrades_when_redis_is_down() -> None:
    lock = SubjectLock(BrokenRedis(), clock=FakeClock())

    async def scenario():
        async with lock.hold("company_verification:co-1") as acquired:
            return acquired

    assert asyncio.run(scenario()) is False


def test_backend_failures_are_counted_per_operation() -> None:
    registry = MetricsRegistry()
    cache = VerificationCache(BrokenRedis(), metrics=registry)

    asyncio.run(cache.get(VerificationType.SPAM_CHECK, "job-1"))
    asyncio.run(cache.get(VerificationType.SPAM_CHECK, "job-2"))
    asyncio.run(cache.set(VerificationType.SPAM_CHECK, "job-1", {"x": 1}))
    asyncio.run(cache.delete(VerificationType.SPAM_CHECK, "job-1"))

    assert registry.get("cache_errors", operation="get") == 2
    assert registry.get("cache_errors", operation="set") == 1
    assert registry.get("cache_errors", operation="delete") == 1


def test_lock_failures_are_counted() -> None:
    registry = MetricsRegistry()
    lock = SubjectLock(BrokenRedis(), clock=FakeClock(), metrics=registry)

    async def scenario():
        async with lock.hold("company_verification:co-1"):
            pass

    asyncio.run(scenario())

    assert registry.get("lock_errors", operation="acquire") == 1
    assert registry.total("cache_errors") == 0


def test_lock_release_failure_is_counted() -> None:
    class ReleaseFails(FakeRedis):
        async def eval(self, *args):
            raise ConnectionResetError("reset by peer")

    registry = MetricsRegistry()
    lock = SubjectLock(ReleaseFails(), clock=FakeClock(), metrics=registry)

    async def scenario():
        async with lock.hold("salary_verification:job-1") as acquired:
            return acquired

    assert asyncio.run(scenario()) is True
    assert registry.get("lock_errors", operation="release") == 1
