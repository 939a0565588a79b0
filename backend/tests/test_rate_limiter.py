import asyncio
import fnmatch
import time

import anyio
import pytest
from redis.exceptions import RedisError, ResponseError

from app.infra.security import InMemoryRateLimiter, RedisRateLimiter, create_rate_limiter
from app.settings import Settings


class FakeRedis:
    def __init__(self) -> None:
        self._scripts: dict[str, str] = {}
        self._zsets: dict[str, dict[str, int]] = {}
        self._sequences: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self.evalsha_calls = 0
        self.closed = False

    async def script_load(self, script: str) -> str:
        sha = f"sha{len(self._scripts) + 1}"
        self._scripts[sha] = script
        return sha

    async def evalsha(self, sha: str, numkeys: int, *args):
        if sha not in self._scripts:
            raise ResponseError("NOSCRIPT No matching script")
        self.evalsha_calls += 1
        return await self._execute_script(numkeys, *args)

    async def scan_iter(self, match: str | None = None, count: int | None = None):  # noqa: ARG002
        keys = set(self._zsets) | set(self._sequences)
        for key in sorted(keys):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def delete(self, *keys: str):
        removed = 0
        for key in keys:
            removed += int(self._zsets.pop(key, None) is not None)
            removed += int(self._sequences.pop(key, None) is not None)
        return removed

    async def aclose(self):
        self.closed = True

    async def _execute_script(self, numkeys: int, *args):
        async with self._lock:
            set_key, seq_key = args[:numkeys]
            limit, window_ms, _ttl_seconds = (int(value) for value in args[numkeys:])

            now_ms = int(time.time() * 1000)
            zset = self._zsets.setdefault(set_key, {})
            for member, score in list(zset.items()):
                if score <= now_ms - window_ms:
                    zset.pop(member, None)
            if len(zset) >= limit:
                return 0

            sequence = self._sequences.get(seq_key, 0) + 1
            self._sequences[seq_key] = sequence
            zset[f"{now_ms}:{sequence}"] = now_ms
            return 1


@pytest.mark.anyio
async def test_inmemory_rate_limiter_blocks_after_limit():
    limiter = InMemoryRateLimiter(2, cleanup_minutes=1)

    assert await limiter.allow("203.0.113.5")
    assert await limiter.allow("203.0.113.5")
    assert not await limiter.allow("203.0.113.5")
    assert await limiter.allow("203.0.113.6")


@pytest.mark.anyio
async def test_inmemory_rate_limiter_window_slides():
    limiter = InMemoryRateLimiter(1, window_seconds=1)

    assert await limiter.allow("source")
    assert not await limiter.allow("source")
    await anyio.sleep(1.05)
    assert await limiter.allow("source")


@pytest.mark.anyio
async def test_inmemory_rate_limiter_reset_clears_counts():
    limiter = InMemoryRateLimiter(1)
    assert await limiter.allow("source")

    await limiter.reset()

    assert await limiter.allow("source")


@pytest.mark.anyio
async def test_redis_rate_limiter_blocks_after_limit():
    fake_redis = FakeRedis()
    limiter = RedisRateLimiter("redis://localhost:6379/0", 1, namespace="stripe-webhook", redis_client=fake_redis)

    assert await limiter.allow("203.0.113.7")
    assert not await limiter.allow("203.0.113.7")
    assert fake_redis.evalsha_calls == 2

    await limiter.reset()
    assert await limiter.allow("203.0.113.7")

    await limiter.close()
    assert fake_redis.closed


@pytest.mark.anyio
async def test_redis_rate_limiter_is_atomic_under_concurrency():
    limiter = RedisRateLimiter("redis://localhost:6379/0", 1, redis_client=FakeRedis())
    results: list[bool] = []

    async def make_request(start_event: anyio.Event):
        await start_event.wait()
        results.append(await limiter.allow("203.0.113.8"))

    start_event = anyio.Event()
    async with anyio.create_task_group() as tg:
        tg.start_soon(make_request, start_event)
        tg.start_soon(make_request, start_event)
        await anyio.sleep(0)
        start_event.set()

    assert sorted(results) == [False, True]


@pytest.mark.anyio
async def test_redis_rate_limiter_reloads_flushed_script():
    fake_redis = FakeRedis()
    limiter = RedisRateLimiter("redis://localhost:6379/0", 5, redis_client=fake_redis)
    assert await limiter.allow("source")

    fake_redis._scripts.clear()

    assert await limiter.allow("source")
    assert fake_redis.evalsha_calls == 2


@pytest.mark.anyio
async def test_redis_rate_limiter_fails_open_to_memory():
    class BrokenRedis(FakeRedis):
        async def evalsha(self, sha: str, numkeys: int, *args):  # noqa: ARG002
            raise RedisError("boom")

    limiter = RedisRateLimiter(
        "redis://localhost:6379/0", 2, redis_client=BrokenRedis(), fail_open_seconds=5
    )

    assert await limiter.allow("source")
    assert await limiter.allow("source")
    assert not await limiter.allow("source")


@pytest.mark.anyio
async def test_redis_rate_limiter_probes_again_after_fail_open_window(monkeypatch):
    class FlakyRedis(FakeRedis):
        def __init__(self) -> None:
            super().__init__()
            self.unhealthy = True

        async def evalsha(self, sha: str, numkeys: int, *args):
            if self.unhealthy:
                raise RedisError("down")
            return await super().evalsha(sha, numkeys, *args)

    flaky = FlakyRedis()
    limiter = RedisRateLimiter("redis://localhost:6379/0", 5, redis_client=flaky, fail_open_seconds=1)
    assert await limiter.allow("source")

    flaky.unhealthy = False
    limiter._fail_open_until = 0.0

    assert await limiter.allow("source")
    assert flaky.evalsha_calls == 1


def test_create_rate_limiter_selects_backend():
    memory = create_rate_limiter(Settings(rate_limit_backend="memory"), 7, namespace="api")
    redis_backed = create_rate_limiter(
        Settings(rate_limit_backend="redis", redis_url="redis://localhost:6379/0"), 7, namespace="api"
    )

    assert isinstance(memory, InMemoryRateLimiter)
    assert memory.limit == 7
    assert isinstance(redis_backed, RedisRateLimiter)
    assert redis_backed.namespace == "api"
