import asyncio
import logging
import time
from collections import defaultdict, deque
from ipaddress import ip_address, ip_network
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
from starlette.requests import Request


logger = logging.getLogger("app.rate_limit")


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    """Per-process sliding window counter.

    Good enough to bound abuse on a single instance; counts are not shared
    between workers.
    """

    def __init__(
        self,
        limit: int,
        *,
        window_seconds: int = 60,
        cleanup_minutes: int = 10,
    ) -> None:
        self.limit = max(1, int(limit))
        self.window_seconds = max(1, int(window_seconds))
        self.cleanup_seconds = max(self.window_seconds, int(cleanup_minutes * 60))
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_sweep = 0.0
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = time.monotonic()
            self._sweep(now)
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return False
            hits.append(now)
            return True

    async def reset(self) -> None:
        async with self._lock:
            self._hits.clear()
            self._last_sweep = 0.0

    async def close(self) -> None:
        return None

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < 60:
            return
        stale_before = now - self.cleanup_seconds
        for key in [key for key, hits in self._hits.items() if not hits or hits[-1] < stale_before]:
            del self._hits[key]
        self._last_sweep = now


SLIDING_WINDOW_LUA = r'''
local limit = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local ttl_seconds = tonumber(ARGV[3])

local clock = redis.call('TIME')
local now_ms = (clock[1] * 1000) + math.floor(clock[2] / 1000)

redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - window_ms)
if redis.call('ZCARD', KEYS[1]) >= limit then
  return 0
end

local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now_ms, tostring(now_ms) .. ':' .. tostring(seq))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
redis.call('EXPIRE', KEYS[2], ttl_seconds)
return 1
'''


class RedisRateLimiter:
    """Sliding window shared by every instance through Redis.

    When Redis is unreachable the limiter fails open onto an in-memory window
    for ``fail_open_seconds`` and then probes Redis again.
    """

    def __init__(
        self,
        redis_url: str,
        limit: int,
        *,
        namespace: str = "default",
        window_seconds: int = 60,
        cleanup_minutes: int = 10,
        fail_open_seconds: int = 300,
        redis_client: redis.Redis | None = None,
    ) -> None:
        self.limit = max(1, int(limit))
        self.namespace = namespace
        self.window_seconds = max(1, int(window_seconds))
        self.ttl_seconds = max(self.window_seconds + 2, int(cleanup_minutes * 60))
        self.fail_open_seconds = max(1, fail_open_seconds)
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self._script_sha: str | None = None
        self._fallback = InMemoryRateLimiter(
            limit, window_seconds=window_seconds, cleanup_minutes=cleanup_minutes
        )
        self._fail_open_until = 0.0

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        if now < self._fail_open_until:
            return await self._fallback.allow(key)
        try:
            return bool(await self._run_script(self._key(key), self._key(key) + ":seq"))
        except RedisError as exc:
            self._fail_open_until = now + self.fail_open_seconds
            await self._fallback.reset()
            logger.warning(
                "rate_limiter_fail_open",
                extra={"extra": {"namespace": self.namespace, "reason": type(exc).__name__}},
            )
            return await self._fallback.allow(key)

    async def reset(self) -> None:
        try:
            async for redis_key in self.redis.scan_iter(match=f"rate-limit:{self.namespace}:*", count=100):
                await self.redis.delete(redis_key)
        except RedisError:
            logger.warning("rate_limiter_reset_failed", extra={"extra": {"namespace": self.namespace}})
        await self._fallback.reset()

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limiter_close_failed", extra={"extra": {"namespace": self.namespace}})

    def _key(self, key: str) -> str:
        return f"rate-limit:{self.namespace}:{key}"

    async def _run_script(self, set_key: str, seq_key: str) -> int:
        args = (self.limit, self.window_seconds * 1000, self.ttl_seconds)
        if self._script_sha:
            try:
                return await self.redis.evalsha(self._script_sha, 2, set_key, seq_key, *args)
            except ResponseError as exc:
                if "NOSCRIPT" not in str(exc):
                    raise
        self._script_sha = await self.redis.script_load(SLIDING_WINDOW_LUA)
        return await self.redis.evalsha(self._script_sha, 2, set_key, seq_key, *args)


def create_rate_limiter(
    app_settings,
    limit: int | None = None,
    *,
    namespace: str = "default",
    window_seconds: int = 60,
) -> RateLimiter:
    resolved_limit = limit or app_settings.rate_limit_per_minute
    if app_settings.rate_limit_backend == "redis" and app_settings.redis_url:
        return RedisRateLimiter(
            app_settings.redis_url,
            resolved_limit,
            namespace=namespace,
            window_seconds=window_seconds,
            cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
            fail_open_seconds=app_settings.rate_limit_fail_open_seconds,
        )
    return InMemoryRateLimiter(
        resolved_limit,
        window_seconds=window_seconds,
        cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
    )


_MAX_FORWARDED_HOPS = 20


def _in_networks(host: str, networks: list[str]) -> bool:
    try:
        address = ip_address(host)
    except ValueError:
        return False
    for network in networks:
        try:
            if address in ip_network(network, strict=False):
                return True
        except ValueError:
            continue
    return False


def resolve_client_key(request: Request, trust_proxy_headers: bool, trusted_proxies: list[str]) -> str:
    """Address used to key per-client rate limits.

    ``X-Forwarded-For`` is only honoured when the direct peer is a trusted
    proxy; the header is walked right to left and the first hop that is not a
    trusted proxy wins.
    """
    peer = request.client.host if request.client else "unknown"
    if not trust_proxy_headers or not _in_networks(peer, trusted_proxies):
        return peer

    header = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in header.split(",") if hop.strip()]
    if not hops or len(hops) > _MAX_FORWARDED_HOPS:
        return peer
    for hop in reversed(hops):
        try:
            ip_address(hop)
        except ValueError:
            return peer
        if not _in_networks(hop, trusted_proxies):
            return hop
    return hops[0]
