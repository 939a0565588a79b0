"""Tests for resolve_client_key() and the HTTP rate limit middleware.

Covers:
- Untrusted peers: spoofed X-Forwarded-For is ignored.
- Trusted proxies: the chain is walked right to left, skipping trusted hops.
- Malformed or oversized chains fall back to the peer address.
- Middleware integration: limits apply per resolved client and exempt paths.
"""

from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.infra.security import InMemoryRateLimiter, resolve_client_key
from app.main import RateLimitMiddleware


def _make_request(client_host: str, xff: str | None = None) -> Request:
    headers: list[tuple[bytes, bytes]] = []
    if xff is not None:
        headers.append((b"x-forwarded-for", xff.encode()))
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/test",
        "headers": headers,
        "client": (client_host, 1234),
        "server": ("testserver", 80),
        "scheme": "http",
        "query_string": b"",
    }
    return Request(scope)


class _ForceClientIPMiddleware(BaseHTTPMiddleware):
    """Override the ASGI scope client address for testing."""

    def __init__(self, app, client_ip: str) -> None:
        super().__init__(app)
        self.client_ip = client_ip

    async def dispatch(self, request: Request, call_next):
        request.scope["client"] = (self.client_ip, 1234)
        return await call_next(request)


class _RateLimitTestSettings:
    def __init__(self, trusted: list[str], rate_limit_per_minute: int = 1) -> None:
        self.trust_proxy_headers = True
        self.trusted_proxy_ips = trusted
        self.rate_limit_per_minute = rate_limit_per_minute


def _build_app(peer_ip: str, trusted: list[str]) -> FastAPI:
    """Build a minimal app with RateLimitMiddleware and a forced client IP."""
    app = FastAPI()
    app_settings = _RateLimitTestSettings(trusted)
    limiter = InMemoryRateLimiter(app_settings.rate_limit_per_minute)
    app.add_middleware(RateLimitMiddleware, limiter=limiter, app_settings=app_settings)
    # Added last so it is outermost and RateLimitMiddleware sees the forced IP.
    app.add_middleware(_ForceClientIPMiddleware, client_ip=peer_ip)

    @app.get("/v1/projects/ping")
    def ping():
        return {"ok": True}

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    return app


class TestUntrustedPeer:
    def test_xff_ignored(self):
        request = _make_request("198.51.100.9", xff="203.0.113.1")
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "198.51.100.9"

    def test_trust_disabled_ignores_trusted_peer(self):
        request = _make_request("10.0.0.2", xff="203.0.113.1")
        assert resolve_client_key(request, False, ["10.0.0.0/8"]) == "10.0.0.2"

    def test_empty_trusted_list_never_trusts(self):
        request = _make_request("10.0.0.2", xff="203.0.113.1")
        assert resolve_client_key(request, True, []) == "10.0.0.2"


class TestTrustedProxy:
    def test_single_hop(self):
        request = _make_request("10.0.0.2", xff="203.0.113.1")
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "203.0.113.1"

    def test_rightmost_untrusted_hop_wins(self):
        request = _make_request("10.0.0.2", xff="198.51.100.77, 203.0.113.1, 10.0.0.5")
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "203.0.113.1"

    def test_all_trusted_hops_returns_leftmost(self):
        request = _make_request("10.0.0.2", xff="10.1.1.1, 10.2.2.2")
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "10.1.1.1"

    def test_malformed_hop_falls_back_to_peer(self):
        request = _make_request("10.0.0.2", xff="not-an-ip")
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "10.0.0.2"

    def test_oversized_chain_falls_back_to_peer(self):
        chain = ", ".join(f"203.0.113.{index}" for index in range(1, 30))
        request = _make_request("10.0.0.2", xff=chain)
        assert resolve_client_key(request, True, ["10.0.0.0/8"]) == "10.0.0.2"

    def test_ipv6_proxy(self):
        request = _make_request("fd00::1", xff="2001:db8::5")
        assert resolve_client_key(request, True, ["fd00::/8"]) == "2001:db8::5"


class TestRateLimitMiddleware:
    def test_spoofed_header_does_not_bypass_limit(self):
        client = TestClient(_build_app("198.51.100.9", ["10.0.0.0/8"]))

        first = client.get("/v1/projects/ping", headers={"X-Forwarded-For": "203.0.113.1"})
        second = client.get("/v1/projects/ping", headers={"X-Forwarded-For": "203.0.113.2"})

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["type"].endswith("rate-limit")

    def test_trusted_proxy_limits_per_forwarded_client(self):
        client = TestClient(_build_app("10.0.0.2", ["10.0.0.0/8"]))

        first = client.get("/v1/projects/ping", headers={"X-Forwarded-For": "203.0.113.1"})
        other = client.get("/v1/projects/ping", headers={"X-Forwarded-For": "203.0.113.2"})
        repeat = client.get("/v1/projects/ping", headers={"X-Forwarded-For": "203.0.113.1"})

        assert first.status_code == 200
        assert other.status_code == 200
        assert repeat.status_code == 429

    def test_health_is_exempt(self):
        client = TestClient(_build_app("198.51.100.9", []))

        statuses = [client.get("/healthz").status_code for _ in range(3)]

        assert statuses == [200, 200, 200]
