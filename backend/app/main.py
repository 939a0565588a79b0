import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_RATE_LIMIT,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from app.api.routes_deliverables import router as deliverables_router
from app.api.routes_files import router as files_router
from app.api.routes_health import router as health_router
from app.api.routes_payments import router as payments_router
from app.api.routes_portal import router as portal_router
from app.api.routes_webhooks import WEBHOOK_PATH
from app.api.routes_webhooks import router as webhooks_router
from app.domain.errors import DomainError
from app.infra.db import dispose_engine, get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics, metrics
from app.infra.security import RateLimiter, resolve_client_key
from app.infra.tracing import configure_tracing, instrument_fastapi, shutdown_tracing
from app.services import build_app_services
from app.settings import settings

logger = logging.getLogger(__name__)


def _resolve_log_identity(request: Request) -> dict[str, str]:
    principal = getattr(request.state, "principal", None)
    if principal is None:
        return {}
    context = {"role": principal.role}
    if principal.is_admin:
        context["operator_id"] = principal.subject
    else:
        context["client_id"] = principal.subject
    return context


def _bucket_for_path(path: str) -> str:
    normalized = path or ""
    if normalized.startswith("/v1/admin"):
        return "admin"
    if normalized.startswith("/v1/deliverables"):
        return "deliverables"
    if normalized.startswith("/v1/projects"):
        return "projects"
    if normalized.startswith("/v1/files"):
        return "files"
    return "other"


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("app.request")
        start = time.time()
        request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
        if not request_id:
            request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)
        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("request_id", request_id)

        response = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            update_log_context(status_code=status_code, **_resolve_log_identity(request))
            latency_ms = int((time.time() - start) * 1000)
            update_log_context(latency_ms=latency_ms)
            request_logger.info("request", extra={"latency_ms": latency_ms})
            if response is not None:
                response.headers.setdefault("X-Request-ID", request_id)
            clear_log_context()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: FastAPI, metrics_client) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        route_label = "unmatched"
        start = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        except Exception:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_5xx(request.method, route_label)
            raise
        finally:
            route = request.scope.get("route")
            route_label = getattr(route, "path", route_label)
            self.metrics.record_http_latency(
                request.method, route_label, status_code, time.perf_counter() - start
            )
        if status_code >= 500:
            self.metrics.record_http_5xx(request.method, route_label)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client limit for the HTTP surface.

    The webhook endpoint has its own per-source limiter inside the ingress,
    which answers with the acknowledgement body the provider expects.
    """

    def __init__(self, app: FastAPI, limiter: RateLimiter, app_settings) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.app_settings = app_settings
        self.exempt_paths = {WEBHOOK_PATH, "/healthz", "/readyz", "/metrics"}

    async def dispatch(self, request: Request, call_next: Callable):
        if request.method == "OPTIONS":
            return await call_next(request)
        path = request.url.path
        normalized = path.rstrip("/") or "/"
        if path in self.exempt_paths or normalized in self.exempt_paths:
            return await call_next(request)

        client = resolve_client_key(
            request,
            trust_proxy_headers=self.app_settings.trust_proxy_headers,
            trusted_proxies=self.app_settings.trusted_proxy_ips,
        )
        if not await self.limiter.allow(client):
            bucket = _bucket_for_path(path)
            metrics.record_rate_limit_block(bucket)
            logger.warning(
                "rate_limit_blocked",
                extra={
                    "extra": {
                        "request_id": getattr(request.state, "request_id", None),
                        "bucket": bucket,
                        "limit_per_minute": self.app_settings.rate_limit_per_minute,
                    }
                },
            )
            return problem_details(
                request=request,
                status=429,
                title="Too Many Requests",
                detail="Rate limit exceeded",
                type_=PROBLEM_TYPE_RATE_LIMIT,
            )
        return await call_next(request)


def create_app(app_settings, *, services=None) -> FastAPI:
    configure_logging()
    if app_settings.tracing_enabled:
        configure_tracing(service_name=app_settings.app_name, environment=app_settings.app_env)
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        state_services = getattr(app.state, "services", None) or services
        app.state.services = state_services
        app.state.metrics = getattr(app.state, "metrics", None) or state_services.metrics
        app.state.storage_backend = getattr(app.state, "storage_backend", None) or state_services.storage
        app.state.stripe_client = getattr(app.state, "stripe_client", None) or state_services.stripe_client
        app.state.webhook_rate_limiter = (
            getattr(app.state, "webhook_rate_limiter", None) or state_services.webhook_rate_limiter
        )
        app.state.app_settings = getattr(app.state, "app_settings", app_settings)
        app.state.db_session_factory = getattr(app.state, "db_session_factory", None) or get_session_factory()
        logger.info(
            "app_started",
            extra={"extra": {"env": app_settings.app_env, "payment_environment": app_settings.payment_environment}},
        )
        yield
        await state_services.close()
        await dispose_engine()
        if app_settings.tracing_enabled:
            shutdown_tracing()

    app = FastAPI(title="Deliverable Release Engine", version="1.0.0", lifespan=lifespan)
    app.state.app_settings = app_settings

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware, metrics_client=metrics_client)
    app.add_middleware(RateLimitMiddleware, limiter=services.rate_limiter, app_settings=app_settings)
    app.add_middleware(RequestIdMiddleware)

    if app_settings.tracing_enabled:
        # Added last so the span wraps every middleware.
        instrument_fastapi(app)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
            code="validation_error",
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        if exc.status >= 500:
            logger.warning(
                "domain_error",
                extra={"extra": {"code": exc.code, "path": request.url.path}},
            )
        return problem_details(
            request=request,
            status=exc.status,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
            code=exc.code,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        identity_context = _resolve_log_identity(request)
        request_id = getattr(request.state, "request_id", None)
        error_type = type(exc).__name__
        update_log_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=500,
            error_type=error_type,
            **identity_context,
        )
        logger.exception(
            "unhandled_exception",
            extra={"request_id": request_id, "path": request.url.path, "error_type": error_type},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(webhooks_router)
    app.include_router(payments_router)
    app.include_router(deliverables_router)
    app.include_router(portal_router)
    app.include_router(files_router)
    if app_settings.metrics_enabled:
        from app.api.routes_metrics import router as metrics_router

        app.include_router(metrics_router)
    return app


app = create_app(settings)
