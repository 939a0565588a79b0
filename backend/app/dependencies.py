from fastapi import Request

from app.domain.deliverables.watermark import WatermarkPipeline
from app.infra.db import UnitOfWork, resolve_unit_of_work
from app.infra.security import RateLimiter, create_rate_limiter
from app.infra.storage import StorageBackend, resolve_storage_backend
from app.infra.stripe_client import StripeClient, resolve_client
from app.settings import Settings, settings


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "app_settings", None) or settings


def get_unit_of_work(request: Request) -> UnitOfWork:
    return resolve_unit_of_work(request.app.state)


def get_storage(request: Request) -> StorageBackend:
    return resolve_storage_backend(request.app.state)


def get_stripe_client(request: Request) -> StripeClient:
    if getattr(request.app.state, "stripe_client", None):
        return request.app.state.stripe_client
    return resolve_client(request.app.state)


def get_webhook_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "webhook_rate_limiter", None)
    if limiter is None:
        app_settings = get_app_settings(request)
        limiter = create_rate_limiter(
            app_settings, app_settings.webhook_rate_limit_per_minute, namespace="stripe-webhook"
        )
        request.app.state.webhook_rate_limiter = limiter
    return limiter


def get_watermark_pipeline(request: Request) -> WatermarkPipeline:
    services = getattr(request.app.state, "services", None)
    pipeline = getattr(services, "watermark_pipeline", None)
    if pipeline is None:
        app_settings = get_app_settings(request)
        pipeline = WatermarkPipeline(
            text=app_settings.watermark_text,
            opacity=app_settings.watermark_opacity,
            timeout_seconds=app_settings.watermark_timeout_seconds,
        )
    return pipeline


def resource_base_url(request: Request) -> str:
    app_settings = get_app_settings(request)
    return (app_settings.public_base_url or str(request.base_url)).rstrip("/")
