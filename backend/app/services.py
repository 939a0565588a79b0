from __future__ import annotations

from dataclasses import dataclass

from app.domain.deliverables.watermark import WatermarkPipeline
from app.infra.metrics import Metrics, configure_metrics
from app.infra.security import RateLimiter, create_rate_limiter
from app.infra.storage import StorageBackend, new_storage_backend
from app.infra.stripe_client import StripeClient


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    storage: StorageBackend
    stripe_client: StripeClient
    rate_limiter: RateLimiter
    webhook_rate_limiter: RateLimiter
    watermark_pipeline: WatermarkPipeline
    metrics: Metrics

    async def close(self) -> None:
        await self.rate_limiter.close()
        await self.webhook_rate_limiter.close()


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        storage=new_storage_backend(app_settings),
        stripe_client=StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
            webhook_tolerance_seconds=app_settings.stripe_webhook_tolerance_seconds,
        ),
        rate_limiter=create_rate_limiter(app_settings, namespace="http"),
        webhook_rate_limiter=create_rate_limiter(
            app_settings,
            app_settings.webhook_rate_limit_per_minute,
            namespace="stripe-webhook",
        ),
        watermark_pipeline=WatermarkPipeline(
            text=app_settings.watermark_text,
            opacity=app_settings.watermark_opacity,
            timeout_seconds=app_settings.watermark_timeout_seconds,
        ),
        metrics=metrics_client,
    )
