import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from app.dependencies import get_app_settings, get_stripe_client, get_unit_of_work, get_webhook_rate_limiter
from app.domain.payments.ingress import WebhookIngress
from app.infra.db import UnitOfWork
from app.infra.security import RateLimiter, resolve_client_key
from app.settings import Settings

router = APIRouter()
logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/v1/webhooks/stripe"


@router.post(WEBHOOK_PATH, include_in_schema=False)
async def stripe_webhook(
    request: Request,
    uow: UnitOfWork = Depends(get_unit_of_work),
    rate_limiter: RateLimiter = Depends(get_webhook_rate_limiter),
    app_settings: Settings = Depends(get_app_settings),
) -> JSONResponse:
    # The signature covers the exact bytes on the wire, so nothing may parse
    # the body before the ingress has verified it.
    raw_body = await request.body()
    ingress = WebhookIngress(
        stripe_client=get_stripe_client(request),
        rate_limiter=rate_limiter,
        uow=uow,
        environment=app_settings.payment_environment,
    )
    source_key = resolve_client_key(
        request,
        trust_proxy_headers=app_settings.trust_proxy_headers,
        trusted_proxies=app_settings.trusted_proxy_ips,
    )
    result = await ingress.handle(raw_body, request.headers.get("Stripe-Signature"), source_key)
    return JSONResponse(status_code=result.status_code, content=result.body)
