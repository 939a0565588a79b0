"""Webhook ingress for Stripe payment events.

Order of operations is fixed: authenticate the raw bytes, rate limit the
sender, decode into a typed event, short-circuit replays, filter foreign
environments, then dispatch. Response bodies are minimal status tokens; any
failure inside the payment engine becomes a 500 so Stripe re-delivers.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from fastapi import status

from app.domain.payments import ledger
from app.domain.payments import service as payment_service
from app.domain.payments.events import (
    ChargeRefunded,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    MalformedEventError,
    PaymentIntentFailed,
    UnknownEvent,
    WebhookEvent,
    parse_event,
)
from app.infra.db import UnitOfWork
from app.infra.metrics import metrics
from app.infra.security import RateLimiter
from app.infra.stripe_client import WebhookSignatureError, call_stripe_client_method

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_UNHANDLED = "unhandled"
OUTCOME_WRONG_ENVIRONMENT = "wrong_environment"
OUTCOME_LOGGED = "logged"


@dataclass(frozen=True)
class IngressResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _ack(outcome: str) -> IngressResponse:
    metrics.record_webhook(outcome)
    return IngressResponse(status.HTTP_200_OK, {"received": True, "status": outcome})


def _reject(status_code: int, error: str) -> IngressResponse:
    metrics.record_webhook_error(error)
    return IngressResponse(status_code, {"error": error})


def _outcome_token(outcome: payment_service.PaymentOutcome) -> str:
    if outcome.unmatched:
        return OUTCOME_UNMATCHED
    if outcome.reason == payment_service.REASON_LOGGED:
        return OUTCOME_LOGGED
    if outcome.skipped:
        return OUTCOME_SKIPPED
    return OUTCOME_PROCESSED


class WebhookIngress:
    def __init__(
        self,
        *,
        stripe_client: Any,
        rate_limiter: RateLimiter,
        uow: UnitOfWork,
        environment: str,
    ) -> None:
        self._stripe_client = stripe_client
        self._rate_limiter = rate_limiter
        self._uow = uow
        self._environment = environment

    async def handle(self, raw_body: bytes, signature: str | None, source_key: str) -> IngressResponse:
        try:
            payload = await call_stripe_client_method(
                self._stripe_client, "verify_webhook", raw_body, signature
            )
        except WebhookSignatureError as exc:
            logger.warning(
                "stripe_webhook_invalid_signature",
                extra={"extra": {"source": source_key, "reason": str(exc)}},
            )
            return _reject(status.HTTP_401_UNAUTHORIZED, "invalid_signature")
        except json.JSONDecodeError:
            logger.warning("stripe_webhook_malformed", extra={"extra": {"source": source_key}})
            return _reject(status.HTTP_400_BAD_REQUEST, "malformed_event")
        except ValueError:
            logger.error("stripe_webhook_disabled")
            return _reject(status.HTTP_503_SERVICE_UNAVAILABLE, "webhook_disabled")

        if not await self._rate_limiter.allow(source_key):
            logger.warning("stripe_webhook_rate_limited", extra={"extra": {"source": source_key}})
            return _reject(status.HTTP_429_TOO_MANY_REQUESTS, "rate_limited")

        try:
            event = parse_event(payload)
        except MalformedEventError:
            logger.warning("stripe_webhook_malformed", extra={"extra": {"source": source_key}})
            return _reject(status.HTTP_400_BAD_REQUEST, "malformed_event")

        log_extra = {"event_id": event.event_id, "event_type": event.event_type}
        try:
            if await ledger.has_processed(self._uow, event.event_id):
                logger.info("stripe_webhook_duplicate", extra={"extra": log_extra})
                return _ack(OUTCOME_ALREADY_PROCESSED)

            if event.environment and event.environment != self._environment:
                logger.info(
                    "stripe_webhook_wrong_environment",
                    extra={"extra": {**log_extra, "environment": event.environment}},
                )
                return _ack(OUTCOME_WRONG_ENVIRONMENT)

            outcome = await self._dispatch(event, hashlib.sha256(raw_body).hexdigest())
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "stripe_webhook_error",
                extra={"extra": {**log_extra, "reason": type(exc).__name__}},
            )
            return _reject(status.HTTP_500_INTERNAL_SERVER_ERROR, "retry")

        return _ack(outcome)

    async def _dispatch(self, event: WebhookEvent, payload_hash: str) -> str:
        match event:
            case CheckoutSessionCompleted():
                outcome = await payment_service.apply_checkout_completed(
                    self._uow, event, payload_hash=payload_hash
                )
            case ChargeRefunded():
                outcome = await payment_service.apply_refund(self._uow, event, payload_hash=payload_hash)
            case CheckoutSessionExpired():
                outcome = await payment_service.record_checkout_expired(
                    self._uow, event, payload_hash=payload_hash
                )
            case PaymentIntentFailed():
                outcome = await payment_service.record_payment_failed(
                    self._uow, event, payload_hash=payload_hash
                )
            case UnknownEvent():
                logger.info(
                    "stripe_webhook_unhandled",
                    extra={"extra": {"event_id": event.event_id, "event_type": event.event_type}},
                )
                return OUTCOME_UNHANDLED
            case _:
                raise TypeError(f"Unroutable webhook event {type(event).__name__}")
        return _outcome_token(outcome)
