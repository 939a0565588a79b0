from __future__ import annotations

import inspect
import json
from typing import Any, Callable

import anyio
import stripe

from app.infra.stripe_resilience import stripe_circuit
from app.settings import settings


MUTATING_METHOD_PREFIXES: tuple[str, ...] = (
    "create_",
    "cancel_",
    "expire_",
    "refund_",
    "update_",
)

READ_ONLY_METHOD_PREFIXES: tuple[str, ...] = (
    "retrieve_",
    "list_",
    "verify_",
)


class WebhookSignatureError(Exception):
    """The webhook body could not be authenticated against the shared secret."""


def is_mutating_method(method_name: str) -> bool:
    if method_name.startswith(READ_ONLY_METHOD_PREFIXES):
        return False
    return method_name.startswith(MUTATING_METHOD_PREFIXES)


class StripeClient:
    def __init__(
        self,
        *,
        secret_key: str | None,
        webhook_secret: str | None,
        webhook_tolerance_seconds: int | None = None,
        stripe_sdk: Any | None = None,
    ) -> None:
        """Passing ``None`` for a credential falls back to global settings."""
        self.stripe = stripe_sdk or stripe
        self.secret_key = secret_key or settings.stripe_secret_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self.webhook_tolerance_seconds = (
            webhook_tolerance_seconds
            if webhook_tolerance_seconds is not None
            else settings.stripe_webhook_tolerance_seconds
        )

    def _stripe_request_timeout(self) -> float:
        timeout = stripe_circuit.timeout_seconds
        if timeout is None:
            return 10.0
        return max(0.01, timeout)

    async def _call(self, fn: Callable[..., Any], /, *args, **kwargs) -> Any:
        request_kwargs = dict(kwargs)
        try:
            signature = inspect.signature(fn)
            supports_timeout = any(
                parameter.kind == inspect.Parameter.VAR_KEYWORD or name == "timeout"
                for name, parameter in signature.parameters.items()
            )
        except (TypeError, ValueError):
            supports_timeout = True
        if supports_timeout:
            request_kwargs.setdefault("timeout", self._stripe_request_timeout())

        def _sync_call() -> Any:
            return fn(*args, **request_kwargs)

        return await stripe_circuit.call(lambda: anyio.to_thread.run_sync(_sync_call))

    async def create_checkout_session(
        self,
        *,
        amount_cents: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        product_name: str,
        metadata: dict[str, str] | None = None,
        customer_email: str | None = None,
        idempotency_key: str | None = None,
    ) -> Any:
        if not self.secret_key:
            raise ValueError("Stripe secret key not configured")

        self.stripe.api_key = self.secret_key
        payload: dict[str, Any] = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "line_items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {"name": product_name},
                        "unit_amount": amount_cents,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata or {},
            # Refund events arrive on the charge, so the correlation metadata
            # has to ride on the payment intent as well.
            "payment_intent_data": {"metadata": metadata or {}},
        }
        if customer_email:
            payload["customer_email"] = customer_email
        extra: dict[str, Any] = {}
        if idempotency_key:
            extra["idempotency_key"] = idempotency_key
        return await self._call(self.stripe.checkout.Session.create, **payload, **extra)

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Authenticate the raw body, then decode it.

        The signature check runs over the exact bytes received and uses Stripe's
        constant-time comparison; JSON decoding only happens once it passes.
        """
        if not self.webhook_secret:
            raise ValueError("Stripe webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe signature header")
        try:
            text = payload.decode("utf-8")
            self.stripe.WebhookSignature.verify_header(
                text,
                signature,
                self.webhook_secret,
                self.webhook_tolerance_seconds,
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
            raise WebhookSignatureError("Invalid Stripe signature") from exc
        return json.loads(text)


def resolve_client(app_state: Any) -> StripeClient:
    """Resolve the StripeClient for the current app.

    Priority: ``services.stripe_client``, then ``state.stripe_client``, then a
    new client built from settings and cached on the state.
    """
    state = getattr(app_state, "state", app_state)
    services = getattr(state, "services", None)
    if services is not None:
        client = getattr(services, "stripe_client", None)
        if client is not None:
            return client
    client = getattr(state, "stripe_client", None)
    if client is None:
        app_settings = getattr(state, "app_settings", None) or settings
        client = StripeClient(
            secret_key=app_settings.stripe_secret_key,
            webhook_secret=app_settings.stripe_webhook_secret,
            webhook_tolerance_seconds=app_settings.stripe_webhook_tolerance_seconds,
        )
        state.stripe_client = client
    return client


async def call_stripe_client_method(client: Any, method_name: str, /, *args, **kwargs) -> Any:
    method = getattr(client, method_name, None)
    if method is None:
        raise AttributeError(f"Stripe client missing method {method_name}")

    if is_mutating_method(method_name) and not kwargs.get("idempotency_key"):
        raise ValueError(
            f"Stripe mutation '{method_name}' requires idempotency_key to be provided"
        )

    result = method(*args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result
