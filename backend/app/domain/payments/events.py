"""Typed view over verified Stripe webhook payloads.

Stripe delivers loosely shaped JSON; ingress turns it into one of the event
classes below so dispatch can match on the type instead of probing dicts.
Anything we do not handle becomes :class:`UnknownEvent`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.domain.payments import statuses


class MalformedEventError(ValueError):
    pass


class StripeEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any] = Field(default_factory=dict)


class StripeEventEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    livemode: bool = False
    data: StripeEventData = Field(default_factory=StripeEventData)


def _metadata(payload_object: dict[str, Any]) -> dict[str, str]:
    metadata = payload_object.get("metadata") or {}
    if not isinstance(metadata, dict):
        return {}
    return {str(key): str(value) for key, value in metadata.items() if value is not None}


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("id")
    text = str(value).strip() if value is not None else ""
    return text or None


@dataclass(frozen=True)
class _TaggedEvent:
    event_id: str
    event_type: str
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def project_public_id(self) -> str | None:
        return self.metadata.get(statuses.METADATA_PROJECT_PUBLIC_ID) or None

    @property
    def environment(self) -> str | None:
        return self.metadata.get(statuses.METADATA_ENVIRONMENT) or None

    @property
    def invoice_id(self) -> str | None:
        return self.metadata.get(statuses.METADATA_INVOICE_ID) or None


@dataclass(frozen=True)
class CheckoutSessionCompleted(_TaggedEvent):
    session_id: str | None = None
    payment_intent_id: str | None = None
    amount_total: int | None = None
    currency: str | None = None


@dataclass(frozen=True)
class CheckoutSessionExpired(_TaggedEvent):
    session_id: str | None = None


@dataclass(frozen=True)
class PaymentIntentFailed(_TaggedEvent):
    payment_intent_id: str | None = None
    error_message: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class ChargeRefunded(_TaggedEvent):
    charge_id: str | None = None
    payment_intent_id: str | None = None
    amount: int | None = None
    amount_refunded: int | None = None
    fully_refunded: bool = False


@dataclass(frozen=True)
class UnknownEvent(_TaggedEvent):
    pass


WebhookEvent = Union[
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    PaymentIntentFailed,
    ChargeRefunded,
    UnknownEvent,
]


def _checkout_completed(envelope: StripeEventEnvelope, obj: dict[str, Any]) -> WebhookEvent:
    return CheckoutSessionCompleted(
        event_id=envelope.id,
        event_type=envelope.type,
        metadata=_metadata(obj),
        session_id=_optional_str(obj.get("id")),
        payment_intent_id=_optional_str(obj.get("payment_intent")),
        amount_total=obj.get("amount_total"),
        currency=_optional_str(obj.get("currency")),
    )


def _checkout_expired(envelope: StripeEventEnvelope, obj: dict[str, Any]) -> WebhookEvent:
    return CheckoutSessionExpired(
        event_id=envelope.id,
        event_type=envelope.type,
        metadata=_metadata(obj),
        session_id=_optional_str(obj.get("id")),
    )


def _payment_failed(envelope: StripeEventEnvelope, obj: dict[str, Any]) -> WebhookEvent:
    last_error = obj.get("last_payment_error") or {}
    if not isinstance(last_error, dict):
        last_error = {}
    return PaymentIntentFailed(
        event_id=envelope.id,
        event_type=envelope.type,
        metadata=_metadata(obj),
        payment_intent_id=_optional_str(obj.get("id")),
        error_message=_optional_str(last_error.get("message")),
        error_code=_optional_str(last_error.get("code")),
    )


def _charge_refunded(envelope: StripeEventEnvelope, obj: dict[str, Any]) -> WebhookEvent:
    amount = obj.get("amount")
    amount_refunded = obj.get("amount_refunded")
    fully_refunded = bool(obj.get("refunded"))
    if not fully_refunded and isinstance(amount, int) and isinstance(amount_refunded, int):
        fully_refunded = amount > 0 and amount_refunded >= amount
    return ChargeRefunded(
        event_id=envelope.id,
        event_type=envelope.type,
        metadata=_metadata(obj),
        charge_id=_optional_str(obj.get("id")),
        payment_intent_id=_optional_str(obj.get("payment_intent")),
        amount=amount,
        amount_refunded=amount_refunded,
        fully_refunded=fully_refunded,
    )


_PARSERS: dict[str, Callable[[StripeEventEnvelope, dict[str, Any]], WebhookEvent]] = {
    statuses.EVENT_CHECKOUT_COMPLETED: _checkout_completed,
    statuses.EVENT_CHECKOUT_EXPIRED: _checkout_expired,
    statuses.EVENT_PAYMENT_FAILED: _payment_failed,
    statuses.EVENT_CHARGE_REFUNDED: _charge_refunded,
}


def parse_event(payload: Any) -> WebhookEvent:
    """Build the typed event for an already verified payload."""
    try:
        envelope = StripeEventEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEventError("Webhook payload is not a valid event envelope") from exc

    parser = _PARSERS.get(envelope.type)
    if parser is None:
        return UnknownEvent(
            event_id=envelope.id,
            event_type=envelope.type,
            metadata=_metadata(envelope.data.object),
        )
    return parser(envelope, envelope.data.object)
