"""Payment state engine.

Owns the UNPAID -> PAID -> REFUNDED lifecycle of a project. Every mutation runs
inside a single unit of work that first locks the project row, then writes the
ledger entry, then re-checks the payment status under that lock before changing
anything, so duplicate deliveries and concurrent manual overrides can never
produce a second transition.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.errors import (
    NotFoundError,
    RefundedProjectError,
    ValidationDomainError,
)
from app.domain.invoices import statuses as invoice_statuses
from app.domain.invoices.db_models import Invoice
from app.domain.payments import ledger, statuses
from app.domain.payments.events import (
    ChargeRefunded,
    CheckoutSessionCompleted,
    CheckoutSessionExpired,
    PaymentIntentFailed,
)
from app.domain.payments.ledger import LedgerConflictError, LedgerEntry
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.infra.db import UnitOfWork
from app.infra.metrics import metrics
from app.infra.stripe_client import call_stripe_client_method
from app.infra.stripe_idempotency import make_stripe_idempotency_key
from app.settings import Settings

logger = logging.getLogger(__name__)

MIN_MANUAL_REASON_LENGTH = 5
STRIPE_LINK_HOSTS = {"buy.stripe.com", "checkout.stripe.com"}

REASON_DUPLICATE = "duplicate_event"
REASON_ALREADY_PAID = "already_paid"
REASON_REFUNDED = "project_refunded"
REASON_ALREADY_REFUNDED = "already_refunded"
REASON_NOT_PAID = "not_paid"
REASON_PARTIAL_REFUND = "partial_refund"
REASON_MISSING_TOKEN = "missing_correlation_token"
REASON_PROJECT_NOT_FOUND = "project_not_found"
REASON_LOGGED = "logged"
REASON_ALREADY_RECONCILED = "already_reconciled"


@dataclass(frozen=True)
class PaymentOutcome:
    project_id: str | None
    skipped: bool = False
    unmatched: bool = False
    reason: str | None = None
    payment_status: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _safe_get(source: object, key: str, default: Any | None = None) -> Any:
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


async def _lock_project(session: AsyncSession, project_id: str) -> Project | None:
    stmt = select(Project).where(Project.project_id == project_id).with_for_update()
    return await session.scalar(stmt)


async def _lock_project_by_public_id(session: AsyncSession, public_id: str) -> Project | None:
    stmt = select(Project).where(Project.public_id == public_id).with_for_update()
    return await session.scalar(stmt)


async def _lock_project_by_payment_intent(
    session: AsyncSession, payment_intent_id: str
) -> Project | None:
    stmt = (
        select(Project)
        .where(Project.stripe_payment_intent_id == payment_intent_id)
        .with_for_update()
    )
    return await session.scalar(stmt)


async def _find_project_id(
    session: AsyncSession, public_id: str | None, payment_intent_id: str | None
) -> str | None:
    if public_id:
        project_id = await session.scalar(
            select(Project.project_id).where(Project.public_id == public_id)
        )
        if project_id:
            return project_id
    if payment_intent_id:
        return await session.scalar(
            select(Project.project_id).where(Project.stripe_payment_intent_id == payment_intent_id)
        )
    return None


async def _update_invoice(
    session: AsyncSession,
    project: Project,
    invoice_id: str | None,
    *,
    from_statuses: set[str],
    to_status: str,
    paid_at: datetime | None,
) -> None:
    if not invoice_id:
        return
    invoice = await session.scalar(
        select(Invoice)
        .where(Invoice.invoice_id == invoice_id, Invoice.project_id == project.project_id)
        .with_for_update()
    )
    if invoice is None:
        logger.warning(
            "payment_invoice_not_found",
            extra={"extra": {"invoice_id": invoice_id, "project_id": project.project_id}},
        )
        return
    if invoice.status not in from_statuses:
        return
    invoice.status = to_status
    invoice.paid_at = paid_at


def _mark_paid(
    project: Project,
    *,
    provider: str,
    event_id: str,
    now: datetime,
    checkout_session_id: str | None = None,
    payment_intent_id: str | None = None,
) -> None:
    project.payment_status = project_statuses.PAYMENT_PAID
    project.payment_provider = provider
    project.paid_at = now
    project.refunded_at = None
    project.last_payment_event_id = event_id
    project.last_update_at = now
    if checkout_session_id:
        project.stripe_checkout_session_id = checkout_session_id
    if payment_intent_id:
        project.stripe_payment_intent_id = payment_intent_id


def _mark_refunded(project: Project, *, event_id: str, now: datetime) -> None:
    project.payment_status = project_statuses.PAYMENT_REFUNDED
    project.paid_at = None
    project.refunded_at = now
    project.last_payment_event_id = event_id
    project.last_update_at = now


def _event_metadata(event: CheckoutSessionCompleted | ChargeRefunded, outcome: str) -> dict[str, Any]:
    metadata: dict[str, Any] = dict(event.metadata)
    metadata["outcome"] = outcome
    if event.payment_intent_id:
        metadata["stripe_payment_intent_id"] = event.payment_intent_id
    if isinstance(event, CheckoutSessionCompleted) and event.session_id:
        metadata["stripe_session_id"] = event.session_id
    if isinstance(event, ChargeRefunded) and event.charge_id:
        metadata["stripe_charge_id"] = event.charge_id
    return metadata


def _unmatched_entry(
    event: CheckoutSessionCompleted | ChargeRefunded, reason: str, payload_hash: str | None
) -> LedgerEntry:
    return LedgerEntry(
        provider=project_statuses.PROVIDER_STRIPE,
        event_id=event.event_id,
        event_type=event.event_type,
        status=statuses.LEDGER_UNMATCHED,
        error_msg=reason,
        metadata=_event_metadata(event, reason),
        payload_hash=payload_hash,
    )


async def _record_unmatched(
    session: AsyncSession,
    event: CheckoutSessionCompleted | ChargeRefunded,
    reason: str,
    payload_hash: str | None,
) -> PaymentOutcome:
    result = await ledger.record_and_check(session, _unmatched_entry(event, reason, payload_hash))
    return PaymentOutcome(
        project_id=None,
        skipped=result.already_processed,
        unmatched=True,
        reason=reason,
    )


def _log_outcome(event_type: str, event_id: str, outcome: PaymentOutcome) -> None:
    if outcome.unmatched:
        if not outcome.skipped:
            metrics.record_unmatched_event(event_type)
        logger.warning(
            "payment_event_unmatched",
            extra={"extra": {"event_id": event_id, "event_type": event_type, "reason": outcome.reason}},
        )
        return
    if outcome.skipped:
        logger.info(
            "payment_event_skipped",
            extra={
                "extra": {
                    "event_id": event_id,
                    "event_type": event_type,
                    "project_id": outcome.project_id,
                    "reason": outcome.reason,
                }
            },
        )
        return
    logger.info(
        "payment_status_changed",
        extra={
            "extra": {
                "event_id": event_id,
                "event_type": event_type,
                "project_id": outcome.project_id,
                "payment_status": outcome.payment_status,
            }
        },
    )


async def _run(uow: UnitOfWork, event_type: str, event_id: str, fn) -> PaymentOutcome:
    try:
        outcome = await uow.with_transaction(fn)
    except LedgerConflictError:
        outcome = PaymentOutcome(project_id=None, skipped=True, reason=REASON_DUPLICATE)
    _log_outcome(event_type, event_id, outcome)
    return outcome


async def apply_checkout_completed(
    uow: UnitOfWork, event: CheckoutSessionCompleted, *, payload_hash: str | None = None
) -> PaymentOutcome:
    public_id = event.project_public_id

    async def _apply(session: AsyncSession) -> PaymentOutcome:
        if not public_id:
            return await _record_unmatched(session, event, REASON_MISSING_TOKEN, payload_hash)
        project = await _lock_project_by_public_id(session, public_id)
        if project is None:
            return await _record_unmatched(session, event, REASON_PROJECT_NOT_FOUND, payload_hash)

        prior_status = project.payment_status
        skip_reason = None
        if prior_status == project_statuses.PAYMENT_PAID:
            skip_reason = REASON_ALREADY_PAID
        elif prior_status == project_statuses.PAYMENT_REFUNDED:
            skip_reason = REASON_REFUNDED

        result = await ledger.record_and_check(
            session,
            LedgerEntry(
                provider=project_statuses.PROVIDER_STRIPE,
                event_id=event.event_id,
                event_type=event.event_type,
                project_id=project.project_id,
                metadata=_event_metadata(event, skip_reason or "paid"),
                payload_hash=payload_hash,
            ),
        )
        if result.already_processed:
            return PaymentOutcome(
                project.project_id, skipped=True, reason=REASON_DUPLICATE, payment_status=prior_status
            )
        if skip_reason:
            return PaymentOutcome(
                project.project_id, skipped=True, reason=skip_reason, payment_status=prior_status
            )

        now = _now()
        _mark_paid(
            project,
            provider=project_statuses.PROVIDER_STRIPE,
            event_id=event.event_id,
            now=now,
            checkout_session_id=event.session_id,
            payment_intent_id=event.payment_intent_id,
        )
        await _update_invoice(
            session,
            project,
            event.invoice_id,
            from_statuses=invoice_statuses.PAYABLE_STATUSES,
            to_status=invoice_statuses.PAID,
            paid_at=now,
        )
        metrics.record_payment_transition(project_statuses.PAYMENT_PAID, project_statuses.PROVIDER_STRIPE)
        return PaymentOutcome(project.project_id, payment_status=project.payment_status)

    return await _run(uow, event.event_type, event.event_id, _apply)


async def apply_refund(
    uow: UnitOfWork, event: ChargeRefunded, *, payload_hash: str | None = None
) -> PaymentOutcome:
    async def _apply(session: AsyncSession) -> PaymentOutcome:
        project = None
        if event.project_public_id:
            project = await _lock_project_by_public_id(session, event.project_public_id)
        if project is None and event.payment_intent_id:
            project = await _lock_project_by_payment_intent(session, event.payment_intent_id)
        if project is None:
            reason = REASON_PROJECT_NOT_FOUND if event.project_public_id else REASON_MISSING_TOKEN
            return await _record_unmatched(session, event, reason, payload_hash)

        prior_status = project.payment_status
        skip_reason = None
        if not event.fully_refunded:
            skip_reason = REASON_PARTIAL_REFUND
        elif prior_status == project_statuses.PAYMENT_REFUNDED:
            skip_reason = REASON_ALREADY_REFUNDED
        elif prior_status != project_statuses.PAYMENT_PAID:
            skip_reason = REASON_NOT_PAID

        result = await ledger.record_and_check(
            session,
            LedgerEntry(
                provider=project_statuses.PROVIDER_STRIPE,
                event_id=event.event_id,
                event_type=event.event_type,
                project_id=project.project_id,
                metadata=_event_metadata(event, skip_reason or "refunded"),
                payload_hash=payload_hash,
            ),
        )
        if result.already_processed:
            return PaymentOutcome(
                project.project_id, skipped=True, reason=REASON_DUPLICATE, payment_status=prior_status
            )
        if skip_reason:
            return PaymentOutcome(
                project.project_id, skipped=True, reason=skip_reason, payment_status=prior_status
            )

        _mark_refunded(project, event_id=event.event_id, now=_now())
        await _update_invoice(
            session,
            project,
            event.invoice_id,
            from_statuses={invoice_statuses.PAID},
            to_status=invoice_statuses.REFUNDED,
            paid_at=None,
        )
        metrics.record_payment_transition(
            project_statuses.PAYMENT_REFUNDED, project_statuses.PROVIDER_STRIPE
        )
        return PaymentOutcome(project.project_id, payment_status=project.payment_status)

    return await _run(uow, event.event_type, event.event_id, _apply)


async def _record_observation(
    uow: UnitOfWork,
    event: CheckoutSessionExpired | PaymentIntentFailed,
    *,
    status: str,
    error_msg: str | None,
    payment_intent_id: str | None,
    payload_hash: str | None,
) -> PaymentOutcome:
    async def _apply(session: AsyncSession) -> PaymentOutcome:
        project_id = await _find_project_id(session, event.project_public_id, payment_intent_id)
        result = await ledger.record_and_check(
            session,
            LedgerEntry(
                provider=project_statuses.PROVIDER_STRIPE,
                event_id=event.event_id,
                event_type=event.event_type,
                status=status,
                project_id=project_id,
                error_msg=error_msg,
                metadata=dict(event.metadata),
                payload_hash=payload_hash,
            ),
        )
        return PaymentOutcome(
            project_id,
            skipped=result.already_processed,
            reason=REASON_DUPLICATE if result.already_processed else REASON_LOGGED,
        )

    return await _run(uow, event.event_type, event.event_id, _apply)


async def record_checkout_expired(
    uow: UnitOfWork, event: CheckoutSessionExpired, *, payload_hash: str | None = None
) -> PaymentOutcome:
    return await _record_observation(
        uow,
        event,
        status=statuses.LEDGER_SUCCESS,
        error_msg=None,
        payment_intent_id=None,
        payload_hash=payload_hash,
    )


async def record_payment_failed(
    uow: UnitOfWork, event: PaymentIntentFailed, *, payload_hash: str | None = None
) -> PaymentOutcome:
    return await _record_observation(
        uow,
        event,
        status=statuses.LEDGER_FAILED,
        error_msg=event.error_message or event.error_code or "payment_failed",
        payment_intent_id=event.payment_intent_id,
        payload_hash=payload_hash,
    )


async def mark_paid_manually(
    uow: UnitOfWork, project_id: str, reason: str | None, operator_id: str
) -> PaymentOutcome:
    """Operator override for payments received outside Stripe."""
    justification = (reason or "").strip()
    if len(justification) < MIN_MANUAL_REASON_LENGTH:
        raise ValidationDomainError(
            detail=f"A reason of at least {MIN_MANUAL_REASON_LENGTH} characters is required",
            errors=[{"field": "reason", "message": "too_short"}],
        )
    event_id = f"manual_{uuid.uuid4().hex}"

    async def _apply(session: AsyncSession) -> PaymentOutcome:
        project = await _lock_project(session, project_id)
        if project is None:
            raise NotFoundError(detail="Project not found")
        if project.payment_status == project_statuses.PAYMENT_REFUNDED:
            raise RefundedProjectError(detail="A refunded project cannot be marked paid manually")
        if project.payment_status == project_statuses.PAYMENT_PAID:
            return PaymentOutcome(
                project.project_id,
                skipped=True,
                reason=REASON_ALREADY_PAID,
                payment_status=project.payment_status,
            )

        await ledger.record_and_check(
            session,
            LedgerEntry(
                provider=project_statuses.PROVIDER_MANUAL,
                event_id=event_id,
                event_type=statuses.EVENT_MANUAL_PAYMENT,
                project_id=project.project_id,
                metadata={"reason": justification, "operator_id": operator_id},
            ),
        )
        _mark_paid(project, provider=project_statuses.PROVIDER_MANUAL, event_id=event_id, now=_now())
        metrics.record_payment_transition(project_statuses.PAYMENT_PAID, project_statuses.PROVIDER_MANUAL)
        return PaymentOutcome(project.project_id, payment_status=project.payment_status)

    outcome = await _run(uow, statuses.EVENT_MANUAL_PAYMENT, event_id, _apply)
    logger.info(
        "payment_manual_override",
        extra={
            "extra": {
                "project_id": project_id,
                "operator_id": operator_id,
                "skipped": outcome.skipped,
            }
        },
    )
    return outcome


async def reconcile_unmatched(
    uow: UnitOfWork, event_id: str, project_id: str, operator_id: str
) -> PaymentOutcome:
    """Attach an unmatched ledger event to a project and apply its effect.

    The original row stays untouched; a ``reconcile_<event_id>`` row records the
    decision, which also makes a second reconciliation a no-op.
    """
    reconcile_id = ledger.reconciliation_event_id(event_id)

    async def _apply(session: AsyncSession) -> PaymentOutcome:
        original = await ledger.get_event(session, event_id)
        if original is None or original.status != statuses.LEDGER_UNMATCHED:
            raise NotFoundError(detail="Unmatched payment event not found")
        if original.event_type not in {statuses.EVENT_CHECKOUT_COMPLETED, statuses.EVENT_CHARGE_REFUNDED}:
            raise ValidationDomainError(detail=f"Events of type {original.event_type} cannot be reconciled")
        project = await _lock_project(session, project_id)
        if project is None:
            raise NotFoundError(detail="Project not found")

        is_refund = original.event_type == statuses.EVENT_CHARGE_REFUNDED
        prior_status = project.payment_status
        skip_reason = None
        if not is_refund and prior_status == project_statuses.PAYMENT_REFUNDED:
            raise RefundedProjectError(detail="A refunded project cannot be reconciled as paid")
        if not is_refund and prior_status == project_statuses.PAYMENT_PAID:
            skip_reason = REASON_ALREADY_PAID
        if is_refund and prior_status != project_statuses.PAYMENT_PAID:
            skip_reason = REASON_NOT_PAID

        result = await ledger.record_and_check(
            session,
            LedgerEntry(
                provider=original.provider,
                event_id=reconcile_id,
                event_type=statuses.EVENT_RECONCILIATION,
                project_id=project.project_id,
                metadata={
                    "reconciled_event_id": event_id,
                    "reconciled_event_type": original.event_type,
                    "operator_id": operator_id,
                    "outcome": skip_reason or ("refunded" if is_refund else "paid"),
                },
            ),
        )
        if result.already_processed:
            return PaymentOutcome(
                project.project_id,
                skipped=True,
                reason=REASON_ALREADY_RECONCILED,
                payment_status=prior_status,
            )
        if skip_reason:
            return PaymentOutcome(
                project.project_id, skipped=True, reason=skip_reason, payment_status=prior_status
            )

        details = original.event_metadata or {}
        if is_refund:
            _mark_refunded(project, event_id=event_id, now=_now())
        else:
            _mark_paid(
                project,
                provider=project_statuses.PROVIDER_STRIPE,
                event_id=event_id,
                now=_now(),
                checkout_session_id=details.get("stripe_session_id"),
                payment_intent_id=details.get("stripe_payment_intent_id"),
            )
        metrics.record_payment_transition(project.payment_status, project_statuses.PROVIDER_STRIPE)
        return PaymentOutcome(project.project_id, payment_status=project.payment_status)

    outcome = await _run(uow, statuses.EVENT_RECONCILIATION, reconcile_id, _apply)
    logger.info(
        "payment_event_reconciled",
        extra={
            "extra": {
                "event_id": event_id,
                "project_id": project_id,
                "operator_id": operator_id,
                "skipped": outcome.skipped,
            }
        },
    )
    return outcome


def _parse_payment_link(url: str) -> tuple[str, str]:
    parsed = urlparse(url.strip())
    if parsed.scheme != "https" or not parsed.netloc:
        raise ValidationDomainError(
            detail="Payment link must be an https URL",
            errors=[{"field": "url", "message": "invalid_url"}],
        )
    link_id = url.strip()
    if parsed.hostname in STRIPE_LINK_HOSTS:
        segments = [segment for segment in parsed.path.split("/") if segment]
        if segments:
            link_id = segments[-1]
    return link_id, url.strip()


async def update_payment_link(uow: UnitOfWork, project_id: str, url: str | None) -> Project:
    link = _parse_payment_link(url) if url and url.strip() else None

    async def _apply(session: AsyncSession) -> Project:
        project = await _lock_project(session, project_id)
        if project is None:
            raise NotFoundError(detail="Project not found")
        project.payment_link_id, project.payment_link_url = link if link else (None, None)
        project.last_update_at = _now()
        return project

    return await uow.with_transaction(_apply)


async def create_checkout_link(
    uow: UnitOfWork, stripe_client: Any, project_id: str, app_settings: Settings
) -> Project:
    """Create a Stripe Checkout Session carrying the project's correlation token."""
    async def _load(session: AsyncSession) -> Project:
        project = await session.get(Project, project_id)
        if project is None:
            raise NotFoundError(detail="Project not found")
        return project

    project = await uow.with_transaction(_load)
    if project.payment_status == project_statuses.PAYMENT_REFUNDED:
        raise RefundedProjectError(detail="A refunded project cannot receive a new payment link")
    if project.payment_status == project_statuses.PAYMENT_PAID:
        raise ValidationDomainError(detail="Project is already paid")
    if not project.payment_amount_cents or project.payment_amount_cents <= 0:
        raise ValidationDomainError(
            detail="Project has no payable amount",
            errors=[{"field": "payment_amount_cents", "message": "missing"}],
        )

    metadata = {
        statuses.METADATA_PROJECT_PUBLIC_ID: project.public_id,
        statuses.METADATA_ENVIRONMENT: app_settings.payment_environment,
        statuses.METADATA_PURPOSE: statuses.PURPOSE_PROJECT_PAYMENT,
    }
    if project.client_id:
        metadata[statuses.METADATA_CLIENT_ID] = project.client_id
    checkout = await call_stripe_client_method(
        stripe_client,
        "create_checkout_session",
        amount_cents=project.payment_amount_cents,
        currency=project.currency,
        success_url=app_settings.stripe_success_url,
        cancel_url=app_settings.stripe_cancel_url,
        product_name=project.name,
        metadata=metadata,
        idempotency_key=make_stripe_idempotency_key(
            "project_checkout",
            project_public_id=project.public_id,
            amount_cents=project.payment_amount_cents,
            currency=project.currency,
        ),
    )
    checkout_id = _safe_get(checkout, "id")
    checkout_url = _safe_get(checkout, "url")

    async def _store(session: AsyncSession) -> Project:
        locked = await _lock_project(session, project_id)
        if locked is None:
            raise NotFoundError(detail="Project not found")
        locked.payment_link_id = checkout_id
        locked.payment_link_url = checkout_url
        locked.stripe_checkout_session_id = checkout_id
        locked.last_update_at = _now()
        return locked

    stored = await uow.with_transaction(_store)
    logger.info(
        "payment_checkout_created",
        extra={"extra": {"project_id": project_id, "checkout_session_id": checkout_id}},
    )
    return stored
