"""Idempotency ledger for externally sourced payment events.

Every inbound event is written here exactly once, keyed by the provider's event
id. The insert itself is the serialization point: when two deliveries of the
same event race, the unique constraint on ``event_id`` lets exactly one of them
commit, and the loser's transaction (including any project mutation it staged)
is rolled back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from app.domain.payments import statuses
from app.domain.payments.db_models import PaymentEvent
from app.infra.db import UnitOfWork

logger = logging.getLogger(__name__)

PROJECT_EVENTS_LIMIT = 20
UNMATCHED_EVENTS_LIMIT = 50
RECONCILE_PREFIX = "reconcile_"


class LedgerConflictError(Exception):
    """A concurrent delivery already inserted this event id."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(event_id)


@dataclass(frozen=True)
class LedgerEntry:
    provider: str
    event_id: str
    event_type: str
    status: str = statuses.LEDGER_SUCCESS
    project_id: str | None = None
    error_msg: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    payload_hash: str | None = None


@dataclass(frozen=True)
class LedgerResult:
    already_processed: bool
    event: PaymentEvent | None = None


async def has_processed(uow: UnitOfWork, event_id: str) -> bool:
    """Cheap pre-check used before any further work; racy by nature."""

    async def _lookup(session: AsyncSession) -> bool:
        existing = await session.scalar(
            select(PaymentEvent.payment_event_id).where(PaymentEvent.event_id == event_id)
        )
        return existing is not None

    return await uow.with_transaction(_lookup)


async def record_and_check(session: AsyncSession, entry: LedgerEntry) -> LedgerResult:
    """Insert ``entry`` inside the caller's transaction.

    Returns ``already_processed=True`` when a committed row already exists.
    Raises :class:`LedgerConflictError` when the insert loses a race; the caller
    must let the transaction roll back.
    """
    if entry.status not in statuses.LEDGER_STATUSES:
        raise ValueError(f"Unknown ledger status {entry.status}")

    existing = await session.scalar(
        select(PaymentEvent.payment_event_id).where(PaymentEvent.event_id == entry.event_id)
    )
    if existing is not None:
        return LedgerResult(already_processed=True)

    event = PaymentEvent(
        provider=entry.provider,
        event_id=entry.event_id,
        event_type=entry.event_type,
        status=entry.status,
        project_id=entry.project_id,
        error_msg=entry.error_msg,
        event_metadata=dict(entry.metadata),
        payload_hash=entry.payload_hash,
    )
    session.add(event)
    try:
        await session.flush()
    except IntegrityError as exc:
        logger.info(
            "payment_ledger_conflict",
            extra={"extra": {"event_id": entry.event_id, "event_type": entry.event_type}},
        )
        raise LedgerConflictError(entry.event_id) from exc
    return LedgerResult(already_processed=False, event=event)


async def record(uow: UnitOfWork, entry: LedgerEntry) -> LedgerResult:
    """Record a log-only event in its own transaction."""
    try:
        return await uow.with_transaction(lambda session: record_and_check(session, entry))
    except LedgerConflictError:
        return LedgerResult(already_processed=True)


async def list_project_events(
    session: AsyncSession, project_id: str, *, limit: int = PROJECT_EVENTS_LIMIT
) -> list[PaymentEvent]:
    result = await session.scalars(
        select(PaymentEvent)
        .where(PaymentEvent.project_id == project_id)
        .order_by(PaymentEvent.processed_at.desc(), PaymentEvent.event_id)
        .limit(limit)
    )
    return list(result)


def reconciliation_event_id(event_id: str) -> str:
    return f"{RECONCILE_PREFIX}{event_id}"


async def list_unmatched(
    session: AsyncSession, *, limit: int = UNMATCHED_EVENTS_LIMIT
) -> list[PaymentEvent]:
    """Unmatched events still waiting for an operator to reconcile them."""
    reconciled = aliased(PaymentEvent)
    already_reconciled = (
        select(reconciled.payment_event_id)
        .where(reconciled.event_id == literal(RECONCILE_PREFIX) + PaymentEvent.event_id)
        .exists()
    )
    result = await session.scalars(
        select(PaymentEvent)
        .where(PaymentEvent.status == statuses.LEDGER_UNMATCHED, ~already_reconciled)
        .order_by(PaymentEvent.processed_at.desc(), PaymentEvent.event_id)
        .limit(limit)
    )
    return list(result)


async def get_event(session: AsyncSession, event_id: str) -> PaymentEvent | None:
    return await session.scalar(select(PaymentEvent).where(PaymentEvent.event_id == event_id))
