import pytest
import sqlalchemy as sa

from app.domain.errors import NotFoundError, RefundedProjectError, ValidationDomainError
from app.domain.invoices import statuses as invoice_statuses
from app.domain.invoices.db_models import Invoice
from app.domain.payments import ledger
from app.domain.payments import service as payment_service
from app.domain.payments import statuses
from app.domain.payments.db_models import PaymentEvent
from app.domain.payments.events import ChargeRefunded, CheckoutSessionCompleted
from app.domain.payments.ledger import LedgerConflictError, LedgerEntry
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from tests.conftest import fetch, seed_project


def _checkout(event_id: str, public_id: str | None, **metadata) -> CheckoutSessionCompleted:
    tags = dict(metadata)
    if public_id:
        tags[statuses.METADATA_PROJECT_PUBLIC_ID] = public_id
    return CheckoutSessionCompleted(
        event_id=event_id,
        event_type=statuses.EVENT_CHECKOUT_COMPLETED,
        metadata=tags,
        session_id=f"cs_{event_id}",
        payment_intent_id=f"pi_{event_id}",
        amount_total=50000,
        currency="usd",
    )


def _refund(event_id: str, public_id: str | None, *, fully: bool = True, payment_intent_id=None) -> ChargeRefunded:
    metadata = {statuses.METADATA_PROJECT_PUBLIC_ID: public_id} if public_id else {}
    return ChargeRefunded(
        event_id=event_id,
        event_type=statuses.EVENT_CHARGE_REFUNDED,
        metadata=metadata,
        charge_id=f"ch_{event_id}",
        payment_intent_id=payment_intent_id,
        amount=50000,
        amount_refunded=50000 if fully else 1000,
        fully_refunded=fully,
    )


async def _events(async_session_maker) -> list[PaymentEvent]:
    async with async_session_maker() as session:
        result = await session.scalars(sa.select(PaymentEvent).order_by(PaymentEvent.processed_at))
        return list(result)


@pytest.mark.anyio
async def test_checkout_completed_marks_project_paid(uow, async_session_maker):
    project = await seed_project(async_session_maker)

    outcome = await payment_service.apply_checkout_completed(uow, _checkout("evt_1", project.public_id))

    assert outcome.skipped is False
    assert outcome.payment_status == project_statuses.PAYMENT_PAID
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_status == project_statuses.PAYMENT_PAID
    assert stored.payment_provider == project_statuses.PROVIDER_STRIPE
    assert stored.paid_at is not None
    assert stored.stripe_payment_intent_id == "pi_evt_1"
    assert stored.last_payment_event_id == "evt_1"
    events = await _events(async_session_maker)
    assert [event.event_id for event in events] == ["evt_1"]
    assert events[0].status == statuses.LEDGER_SUCCESS


@pytest.mark.anyio
async def test_duplicate_event_is_a_noop(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    event = _checkout("evt_dup", project.public_id)

    first = await payment_service.apply_checkout_completed(uow, event)
    paid_at = (await fetch(async_session_maker, Project, project.project_id)).paid_at
    second = await payment_service.apply_checkout_completed(uow, event)

    assert first.skipped is False
    assert second.skipped is True
    assert second.reason == payment_service.REASON_DUPLICATE
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.paid_at == paid_at
    assert len(await _events(async_session_maker)) == 1


@pytest.mark.anyio
async def test_second_payment_event_for_paid_project_is_skipped(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_a", project.public_id))

    outcome = await payment_service.apply_checkout_completed(uow, _checkout("evt_b", project.public_id))

    assert outcome.skipped is True
    assert outcome.reason == payment_service.REASON_ALREADY_PAID
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.last_payment_event_id == "evt_a"
    assert {event.event_id for event in await _events(async_session_maker)} == {"evt_a", "evt_b"}


@pytest.mark.anyio
async def test_refund_is_terminal(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_pay", project.public_id))
    refund = await payment_service.apply_refund(uow, _refund("evt_refund", project.public_id))
    assert refund.payment_status == project_statuses.PAYMENT_REFUNDED

    late = await payment_service.apply_checkout_completed(uow, _checkout("evt_late", project.public_id))

    assert late.skipped is True
    assert late.reason == payment_service.REASON_REFUNDED
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_status == project_statuses.PAYMENT_REFUNDED
    assert stored.paid_at is None
    assert stored.refunded_at is not None


@pytest.mark.anyio
async def test_partial_refund_is_ledgered_without_transition(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_pay", project.public_id))

    outcome = await payment_service.apply_refund(uow, _refund("evt_partial", project.public_id, fully=False))

    assert outcome.skipped is True
    assert outcome.reason == payment_service.REASON_PARTIAL_REFUND
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_status == project_statuses.PAYMENT_PAID
    assert "evt_partial" in {event.event_id for event in await _events(async_session_maker)}


@pytest.mark.anyio
async def test_refund_resolves_project_by_payment_intent(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_pay", project.public_id))

    outcome = await payment_service.apply_refund(
        uow, _refund("evt_refund_pi", None, payment_intent_id="pi_evt_pay")
    )

    assert outcome.payment_status == project_statuses.PAYMENT_REFUNDED
    assert outcome.project_id == project.project_id


@pytest.mark.anyio
async def test_refund_of_unpaid_project_is_skipped(uow, async_session_maker):
    project = await seed_project(async_session_maker)

    outcome = await payment_service.apply_refund(uow, _refund("evt_refund", project.public_id))

    assert outcome.skipped is True
    assert outcome.reason == payment_service.REASON_NOT_PAID
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_status == project_statuses.PAYMENT_UNPAID


@pytest.mark.anyio
async def test_missing_correlation_token_is_recorded_unmatched(uow, async_session_maker):
    outcome = await payment_service.apply_checkout_completed(uow, _checkout("evt_orphan", None))

    assert outcome.unmatched is True
    assert outcome.reason == payment_service.REASON_MISSING_TOKEN
    events = await _events(async_session_maker)
    assert len(events) == 1
    assert events[0].status == statuses.LEDGER_UNMATCHED
    assert events[0].project_id is None


@pytest.mark.anyio
async def test_unknown_project_is_recorded_unmatched(uow, async_session_maker):
    outcome = await payment_service.apply_checkout_completed(uow, _checkout("evt_ghost", "no-such-project"))

    assert outcome.unmatched is True
    assert outcome.reason == payment_service.REASON_PROJECT_NOT_FOUND


@pytest.mark.anyio
async def test_checkout_settles_correlated_invoice(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    async with async_session_maker() as session:
        invoice = Invoice(
            project_id=project.project_id,
            invoice_number="INV-0001",
            status=invoice_statuses.SENT,
            total_cents=50000,
        )
        session.add(invoice)
        await session.commit()

    await payment_service.apply_checkout_completed(
        uow,
        _checkout("evt_inv", project.public_id, **{statuses.METADATA_INVOICE_ID: invoice.invoice_id}),
    )

    stored = await fetch(async_session_maker, Invoice, invoice.invoice_id)
    assert stored.status == invoice_statuses.PAID
    assert stored.paid_at is not None


@pytest.mark.anyio
async def test_ledger_insert_race_raises_conflict(uow, async_session_maker, monkeypatch):
    entry = LedgerEntry(
        provider=project_statuses.PROVIDER_STRIPE,
        event_id="evt_race",
        event_type=statuses.EVENT_CHECKOUT_COMPLETED,
    )
    first = await uow.with_transaction(lambda session: ledger.record_and_check(session, entry))
    assert first.already_processed is False

    async def _race(session):
        # The pre-check misses the row committed by the concurrent delivery.
        async def _miss(*args, **kwargs):
            return None

        monkeypatch.setattr(session, "scalar", _miss)
        return await ledger.record_and_check(session, entry)

    with pytest.raises(LedgerConflictError):
        await uow.with_transaction(_race)
    assert len(await _events(async_session_maker)) == 1


@pytest.mark.anyio
async def test_manual_mark_paid_requires_reason(uow, async_session_maker):
    project = await seed_project(async_session_maker)

    with pytest.raises(ValidationDomainError):
        await payment_service.mark_paid_manually(uow, project.project_id, "ok", "admin")

    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_status == project_statuses.PAYMENT_UNPAID


@pytest.mark.anyio
async def test_manual_mark_paid_records_operator(uow, async_session_maker):
    project = await seed_project(async_session_maker)

    outcome = await payment_service.mark_paid_manually(uow, project.project_id, "Paid by bank transfer", "admin")

    assert outcome.payment_status == project_statuses.PAYMENT_PAID
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.payment_provider == project_statuses.PROVIDER_MANUAL
    events = await _events(async_session_maker)
    assert events[0].event_type == statuses.EVENT_MANUAL_PAYMENT
    assert events[0].event_metadata["operator_id"] == "admin"

    again = await payment_service.mark_paid_manually(uow, project.project_id, "Paid twice?", "admin")
    assert again.skipped is True
    assert again.reason == payment_service.REASON_ALREADY_PAID
    assert len(await _events(async_session_maker)) == 1


@pytest.mark.anyio
async def test_manual_mark_paid_refused_for_refunded_project(uow, async_session_maker):
    project = await seed_project(async_session_maker, payment_status=project_statuses.PAYMENT_REFUNDED)

    with pytest.raises(RefundedProjectError):
        await payment_service.mark_paid_manually(uow, project.project_id, "Customer paid cash", "admin")


@pytest.mark.anyio
async def test_manual_mark_paid_unknown_project(uow):
    with pytest.raises(NotFoundError):
        await payment_service.mark_paid_manually(uow, "missing", "Customer paid cash", "admin")


@pytest.mark.anyio
async def test_reconcile_unmatched_event_marks_paid_once(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_lost", None))

    async def _pending(session):
        return await ledger.list_unmatched(session)

    assert [event.event_id for event in await uow.with_transaction(_pending)] == ["evt_lost"]

    outcome = await payment_service.reconcile_unmatched(uow, "evt_lost", project.project_id, "admin")
    assert outcome.payment_status == project_statuses.PAYMENT_PAID
    stored = await fetch(async_session_maker, Project, project.project_id)
    assert stored.stripe_payment_intent_id == "pi_evt_lost"

    again = await payment_service.reconcile_unmatched(uow, "evt_lost", project.project_id, "admin")
    assert again.skipped is True
    assert again.reason == payment_service.REASON_ALREADY_RECONCILED
    assert await uow.with_transaction(_pending) == []


@pytest.mark.anyio
async def test_reconcile_rejects_matched_events(uow, async_session_maker):
    project = await seed_project(async_session_maker)
    await payment_service.apply_checkout_completed(uow, _checkout("evt_ok", project.public_id))

    with pytest.raises(NotFoundError):
        await payment_service.reconcile_unmatched(uow, "evt_ok", project.project_id, "admin")


@pytest.mark.anyio
async def test_payment_link_must_be_https(uow, async_session_maker):
    project = await seed_project(async_session_maker)

    with pytest.raises(ValidationDomainError):
        await payment_service.update_payment_link(uow, project.project_id, "http://buy.stripe.com/abc")

    updated = await payment_service.update_payment_link(
        uow, project.project_id, "https://buy.stripe.com/test_abc123"
    )
    assert updated.payment_link_id == "test_abc123"
    cleared = await payment_service.update_payment_link(uow, project.project_id, None)
    assert cleared.payment_link_url is None
