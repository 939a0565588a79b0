import asyncio
from types import SimpleNamespace

from app.api.routes_webhooks import WEBHOOK_PATH
from app.domain.payments import statuses
from app.domain.projects import statuses as project_statuses
from app.domain.projects.db_models import Project
from app.main import app
from tests.conftest import ADMIN_AUTH, fetch, seed_project, sign_stripe_payload, stripe_event


def _orphan_checkout(client, event_id: str) -> None:
    payload = stripe_event(
        event_id,
        statuses.EVENT_CHECKOUT_COMPLETED,
        {
            "id": f"cs_{event_id}",
            "payment_intent": f"pi_{event_id}",
            "metadata": {statuses.METADATA_ENVIRONMENT: "development"},
        },
    )
    response = client.post(
        WEBHOOK_PATH, content=payload, headers={"Stripe-Signature": sign_stripe_payload(payload)}
    )
    assert response.json()["status"] == "unmatched"


def test_mark_paid_requires_reason(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))

    response = client.post(
        f"/v1/admin/projects/{project.project_id}/mark-paid", json={"reason": "ok"}, auth=ADMIN_AUTH
    )

    assert response.status_code == 422
    stored = asyncio.run(fetch(async_session_maker, Project, project.project_id))
    assert stored.payment_status == project_statuses.PAYMENT_UNPAID


def test_mark_paid_is_ledgered(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))

    response = client.post(
        f"/v1/admin/projects/{project.project_id}/mark-paid",
        json={"reason": "Bank transfer received"},
        auth=ADMIN_AUTH,
    )
    events = client.get(f"/v1/admin/projects/{project.project_id}/payment-events", auth=ADMIN_AUTH)

    assert response.status_code == 200
    assert response.json()["payment_status"] == project_statuses.PAYMENT_PAID
    assert events.status_code == 200
    assert [event["provider"] for event in events.json()["events"]] == [project_statuses.PROVIDER_MANUAL]


def test_mark_paid_unknown_project(client):
    response = client.post(
        "/v1/admin/projects/missing/mark-paid", json={"reason": "Bank transfer received"}, auth=ADMIN_AUTH
    )

    assert response.status_code == 404


def test_payment_link_set_and_cleared(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))
    url = f"/v1/admin/projects/{project.project_id}/payment-link"

    stripe_link = client.put(url, json={"url": "https://buy.stripe.com/test_abc123"}, auth=ADMIN_AUTH)
    other_link = client.put(url, json={"url": "https://pay.example.com/invoice/9"}, auth=ADMIN_AUTH)
    insecure = client.put(url, json={"url": "http://pay.example.com/invoice/9"}, auth=ADMIN_AUTH)
    cleared = client.put(url, json={"url": None}, auth=ADMIN_AUTH)

    assert stripe_link.json()["payment_link_id"] == "test_abc123"
    assert other_link.json()["payment_link_id"] == "https://pay.example.com/invoice/9"
    assert insecure.status_code == 422
    assert cleared.json() == {
        "project_id": project.project_id,
        "payment_link_id": None,
        "payment_link_url": None,
    }


def test_checkout_unavailable_without_secret_key(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))

    response = client.post(f"/v1/admin/projects/{project.project_id}/checkout", auth=ADMIN_AUTH)

    assert response.status_code == 503


def test_checkout_creates_session_with_correlation_metadata(client, async_session_maker, monkeypatch):
    project = asyncio.run(seed_project(async_session_maker))
    calls: list[dict] = []

    class FakeStripeClient:
        async def create_checkout_session(self, **kwargs):
            calls.append(kwargs)
            return SimpleNamespace(id="cs_created", url="https://checkout.stripe.com/c/cs_created")

    monkeypatch.setattr(app.state, "stripe_client", FakeStripeClient())

    response = client.post(f"/v1/admin/projects/{project.project_id}/checkout", auth=ADMIN_AUTH)

    assert response.status_code == 201
    assert response.json()["payment_link_id"] == "cs_created"
    assert calls[0]["amount_cents"] == 50000
    assert calls[0]["metadata"][statuses.METADATA_PROJECT_PUBLIC_ID] == project.public_id
    assert calls[0]["metadata"][statuses.METADATA_ENVIRONMENT] == "development"
    assert calls[0]["idempotency_key"].startswith("project-")


def test_checkout_refused_for_paid_project(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker, payment_status=project_statuses.PAYMENT_PAID))

    response = client.post(f"/v1/admin/projects/{project.project_id}/checkout", auth=ADMIN_AUTH)

    assert response.status_code == 422


def test_unmatched_events_can_be_reconciled(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))
    _orphan_checkout(client, "evt_orphan_admin")

    listed = client.get("/v1/admin/payments/unmatched", auth=ADMIN_AUTH)
    assert [event["event_id"] for event in listed.json()["events"]] == ["evt_orphan_admin"]

    reconcile_url = "/v1/admin/payments/unmatched/evt_orphan_admin/reconcile"
    first = client.post(reconcile_url, json={"project_id": project.project_id}, auth=ADMIN_AUTH)
    second = client.post(reconcile_url, json={"project_id": project.project_id}, auth=ADMIN_AUTH)

    assert first.status_code == 200
    assert first.json()["payment_status"] == project_statuses.PAYMENT_PAID
    assert first.json()["skipped"] is False
    assert second.json()["skipped"] is True
    stored = asyncio.run(fetch(async_session_maker, Project, project.project_id))
    assert stored.payment_status == project_statuses.PAYMENT_PAID


def test_reconcile_unknown_event(client, async_session_maker):
    project = asyncio.run(seed_project(async_session_maker))

    response = client.post(
        "/v1/admin/payments/unmatched/evt_nope/reconcile",
        json={"project_id": project.project_id},
        auth=ADMIN_AUTH,
    )

    assert response.status_code == 404
