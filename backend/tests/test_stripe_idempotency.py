"""Tests for Stripe idempotency key generation and Stripe mutation safeguards."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from app.infra.stripe_client import StripeClient, call_stripe_client_method, is_mutating_method
from app.infra.stripe_idempotency import make_stripe_idempotency_key


class TestMakeStripeIdempotencyKey:
    def test_same_inputs_produce_same_key(self):
        key_a = make_stripe_idempotency_key(
            "project_checkout", project_public_id="prj_123", amount_cents=5000, currency="USD"
        )
        key_b = make_stripe_idempotency_key(
            "project_checkout", project_public_id="prj_123", amount_cents=5000, currency="USD"
        )
        assert key_a == key_b

    def test_currency_is_case_insensitive(self):
        key_lower = make_stripe_idempotency_key("project_checkout", project_public_id="prj_abc", currency="usd")
        key_upper = make_stripe_idempotency_key("project_checkout", project_public_id="prj_abc", currency="USD")
        assert key_lower == key_upper

    def test_different_project_different_key(self):
        key_a = make_stripe_idempotency_key("project_checkout", project_public_id="prj_aaa", amount_cents=5000)
        key_b = make_stripe_idempotency_key("project_checkout", project_public_id="prj_bbb", amount_cents=5000)
        assert key_a != key_b

    def test_different_amount_different_key(self):
        key_a = make_stripe_idempotency_key("project_checkout", project_public_id="prj_123", amount_cents=5000)
        key_b = make_stripe_idempotency_key("project_checkout", project_public_id="prj_123", amount_cents=9999)
        assert key_a != key_b

    def test_key_format_has_prefix_and_digest(self):
        key = make_stripe_idempotency_key("project_checkout", project_public_id="prj_xyz")
        prefix, digest = key.rsplit("-", 1)
        assert prefix == "project"
        assert len(digest) == 32
        assert all(c in "0123456789abcdef" for c in digest)

    def test_key_length_within_stripe_limit(self):
        key = make_stripe_idempotency_key(
            "project_checkout",
            project_public_id="p" * 64,
            amount_cents=99999999,
            currency="USD",
            extra={"note": "n" * 200},
        )
        assert len(key) <= 255

    def test_extra_nested_values_are_deterministic(self):
        key_a = make_stripe_idempotency_key("project_checkout", extra={"payload": {"b": [2, 1], "a": "x"}})
        key_b = make_stripe_idempotency_key("project_checkout", extra={"payload": {"a": "x", "b": [2, 1]}})
        assert key_a == key_b


class TestCallStripeClientMethodGuards:
    def test_method_classification(self):
        assert is_mutating_method("create_checkout_session")
        assert not is_mutating_method("retrieve_checkout_session")
        assert not is_mutating_method("verify_webhook")

    @pytest.mark.anyio
    async def test_mutation_without_idempotency_key_raises(self):
        class MockClient:
            async def create_checkout_session(self, **kwargs):
                return kwargs

        with pytest.raises(ValueError, match="requires idempotency_key"):
            await call_stripe_client_method(MockClient(), "create_checkout_session", amount_cents=1000)

    @pytest.mark.anyio
    async def test_mutation_with_idempotency_key_passes(self):
        observed: list[dict] = []

        class MockClient:
            async def create_checkout_session(self, **kwargs):
                observed.append(kwargs)
                return SimpleNamespace(id="cs_test")

        result = await call_stripe_client_method(
            MockClient(), "create_checkout_session", amount_cents=1000, idempotency_key="project-test-key"
        )

        assert result.id == "cs_test"
        assert observed[0]["idempotency_key"] == "project-test-key"

    @pytest.mark.anyio
    async def test_missing_method_raises(self):
        with pytest.raises(AttributeError):
            await call_stripe_client_method(object(), "retrieve_checkout_session")


class TestStripeClientCheckout:
    @pytest.mark.anyio
    async def test_checkout_carries_metadata_on_payment_intent(self):
        captured: dict = {}

        def fake_create(**kwargs):
            captured.update(kwargs)
            return SimpleNamespace(id="cs_1", url="https://checkout.stripe.com/c/cs_1")

        sdk = SimpleNamespace(api_key=None, checkout=SimpleNamespace(Session=SimpleNamespace(create=fake_create)))
        client = StripeClient(secret_key="sk_test_123", webhook_secret="whsec_test", stripe_sdk=sdk)

        session = await client.create_checkout_session(
            amount_cents=2500,
            currency="usd",
            success_url="https://example.com/ok",
            cancel_url="https://example.com/cancel",
            product_name="Spring catalogue shoot",
            metadata={"project_public_id": "prj_1"},
            idempotency_key="project-abc",
        )

        assert session.id == "cs_1"
        assert sdk.api_key == "sk_test_123"
        assert captured["idempotency_key"] == "project-abc"
        assert captured["metadata"] == {"project_public_id": "prj_1"}
        assert captured["payment_intent_data"] == {"metadata": {"project_public_id": "prj_1"}}
        assert captured["line_items"][0]["price_data"]["unit_amount"] == 2500
        assert captured["timeout"] > 0

    @pytest.mark.anyio
    async def test_checkout_requires_secret_key(self, monkeypatch):
        from app.settings import settings

        monkeypatch.setattr(settings, "stripe_secret_key", None)
        client = StripeClient(secret_key=None, webhook_secret="whsec_test")

        with pytest.raises(ValueError):
            await client.create_checkout_session(
                amount_cents=2500,
                currency="usd",
                success_url="https://example.com/ok",
                cancel_url="https://example.com/cancel",
                product_name="Shoot",
            )
