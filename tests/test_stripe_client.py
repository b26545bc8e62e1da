from __future__ import annotations

import types
from types import SimpleNamespace

import pytest
import stripe

from src.domain.errors import AmbiguousExternalOutcome, PaymentGatewayUnavailable, PaymentRequestError
from src.providers.stripe import client as stripe_client


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(stripe_client.settings, "stripe_secret_key", "sk_test_123")
    monkeypatch.setattr(stripe_client, "_http_client_configured", True)


def test_missing_secret_key_is_a_request_error():
    with pytest.raises(PaymentRequestError):
        stripe_client.get_payment_status("pi_1")


def test_payment_metadata_must_carry_mail_piece_id(configured):
    with pytest.raises(PaymentRequestError):
        stripe_client.create_payment_intent(60, {"user_id": "user-1"})


def test_create_payment_intent_sends_amount_metadata_and_idempotency_key(configured, monkeypatch):
    captured = {}

    def _create(**params):
        captured.update(params)
        return SimpleNamespace(id="pi_new", status="requires_payment_method", client_secret="pi_new_secret")

    monkeypatch.setattr(stripe.PaymentIntent, "create", _create)

    payment = stripe_client.create_payment_intent(60, {"mail_piece_id": "mp-1", "mail_type": "letter", "mail_size": None})

    assert payment.reference == "pi_new"
    assert payment.client_secret == "pi_new_secret"
    assert captured["amount"] == 60
    assert captured["api_key"] == "sk_test_123"
    assert captured["metadata"] == {"type": "mail_payment", "mail_piece_id": "mp-1", "mail_type": "letter"}
    assert captured["idempotency_key"] == "mail-piece-mp-1-intent-60"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (stripe.APIConnectionError("network down"), PaymentGatewayUnavailable),
        (stripe.RateLimitError("slow down", http_status=429), PaymentGatewayUnavailable),
        (stripe.APIError("server error", http_status=500), PaymentGatewayUnavailable),
        (stripe.CardError("card declined", "card", "card_declined", http_status=402), PaymentRequestError),
        (stripe.InvalidRequestError("no such intent", "id", http_status=404), PaymentRequestError),
        (stripe.AuthenticationError("bad key", http_status=401), PaymentRequestError),
    ],
)
def test_stripe_errors_map_to_domain_categories(configured, monkeypatch, error, expected):
    def _retrieve(**params):
        raise error

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _retrieve)

    with pytest.raises(expected):
        stripe_client.get_payment_status("pi_1")


def test_checkout_session_status_is_normalized(configured, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda **params: SimpleNamespace(payment_status="paid", status="complete", payment_intent="pi_from_session"),
    )

    result = stripe_client.get_payment_status("cs_test_1")

    assert result.kind == "checkout_session"
    assert result.payment_status == "paid"
    assert result.payment_intent == "pi_from_session"


def test_refund_of_checkout_session_targets_its_payment_intent(configured, monkeypatch):
    captured = {}
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda **params: SimpleNamespace(payment_status="paid", status="complete", payment_intent="pi_from_session"),
    )

    def _refund(**params):
        captured.update(params)
        return SimpleNamespace(id="re_1", status="succeeded")

    monkeypatch.setattr(stripe.Refund, "create", _refund)

    result = stripe_client.refund("cs_test_1", "customer request")

    assert result.refund_id == "re_1"
    assert captured["payment_intent"] == "pi_from_session"
    assert captured["idempotency_key"] == "refund-cs_test_1"


def test_refund_without_payment_intent_is_rejected(configured, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session,
        "retrieve",
        lambda **params: SimpleNamespace(payment_status="unpaid", status="expired", payment_intent=None),
    )

    with pytest.raises(PaymentRequestError):
        stripe_client.refund("cs_test_1", "nothing to refund")


def test_checkout_session_carries_stable_idempotency_key(configured, monkeypatch):
    captured = {}

    def _create(**params):
        captured.update(params)
        return SimpleNamespace(id="cs_new", payment_status="unpaid", url="https://checkout.stripe.test/cs_new")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)

    session = stripe_client.create_checkout_session(
        90,
        {"mail_piece_id": "mp-1", "mail_type": "letter", "mail_class": "usps_priority"},
        "https://app.example/ok",
        "https://app.example/cancel",
    )

    assert session.reference == "cs_new"
    assert captured["idempotency_key"] == "mail-piece-mp-1-checkout-90"
    assert captured["metadata"]["mail_piece_id"] == "mp-1"


def test_connection_loss_on_a_write_is_ambiguous(configured, monkeypatch):
    def _create(**params):
        raise stripe.APIConnectionError("read timed out")

    monkeypatch.setattr(stripe.checkout.Session, "create", _create)
    monkeypatch.setattr(stripe.Refund, "create", _create)

    with pytest.raises(AmbiguousExternalOutcome) as created:
        stripe_client.create_checkout_session(60, {"mail_piece_id": "mp-1"}, "https://a.example", "https://b.example")
    with pytest.raises(AmbiguousExternalOutcome) as refunded:
        stripe_client.refund("pi_1", "customer request")

    assert created.value.provider == "stripe"
    assert created.value.category == "unknown"
    assert refunded.value.operation == "refund"


def test_cancel_payment_expires_sessions_and_cancels_intents(configured, monkeypatch):
    calls = []

    def _expire(**params):
        calls.append(("expire", params["session"]))
        return SimpleNamespace(status="expired")

    def _cancel(**params):
        calls.append(("cancel", params["intent"]))
        return SimpleNamespace(status="canceled")

    monkeypatch.setattr(stripe.checkout.Session, "expire", _expire)
    monkeypatch.setattr(stripe.PaymentIntent, "cancel", _cancel)

    assert stripe_client.cancel_payment("cs_orphan") == "expired"
    assert stripe_client.cancel_payment("pi_orphan") == "canceled"
    assert calls == [("expire", "cs_orphan"), ("cancel", "pi_orphan")]


def test_reference_kind_by_prefix():
    assert stripe_client.reference_kind("cs_test_1") == "checkout_session"
    assert stripe_client.reference_kind("pi_1") == "payment_intent"


def test_registry_covers_all_public_client_operations():
    excluded = {"reference_kind"}
    public_callables = {
        name
        for name, value in vars(stripe_client).items()
        if isinstance(value, types.FunctionType)
        and not name.startswith("_")
        and name not in excluded
        and value.__module__ == stripe_client.__name__
    }
    assert public_callables == set(stripe_client.STRIPE_IMPLEMENTED_OPERATION_REGISTRY)
