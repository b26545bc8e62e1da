from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

import stripe

from src.config import settings
from src.domain.errors import AmbiguousExternalOutcome, PaymentGatewayUnavailable, PaymentRequestError
from src.domain.mail_status import normalize_payment_status
from src.observability import incr_metric, log_event


_CHECKOUT_SESSION_PREFIX = "cs_"
_PAYMENT_INTENT_PREFIX = "pi_"
_http_client_configured = False
# Creates and refunds: a dropped connection may hide an object Stripe already made.
_WRITE_OPERATIONS = frozenset({"create_payment_intent", "create_checkout_session", "refund", "cancel_payment"})


@dataclass
class PaymentObject:
    reference: str
    kind: str  # payment_intent | checkout_session
    gateway_status: str | None
    amount_cents: int
    client_secret: str | None = None
    url: str | None = None


@dataclass
class PaymentStatusResult:
    reference: str
    kind: str
    gateway_status: str | None
    payment_status: str  # pending | paid | failed
    session_status: str | None = None
    payment_intent: str | None = None


@dataclass
class RefundResult:
    refund_id: str
    status: str | None
    payment_intent: str


def _api_key() -> str:
    if not settings.stripe_secret_key:
        raise PaymentRequestError("Missing Stripe secret key")
    global _http_client_configured
    if not _http_client_configured:
        stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)
        _http_client_configured = True
    return settings.stripe_secret_key


def reference_kind(reference: str) -> str:
    return "checkout_session" if reference.startswith(_CHECKOUT_SESSION_PREFIX) else "payment_intent"


def _call(operation: str, fn: Callable[..., Any], **params: Any) -> Any:
    api_key = _api_key()
    try:
        return fn(api_key=api_key, **params)
    except stripe.StripeError as exc:
        status_code = getattr(exc, "http_status", None)
        retryable = (
            isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError))
            or status_code is None
            or status_code >= 500
        )
        incr_metric("payment_gateway.requests.failed", operation=operation, retryable=retryable)
        log_event(
            "payment_gateway_request_failed",
            level=logging.WARNING,
            operation=operation,
            status_code=status_code,
            error_type=type(exc).__name__,
            error=str(exc),
            retryable=retryable,
        )
        if operation in _WRITE_OPERATIONS and isinstance(exc, stripe.APIConnectionError):
            raise AmbiguousExternalOutcome(operation, str(exc), provider="stripe") from exc
        if retryable:
            raise PaymentGatewayUnavailable(f"Stripe {operation} failed: {exc}") from exc
        raise PaymentRequestError(f"Stripe rejected {operation}: {exc}") from exc


def _mail_metadata(metadata: dict[str, Any]) -> dict[str, str]:
    if not metadata.get("mail_piece_id"):
        raise PaymentRequestError("Payment metadata must carry mail_piece_id")
    enriched = {"type": "mail_payment", **metadata}
    return {str(k): str(v) for k, v in enriched.items() if v is not None}


def create_payment_intent(cost_cents: int, metadata: dict[str, Any]) -> PaymentObject:
    mail_metadata = _mail_metadata(metadata)
    intent = _call(
        "create_payment_intent",
        stripe.PaymentIntent.create,
        amount=cost_cents,
        currency=settings.stripe_currency,
        metadata=mail_metadata,
        automatic_payment_methods={"enabled": True},
        idempotency_key=f"mail-piece-{mail_metadata['mail_piece_id']}-intent-{cost_cents}",
    )
    return PaymentObject(
        reference=intent.id,
        kind="payment_intent",
        gateway_status=intent.status,
        amount_cents=cost_cents,
        client_secret=intent.client_secret,
    )


def create_checkout_session(
    cost_cents: int,
    metadata: dict[str, Any],
    success_url: str,
    cancel_url: str,
) -> PaymentObject:
    mail_metadata = _mail_metadata(metadata)
    description = f"{mail_metadata.get('mail_type', 'mail')} ({mail_metadata.get('mail_class', 'standard')})"
    session = _call(
        "create_checkout_session",
        stripe.checkout.Session.create,
        mode="payment",
        line_items=[
            {
                "quantity": 1,
                "price_data": {
                    "currency": settings.stripe_currency,
                    "unit_amount": cost_cents,
                    "product_data": {"name": "Physical mail", "description": description},
                },
            }
        ],
        metadata=mail_metadata,
        payment_intent_data={"metadata": mail_metadata},
        success_url=success_url,
        cancel_url=cancel_url,
        idempotency_key=f"mail-piece-{mail_metadata['mail_piece_id']}-checkout-{cost_cents}",
    )
    return PaymentObject(
        reference=session.id,
        kind="checkout_session",
        gateway_status=session.payment_status,
        amount_cents=cost_cents,
        url=session.url,
    )


def get_payment_status(payment_reference: str) -> PaymentStatusResult:
    kind = reference_kind(payment_reference)
    if kind == "checkout_session":
        session = _call("get_checkout_session", stripe.checkout.Session.retrieve, id=payment_reference)
        return PaymentStatusResult(
            reference=payment_reference,
            kind=kind,
            gateway_status=session.payment_status,
            session_status=session.status,
            payment_intent=session.payment_intent,
            payment_status=normalize_payment_status(
                reference_kind=kind,
                gateway_status=session.payment_status,
                session_status=session.status,
            ),
        )
    intent = _call("get_payment_intent", stripe.PaymentIntent.retrieve, id=payment_reference)
    return PaymentStatusResult(
        reference=payment_reference,
        kind=kind,
        gateway_status=intent.status,
        payment_intent=intent.id,
        payment_status=normalize_payment_status(reference_kind=kind, gateway_status=intent.status),
    )


def refund(payment_reference: str, reason: str) -> RefundResult:
    payment_intent = payment_reference
    if reference_kind(payment_reference) == "checkout_session":
        payment_intent = get_payment_status(payment_reference).payment_intent or ""
    if not payment_intent.startswith(_PAYMENT_INTENT_PREFIX):
        raise PaymentRequestError(f"No payment to refund for {payment_reference}")
    created = _call(
        "refund",
        stripe.Refund.create,
        payment_intent=payment_intent,
        reason="requested_by_customer",
        metadata={"reason": reason[:500], "payment_reference": payment_reference},
        idempotency_key=f"refund-{payment_reference}",
    )
    return RefundResult(refund_id=created.id, status=created.status, payment_intent=payment_intent)


def cancel_payment(payment_reference: str) -> str | None:
    """Expire a checkout session or cancel a payment intent so it can no longer be paid."""
    if reference_kind(payment_reference) == "checkout_session":
        session = _call("cancel_payment", stripe.checkout.Session.expire, session=payment_reference)
        return session.status
    intent = _call("cancel_payment", stripe.PaymentIntent.cancel, intent=payment_reference)
    return intent.status


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """Raise ``stripe.SignatureVerificationError`` unless the Stripe-Signature header matches."""
    if not signature:
        raise stripe.SignatureVerificationError("Missing Stripe-Signature header", signature, raw_body)
    stripe.WebhookSignature.verify_header(
        raw_body.decode("utf-8"),
        signature,
        secret,
        tolerance=settings.stripe_webhook_tolerance_seconds,
    )


STRIPE_IMPLEMENTED_OPERATION_REGISTRY: dict[str, list[str]] = {
    "create_payment_intent": ["PaymentIntent.create"],
    "create_checkout_session": ["checkout.Session.create"],
    "get_payment_status": ["PaymentIntent.retrieve", "checkout.Session.retrieve"],
    "refund": ["Refund.create", "checkout.Session.retrieve"],
    "cancel_payment": ["checkout.Session.expire", "PaymentIntent.cancel"],
    "verify_webhook_signature": ["WebhookSignature.verify_header"],
}
