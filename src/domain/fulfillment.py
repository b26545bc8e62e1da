"""Fulfillment operations shared by the user routes, both webhooks and reconciliation.

Everything here reaches the status column through ``transition_mail_piece``;
the only direct writes are the raw carrier mirror fields and the
post-submission refund flag, neither of which is part of the state machine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from src.domain.errors import (
    AmbiguousExternalOutcome,
    CarrierSubmissionError,
    InvalidTransition,
    MailFulfillmentError,
    UnknownMailPiece,
)
from src.domain.mail_pieces import (
    get_mail_piece,
    get_owned_row,
    mark_payment_refunded,
    update_carrier_tracking,
)
from src.domain.mail_status import normalize_carrier_status
from src.domain.pricing import quote_mail_piece_cents
from src.domain.transitions import TransitionResult, transition_mail_piece
from src.observability import incr_metric, log_event
from src.providers.lob import carrier
from src.providers.lob.carrier import CarrierSubmission
from src.providers.stripe import client as payment_gateway
from src.providers.stripe.client import PaymentObject


ADDRESSES_TABLE = "mail_addresses"
FILES_TABLE = "files"
_PAID_OR_LATER = frozenset({"paid", "submitted", "in_transit", "delivered", "returned"})
_SUBMITTED_OR_LATER = frozenset({"submitted", "in_transit", "delivered", "returned"})


@dataclass
class StatusOutcome:
    """What applying an external status did to a piece."""

    outcome: str  # transitioned | noop | unmapped | rejected | ignored
    status: str
    mail_piece: dict[str, Any]
    detail: str | None = None


def _require_piece(mail_piece_id: str, *, user_id: str | None = None) -> dict[str, Any]:
    piece = get_mail_piece(mail_piece_id, user_id=user_id)
    if not piece:
        raise UnknownMailPiece(mail_piece_id)
    return piece


def _payment_metadata(piece: dict[str, Any]) -> dict[str, Any]:
    return {
        "mail_piece_id": piece["id"],
        "user_id": piece.get("user_id"),
        "mail_type": piece.get("mail_type"),
        "mail_class": piece.get("mail_class"),
        "mail_size": piece.get("mail_size"),
    }


def start_payment(
    mail_piece_id: str,
    *,
    user_id: str,
    kind: str,
    success_url: str | None = None,
    cancel_url: str | None = None,
    request_id: str | None = None,
) -> tuple[PaymentObject, TransitionResult]:
    """Create an intent or checkout session and move ``draft -> pending_payment``."""
    piece = _require_piece(mail_piece_id, user_id=user_id)
    if piece["status"] != "draft":
        raise InvalidTransition(mail_piece_id, piece["status"], "pending_payment", "payment already started")

    cost_cents = quote_mail_piece_cents(piece["mail_type"], piece["mail_class"])
    metadata = _payment_metadata(piece)
    if kind == "checkout_session":
        payment = payment_gateway.create_checkout_session(
            cost_cents,
            metadata,
            success_url or "",
            cancel_url or "",
        )
    else:
        payment = payment_gateway.create_payment_intent(cost_cents, metadata)

    try:
        result = transition_mail_piece(
            mail_piece_id,
            "pending_payment",
            source="user",
            description=f"Payment {kind.replace('_', ' ')} created",
            updates={"payment_reference": payment.reference, "cost_cents": cost_cents},
            expected_status="draft",
            request_id=request_id,
        )
    except InvalidTransition:
        latest = get_mail_piece(mail_piece_id) or piece
        if latest.get("payment_reference") == payment.reference:
            # Same idempotent gateway object the winning request stored.
            return payment, TransitionResult(
                mail_piece=latest,
                applied=False,
                previous_status=latest["status"],
                status=latest["status"],
            )
        _cancel_orphan_payment(payment, mail_piece_id=mail_piece_id, request_id=request_id)
        raise InvalidTransition(mail_piece_id, latest["status"], "pending_payment", "payment already started")
    return payment, result


def _cancel_orphan_payment(payment: PaymentObject, *, mail_piece_id: str, request_id: str | None) -> None:
    """Make a gateway object that lost the race to the piece unpayable."""
    try:
        gateway_status = payment_gateway.cancel_payment(payment.reference)
    except MailFulfillmentError as exc:
        incr_metric("payment.orphan_cancel_failed", kind=payment.kind)
        log_event(
            "payment_orphan_cancel_failed",
            level=logging.ERROR,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            payment_reference=payment.reference,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return
    incr_metric("payment.orphan_canceled", kind=payment.kind)
    log_event(
        "payment_orphan_canceled",
        level=logging.WARNING,
        request_id=request_id,
        mail_piece_id=mail_piece_id,
        payment_reference=payment.reference,
        gateway_status=gateway_status,
    )


def apply_payment_status(
    piece: dict[str, Any],
    payment_status: str,
    *,
    source: str,
    description: str,
    raw_payload: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> StatusOutcome:
    """Drive a piece to ``paid`` or ``failed`` from a gateway-reported payment status.

    A ``draft`` piece that already carries a payment reference is first moved
    to ``pending_payment`` so no step of the lifecycle is skipped. Raises
    ``InvalidTransition`` when the piece cannot take the reported status.
    """
    mail_piece_id = piece["id"]
    current = piece["status"]

    if payment_status == "pending":
        return StatusOutcome(outcome="noop", status=current, mail_piece=piece, detail="payment still pending")
    if payment_status == "paid" and current in _PAID_OR_LATER:
        incr_metric("payment.status.duplicate", status=current)
        log_event(
            "payment_status_already_applied",
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            status=current,
            source=source,
        )
        return StatusOutcome(outcome="noop", status=current, mail_piece=piece)
    if payment_status == "failed" and current == "failed":
        return StatusOutcome(outcome="noop", status=current, mail_piece=piece)
    if payment_status == "failed" and current not in {"draft", "pending_payment"}:
        # paid -> failed is reserved for refunds; a late failure event for an earlier attempt changes nothing
        log_event(
            "payment_failure_after_settlement",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            status=current,
            source=source,
        )
        return StatusOutcome(outcome="noop", status=current, mail_piece=piece, detail="stale payment failure")

    target = "paid" if payment_status == "paid" else "failed"
    if current == "draft" and piece.get("payment_reference"):
        transition_mail_piece(
            mail_piece_id,
            "pending_payment",
            source=source,
            description="Payment attempt found for draft mail piece",
            raw_payload=raw_payload,
            request_id=request_id,
        )

    result = transition_mail_piece(
        mail_piece_id,
        target,
        source=source,
        description=description,
        raw_payload=raw_payload,
        request_id=request_id,
    )
    return StatusOutcome(
        outcome="transitioned" if result.applied else "noop",
        status=result.status,
        mail_piece=result.mail_piece,
    )


def confirm_payment(mail_piece_id: str, *, user_id: str, request_id: str | None = None) -> StatusOutcome:
    """Ask the gateway directly instead of waiting for the webhook."""
    piece = _require_piece(mail_piece_id, user_id=user_id)
    if not piece.get("payment_reference"):
        raise InvalidTransition(mail_piece_id, piece["status"], "paid", "no payment attempt recorded")
    gateway = payment_gateway.get_payment_status(piece["payment_reference"])
    outcome = apply_payment_status(
        piece,
        gateway.payment_status,
        source="user",
        description=f"Payment confirmed with gateway status {gateway.gateway_status}",
        raw_payload={"reference": gateway.reference, "gateway_status": gateway.gateway_status},
        request_id=request_id,
    )
    if outcome.status == "paid":
        submitted = submit_after_payment(mail_piece_id, source="system", request_id=request_id)
        if submitted:
            return StatusOutcome(outcome=outcome.outcome, status=submitted.status, mail_piece=submitted.mail_piece)
    return outcome


def refund_payment(
    mail_piece_id: str,
    *,
    user_id: str | None,
    reason: str,
    source: str = "user",
    request_id: str | None = None,
) -> TransitionResult:
    """Refund a paid piece that has not reached the carrier and mark it ``failed``.

    The move to ``failed`` only applies while the piece is still ``paid`` with
    no carrier reference. If a submission lands while the gateway refund is in
    flight, the refund is recorded on the piece as ``refund_after_submission``
    and ``InvalidTransition`` is raised.
    """
    piece = _require_piece(mail_piece_id, user_id=user_id)
    if piece.get("carrier_reference"):
        raise InvalidTransition(mail_piece_id, piece["status"], "failed", "mail piece already submitted to carrier")
    if piece["status"] != "paid":
        raise InvalidTransition(mail_piece_id, piece["status"], "failed", "only paid mail pieces can be refunded")

    refund = payment_gateway.refund(piece["payment_reference"], reason)
    log_event(
        "mail_payment_refunded",
        request_id=request_id,
        mail_piece_id=mail_piece_id,
        refund_id=refund.refund_id,
        refund_status=refund.status,
    )
    try:
        return transition_mail_piece(
            mail_piece_id,
            "failed",
            source=source,
            description=f"Payment refunded: {reason}",
            raw_payload={"refund_id": refund.refund_id, "refund_status": refund.status},
            updates={"payment_status": "refunded"},
            expected_status="paid",
            require_null_carrier_reference=True,
            request_id=request_id,
        )
    except InvalidTransition:
        latest = get_mail_piece(mail_piece_id) or piece
        if latest["status"] in _SUBMITTED_OR_LATER:
            _record_refund_after_submission(latest, request_id=request_id)
        raise


def _record_refund_after_submission(piece: dict[str, Any], *, request_id: str | None) -> dict[str, Any]:
    updated = mark_payment_refunded(piece["id"]) or piece
    incr_metric("payment.refund_after_submission")
    log_event(
        "refund_after_submission",
        level=logging.WARNING,
        request_id=request_id,
        mail_piece_id=piece["id"],
        status=piece["status"],
        carrier_reference=piece.get("carrier_reference"),
    )
    return updated


def apply_gateway_refund(
    piece: dict[str, Any],
    *,
    raw_payload: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> StatusOutcome:
    """Handle a refund that originated at the gateway (dashboard, dispute)."""
    mail_piece_id = piece["id"]
    current = piece["status"]
    if current == "paid" and not piece.get("carrier_reference"):
        try:
            result = transition_mail_piece(
                mail_piece_id,
                "failed",
                source="webhook",
                description="Payment refunded at gateway",
                raw_payload=raw_payload,
                updates={"payment_status": "refunded"},
                expected_status="paid",
                require_null_carrier_reference=True,
                request_id=request_id,
            )
            return StatusOutcome(outcome="transitioned", status=result.status, mail_piece=result.mail_piece)
        except InvalidTransition:
            piece = get_mail_piece(mail_piece_id) or piece
            current = piece["status"]

    if current in _SUBMITTED_OR_LATER:
        updated = _record_refund_after_submission(piece, request_id=request_id)
        return StatusOutcome(outcome="noop", status=current, mail_piece=updated, detail="refund_after_submission")

    log_event(
        "gateway_refund_ignored",
        request_id=request_id,
        mail_piece_id=mail_piece_id,
        status=current,
        payment_status=piece.get("payment_status"),
    )
    return StatusOutcome(outcome="ignored", status=current, mail_piece=piece)


def _resolve_collaborators(piece: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any], str]:
    user_id = piece["user_id"]
    sender = get_owned_row(ADDRESSES_TABLE, piece["sender_address_id"], user_id)
    recipient = get_owned_row(ADDRESSES_TABLE, piece["recipient_address_id"], user_id)
    document = get_owned_row(FILES_TABLE, piece["file_id"], user_id)
    if not sender or not recipient:
        raise CarrierSubmissionError(f"Address missing for mail piece {piece['id']}")
    document_url = (document or {}).get("file_url")
    if not document_url:
        raise CarrierSubmissionError(f"Document missing for mail piece {piece['id']}")
    return sender, recipient, document_url


def record_submission(
    piece: dict[str, Any],
    submission: CarrierSubmission,
    *,
    source: str,
    description: str,
    request_id: str | None = None,
) -> TransitionResult:
    metadata = dict(piece.get("metadata") or {})
    metadata["carrier"] = {
        "reference": submission.carrier_reference,
        "status": submission.carrier_status,
        "simulated": submission.simulated,
        "expected_delivery_date": submission.raw.get("expected_delivery_date"),
    }
    updates: dict[str, Any] = {
        "carrier_reference": submission.carrier_reference,
        "carrier_status": submission.carrier_status,
        "tracking_number": submission.tracking_number,
        "metadata": metadata,
    }
    if submission.cost_cents is not None:
        updates["cost_cents"] = submission.cost_cents
    return transition_mail_piece(
        piece["id"],
        "submitted",
        source=source,
        description=description,
        raw_payload=submission.raw,
        updates=updates,
        request_id=request_id,
    )


def submit_paid_mail_piece(
    mail_piece_id: str,
    *,
    source: str,
    user_id: str | None = None,
    request_id: str | None = None,
) -> TransitionResult:
    """Send a ``paid`` piece to the carrier exactly once.

    A piece that already has a carrier reference is returned unchanged
    without calling the carrier.
    """
    piece = _require_piece(mail_piece_id, user_id=user_id)
    if piece.get("carrier_reference"):
        incr_metric("carrier.submission.skipped", reason="already_submitted")
        log_event(
            "carrier_submission_skipped",
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            carrier_reference=piece["carrier_reference"],
        )
        return TransitionResult(mail_piece=piece, applied=False, previous_status=piece["status"], status=piece["status"])
    if piece["status"] != "paid":
        raise InvalidTransition(mail_piece_id, piece["status"], "submitted", "mail piece is not paid")
    if piece.get("payment_status") != "paid":
        raise InvalidTransition(mail_piece_id, piece["status"], "submitted", "payment is not settled")

    sender, recipient, document_url = _resolve_collaborators(piece)
    submission = carrier.submit(piece, document_url, sender=sender, recipient=recipient)
    return record_submission(
        piece,
        submission,
        source=source,
        description=f"Submitted to carrier as {submission.carrier_reference}",
        request_id=request_id,
    )


def submit_after_payment(mail_piece_id: str, *, source: str, request_id: str | None = None) -> TransitionResult | None:
    """Best-effort submission right after payment; reconciliation retries whatever fails here."""
    try:
        return submit_paid_mail_piece(mail_piece_id, source=source, request_id=request_id)
    except AmbiguousExternalOutcome as exc:
        incr_metric("carrier.submission.deferred", reason="ambiguous")
        log_event(
            "carrier_submission_deferred",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            reason="ambiguous",
            error=str(exc),
        )
    except MailFulfillmentError as exc:
        incr_metric("carrier.submission.deferred", reason=exc.category)
        log_event(
            "carrier_submission_deferred",
            level=logging.ERROR,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            reason=exc.category,
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return None


def apply_carrier_status(
    piece: dict[str, Any],
    raw_status: str | None,
    *,
    tracking_number: str | None = None,
    source: str,
    raw_payload: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> StatusOutcome:
    """Mirror the raw carrier status, then move the normalized status if the mapping allows it."""
    mail_piece_id = piece["id"]
    updated = update_carrier_tracking(
        mail_piece_id,
        carrier_status=raw_status,
        tracking_number=tracking_number,
    ) or piece

    target = normalize_carrier_status(raw_status)
    if target is None:
        incr_metric("carrier.status.unmapped")
        log_event(
            "carrier_status_unmapped",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            carrier_status=raw_status,
            status=piece["status"],
        )
        return StatusOutcome(outcome="unmapped", status=piece["status"], mail_piece=updated)

    try:
        result = transition_mail_piece(
            mail_piece_id,
            target,
            source=source,
            description=f"Carrier reported {raw_status}",
            raw_payload=raw_payload,
            request_id=request_id,
        )
    except InvalidTransition as exc:
        incr_metric("carrier.status.out_of_order", current=exc.current, target=target)
        log_event(
            "carrier_status_out_of_order",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            carrier_status=raw_status,
            current=exc.current,
            target=target,
        )
        return StatusOutcome(outcome="rejected", status=exc.current or piece["status"], mail_piece=updated, detail=exc.reason)

    return StatusOutcome(
        outcome="transitioned" if result.applied else "noop",
        status=result.status,
        mail_piece=result.mail_piece,
    )


def sync_carrier_status(
    mail_piece_id: str,
    *,
    user_id: str | None = None,
    request_id: str | None = None,
) -> StatusOutcome:
    piece = _require_piece(mail_piece_id, user_id=user_id)
    if not piece.get("carrier_reference"):
        raise InvalidTransition(mail_piece_id, piece["status"], piece["status"], "mail piece has not been submitted")
    status = carrier.get_status(piece["carrier_reference"])
    return apply_carrier_status(
        piece,
        status.carrier_status,
        tracking_number=status.tracking_number,
        source="system",
        raw_payload={"carrier_status": status.carrier_status, "events": status.events},
        request_id=request_id,
    )
