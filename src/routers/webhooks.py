from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from pydantic import ValidationError

from src import db
from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.domain import fulfillment
from src.domain.errors import InvalidTransition, MailFulfillmentError
from src.domain.mail_pieces import (
    get_mail_piece,
    get_mail_piece_by_carrier_reference,
    get_mail_piece_by_payment_reference,
)
from src.domain.mail_status import carrier_status_from_event_type
from src.models.webhooks import (
    CarrierEventEnvelope,
    CarrierStatusPayload,
    PaymentEventEnvelope,
    WebhookEventListItem,
    WebhookIngestResponse,
)
from src.observability import incr_metric, log_event
from src.providers.stripe import client as payment_gateway


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
WEBHOOK_EVENTS_TABLE = "webhook_events"
_LOB_SIGNATURE_MODES = {"permissive_audit", "enforce"}
_FINAL_EVENT_STATUSES = {"processed", "ignored"}

_PAYMENT_EVENT_STATUS = {
    "payment_intent.succeeded": "paid",
    "checkout.session.completed": "paid",
    "checkout.session.async_payment_succeeded": "paid",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "failed",
    "checkout.session.expired": "failed",
    "checkout.session.async_payment_failed": "failed",
    "charge.refunded": "refunded",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _bad_payload(provider_slug: str, reason: str, message: str, request_id: str | None) -> HTTPException:
    incr_metric("webhook.events.rejected", provider_slug=provider_slug, reason=reason)
    log_event(
        "webhook_rejected",
        level=logging.WARNING,
        request_id=request_id,
        provider_slug=provider_slug,
        reason=reason,
        message=message,
    )
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"type": "webhook_payload_invalid", "provider": provider_slug, "reason": reason, "message": message},
    )


def _parse_json(raw_body: bytes, provider_slug: str, request_id: str | None) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise _bad_payload(provider_slug, "malformed_json", "Body is not valid JSON", request_id) from exc
    if not isinstance(payload, dict):
        raise _bad_payload(provider_slug, "schema_invalid", "Body must be a JSON object", request_id)
    return payload


# --- event log -------------------------------------------------------------


def _get_webhook_event(provider_slug: str, event_key: str) -> dict[str, Any] | None:
    result = (
        db.supabase.table(WEBHOOK_EVENTS_TABLE)
        .select("id, provider_slug, event_key, event_type, status")
        .eq("provider_slug", provider_slug)
        .eq("event_key", event_key)
        .execute()
    )
    return result.data[0] if result.data else None


def _claim_event(provider_slug: str, event_key: str, event_type: str, payload: dict[str, Any]) -> bool:
    """Record receipt of an event. Returns False when it was already fully handled."""
    existing = _get_webhook_event(provider_slug, event_key)
    if existing:
        if existing.get("status") in _FINAL_EVENT_STATUSES:
            return False
        # an earlier delivery failed transiently; process again
        db.supabase.table(WEBHOOK_EVENTS_TABLE).update({"status": "received", "last_error": None}).eq(
            "id", existing["id"]
        ).execute()
        return True
    try:
        db.supabase.table(WEBHOOK_EVENTS_TABLE).insert(
            {
                "provider_slug": provider_slug,
                "event_key": event_key,
                "event_type": event_type,
                "status": "received",
                "payload": payload,
            }
        ).execute()
    except Exception as exc:
        # unique violation on (provider_slug, event_key): a concurrent delivery got there first
        if "duplicate" not in str(exc).lower() and "unique" not in str(exc).lower():
            raise
        concurrent = _get_webhook_event(provider_slug, event_key)
        return not (concurrent and concurrent.get("status") in _FINAL_EVENT_STATUSES)
    return True


def _finish_event(
    provider_slug: str,
    event_key: str,
    *,
    event_status: str,
    outcome: str | None = None,
    mail_piece_id: str | None = None,
    last_error: str | None = None,
) -> None:
    db.supabase.table(WEBHOOK_EVENTS_TABLE).update(
        {
            "status": event_status,
            "outcome": outcome,
            "mail_piece_id": mail_piece_id,
            "last_error": last_error,
            "processed_at": _now_iso(),
        }
    ).eq("provider_slug", provider_slug).eq("event_key", event_key).execute()


def _duplicate_response(provider_slug: str, event_key: str, event_type: str, request_id: str | None) -> WebhookIngestResponse:
    incr_metric("webhook.duplicate_ignored", provider_slug=provider_slug)
    log_event(
        "webhook_duplicate_ignored",
        request_id=request_id,
        provider_slug=provider_slug,
        event_type=event_type,
        event_key=event_key,
    )
    return WebhookIngestResponse(status="duplicate_ignored", event_key=event_key, event_type=event_type)


def _ignored(
    provider_slug: str,
    event_key: str,
    event_type: str,
    *,
    outcome: str,
    request_id: str | None,
    mail_piece_id: str | None = None,
) -> WebhookIngestResponse:
    _finish_event(provider_slug, event_key, event_status="ignored", outcome=outcome, mail_piece_id=mail_piece_id)
    incr_metric("webhook.events.ignored", provider_slug=provider_slug, outcome=outcome)
    log_event(
        "webhook_ignored",
        request_id=request_id,
        provider_slug=provider_slug,
        event_type=event_type,
        event_key=event_key,
        outcome=outcome,
        mail_piece_id=mail_piece_id,
    )
    return WebhookIngestResponse(
        status="ignored",
        event_key=event_key,
        event_type=event_type,
        mail_piece_id=mail_piece_id,
        outcome=outcome,
    )


def _processed(
    provider_slug: str,
    event_key: str,
    event_type: str,
    *,
    outcome: fulfillment.StatusOutcome,
    request_id: str | None,
) -> WebhookIngestResponse:
    mail_piece_id = outcome.mail_piece.get("id")
    _finish_event(
        provider_slug,
        event_key,
        event_status="processed",
        outcome=outcome.outcome,
        mail_piece_id=mail_piece_id,
    )
    incr_metric("webhook.events.processed", provider_slug=provider_slug, outcome=outcome.outcome)
    log_event(
        "webhook_processed",
        request_id=request_id,
        provider_slug=provider_slug,
        event_type=event_type,
        event_key=event_key,
        mail_piece_id=mail_piece_id,
        outcome=outcome.outcome,
        status=outcome.status,
    )
    return WebhookIngestResponse(
        status="processed",
        event_key=event_key,
        event_type=event_type,
        mail_piece_id=mail_piece_id,
        outcome=outcome.outcome,
        mail_piece_status=outcome.status,
        detail=outcome.detail,
    )


def _transient_failure(
    provider_slug: str,
    event_key: str,
    event_type: str,
    exc: Exception,
    request_id: str | None,
) -> HTTPException:
    try:
        _finish_event(provider_slug, event_key, event_status="failed", last_error=str(exc)[:500])
    except Exception as log_exc:
        log_event(
            "webhook_event_log_failed",
            level=logging.ERROR,
            request_id=request_id,
            provider_slug=provider_slug,
            event_key=event_key,
            error=str(log_exc),
        )
    incr_metric("webhook.events.failed", provider_slug=provider_slug)
    log_event(
        "webhook_failed",
        level=logging.ERROR,
        request_id=request_id,
        provider_slug=provider_slug,
        event_type=event_type,
        event_key=event_key,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"type": "webhook_processing_failed", "provider": provider_slug, "retryable": True},
    )


# --- payment ---------------------------------------------------------------


def _verify_payment_signature(raw_body: bytes, request: Request, request_id: str | None) -> bool:
    secret = settings.stripe_webhook_secret
    if not secret:
        incr_metric("webhook.signature.unverified", provider_slug="payment")
        log_event(
            "webhook_signature_not_configured",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="payment",
        )
        return False
    try:
        payment_gateway.verify_webhook_signature(raw_body, request.headers.get("Stripe-Signature"), secret)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        incr_metric("webhook.signature.rejected", provider_slug="payment")
        incr_metric("webhook.events.rejected", provider_slug="payment", reason="invalid_signature")
        log_event(
            "webhook_signature_rejected",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="payment",
            error=str(exc),
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "type": "webhook_signature_invalid",
                "provider": "payment",
                "message": "Payment webhook signature verification failed",
            },
        ) from exc
    incr_metric("webhook.signature.verified", provider_slug="payment")
    return True


def _resolve_payment_piece(payment_object: dict[str, Any]) -> dict[str, Any] | None:
    metadata = payment_object.get("metadata") or {}
    mail_piece_id = metadata.get("mail_piece_id") if isinstance(metadata, dict) else None
    if mail_piece_id:
        piece = get_mail_piece(str(mail_piece_id))
        if piece:
            return piece
    for reference in (payment_object.get("id"), payment_object.get("payment_intent")):
        if isinstance(reference, str) and reference:
            piece = get_mail_piece_by_payment_reference(reference)
            if piece:
                return piece
    return None


def _payment_status_for_event(event_type: str, payment_object: dict[str, Any]) -> str | None:
    payment_status = _PAYMENT_EVENT_STATUS.get(event_type)
    if event_type == "checkout.session.completed" and payment_object.get("payment_status") != "paid":
        # async payment methods settle later through async_payment_succeeded
        return None
    return payment_status


@router.post("/payment", response_model=WebhookIngestResponse)
async def ingest_payment_webhook(request: Request, background_tasks: BackgroundTasks):
    req_id = _request_id(request)
    raw_body = await request.body()
    incr_metric("webhook.events.received", provider_slug="payment")
    signature_verified = _verify_payment_signature(raw_body, request, req_id)

    payload = _parse_json(raw_body, "payment", req_id)
    try:
        envelope = PaymentEventEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise _bad_payload("payment", "schema_invalid", str(exc.errors()[:3]), req_id) from exc

    event_type = envelope.type
    event_key = envelope.id
    payment_object = envelope.data.object
    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="payment",
        event_type=event_type,
        event_key=event_key,
        signature_verified=signature_verified,
    )

    try:
        if not _claim_event("payment", event_key, event_type, payload):
            return _duplicate_response("payment", event_key, event_type, req_id)

        payment_status = _payment_status_for_event(event_type, payment_object)
        if payment_status is None:
            return _ignored("payment", event_key, event_type, outcome="unhandled_event_type", request_id=req_id)

        piece = _resolve_payment_piece(payment_object)
        if not piece:
            return _ignored("payment", event_key, event_type, outcome="unknown_mail_piece", request_id=req_id)

        if payment_status == "refunded":
            outcome = fulfillment.apply_gateway_refund(piece, raw_payload=payload, request_id=req_id)
            return _processed("payment", event_key, event_type, outcome=outcome, request_id=req_id)

        references = {payment_object.get("id"), payment_object.get("payment_intent")}
        if piece.get("payment_reference") not in references:
            log_event(
                "payment_reference_mismatch",
                level=logging.WARNING,
                request_id=req_id,
                mail_piece_id=piece["id"],
                payment_reference=piece.get("payment_reference"),
                event_object_id=payment_object.get("id"),
            )
            return _ignored(
                "payment",
                event_key,
                event_type,
                outcome="reference_mismatch",
                request_id=req_id,
                mail_piece_id=piece["id"],
            )

        try:
            outcome = fulfillment.apply_payment_status(
                piece,
                payment_status,
                source="webhook",
                description=f"Payment webhook {event_type}",
                raw_payload=payload,
                request_id=req_id,
            )
        except InvalidTransition as exc:
            outcome = fulfillment.StatusOutcome(
                outcome="rejected",
                status=exc.current or piece["status"],
                mail_piece=piece,
                detail=exc.reason,
            )

        if outcome.outcome == "transitioned" and outcome.status == "paid":
            background_tasks.add_task(
                fulfillment.submit_after_payment,
                piece["id"],
                source="system",
                request_id=req_id,
            )
        return _processed("payment", event_key, event_type, outcome=outcome, request_id=req_id)
    except MailFulfillmentError as exc:
        if exc.retryable:
            raise _transient_failure("payment", event_key, event_type, exc, req_id) from exc
        return _ignored("payment", event_key, event_type, outcome=type(exc).__name__, request_id=req_id)
    except HTTPException:
        raise
    except Exception as exc:
        raise _transient_failure("payment", event_key, event_type, exc, req_id) from exc


# --- carrier ---------------------------------------------------------------


def _invalid_signature_error(*, reason: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "type": "webhook_signature_invalid",
            "provider": "carrier",
            "reason": reason,
            "message": message,
        },
    )


def _parse_lob_signature_timestamp(raw_timestamp: str) -> datetime | None:
    text = str(raw_timestamp).strip()
    if not text:
        return None
    if text.isdigit():
        try:
            return datetime.fromtimestamp(int(text), tz=timezone.utc)
        except (ValueError, OSError):
            return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


def _verify_lob_signature(
    *,
    raw_body: bytes,
    request: Request,
    request_id: str | None,
) -> dict[str, Any]:
    raw_mode = str(settings.lob_webhook_signature_mode or "permissive_audit").strip().lower()
    mode = raw_mode if raw_mode in _LOB_SIGNATURE_MODES else "permissive_audit"
    tolerance_seconds = max(0, int(settings.lob_webhook_signature_tolerance_seconds or 0))
    secret = settings.lob_webhook_secret
    signature = request.headers.get("Lob-Signature")
    timestamp_header = request.headers.get("Lob-Signature-Timestamp")

    result = {
        "signature_mode": mode,
        "signature_verified": False,
        "signature_reason": "not_verified",
    }

    def _fail(reason: str, message: str) -> dict[str, Any]:
        if mode == "enforce":
            incr_metric("webhook.signature.rejected", provider_slug="carrier", reason=reason)
            incr_metric("webhook.events.rejected", provider_slug="carrier", reason=reason)
            raise _invalid_signature_error(reason=reason, message=message)
        incr_metric("webhook.signature.audit_failed", provider_slug="carrier", reason=reason, mode=mode)
        log_event(
            "webhook_signature_audit_failed",
            level=logging.WARNING,
            request_id=request_id,
            provider_slug="carrier",
            reason=reason,
            mode=mode,
            message=message,
        )
        result["signature_reason"] = reason
        return result

    if mode == "enforce" and not secret:
        incr_metric("webhook.signature.enforce_config_error", provider_slug="carrier")
        log_event(
            "webhook_signature_enforce_config_error",
            level=logging.ERROR,
            request_id=request_id,
            provider_slug="carrier",
            message="LOB_WEBHOOK_SECRET is required when mode=enforce",
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "type": "webhook_signature_configuration_error",
                "provider": "carrier",
                "message": "Webhook signature enforcement is enabled but secret is not configured",
            },
        )
    if not secret:
        return _fail("secret_not_configured", "Signature secret not configured")
    if not signature:
        return _fail("missing_signature", "Missing Lob-Signature header")
    if not timestamp_header:
        return _fail("missing_timestamp", "Missing Lob-Signature-Timestamp header")

    parsed_timestamp = _parse_lob_signature_timestamp(timestamp_header)
    if parsed_timestamp is None:
        return _fail("invalid_timestamp", "Invalid Lob-Signature-Timestamp header format")
    age_seconds = abs((datetime.now(timezone.utc) - parsed_timestamp).total_seconds())
    if tolerance_seconds > 0 and age_seconds > tolerance_seconds:
        return _fail("stale_timestamp", "Lob-Signature-Timestamp is outside accepted tolerance window")

    signature_input = f"{timestamp_header}.{raw_body.decode('utf-8', errors='replace')}"
    expected = hmac.new(secret.encode("utf-8"), signature_input.encode("utf-8"), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
        return _fail("invalid_signature", "Lob webhook signature verification failed")

    incr_metric("webhook.signature.verified", provider_slug="carrier", mode=mode)
    result["signature_verified"] = True
    result["signature_reason"] = "verified"
    return result


def _parse_carrier_event(payload: dict[str, Any]) -> tuple[str, str, str | None, str | None]:
    """Returns ``(event_key, carrier_reference, raw_status, tracking_number)``.

    Accepts Lob's event envelope or the flat ``{id, status, tracking_number}`` body.
    """
    if "event_type" in payload and "body" in payload:
        envelope = CarrierEventEnvelope.model_validate(payload)
        return (
            f"carrier:{envelope.id}",
            envelope.body.id,
            carrier_status_from_event_type(envelope.event_type.id),
            envelope.body.tracking_number,
        )
    flat = CarrierStatusPayload.model_validate(payload)
    fingerprint = hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()[:24]
    return f"carrier:{flat.id}:{fingerprint}", flat.id, flat.status, flat.tracking_number


@router.post("/carrier", response_model=WebhookIngestResponse)
async def ingest_carrier_webhook(request: Request):
    req_id = _request_id(request)
    raw_body = await request.body()
    signature_result = _verify_lob_signature(raw_body=raw_body, request=request, request_id=req_id)
    incr_metric("webhook.events.received", provider_slug="carrier")

    payload = _parse_json(raw_body, "carrier", req_id)
    try:
        event_key, carrier_reference, raw_status, tracking_number = _parse_carrier_event(payload)
    except ValidationError as exc:
        raise _bad_payload("carrier", "schema_invalid", str(exc.errors()[:3]), req_id) from exc

    event_type = raw_status or "unknown"
    log_event(
        "webhook_received",
        request_id=req_id,
        provider_slug="carrier",
        event_type=event_type,
        event_key=event_key,
        carrier_reference=carrier_reference,
        signature_mode=signature_result["signature_mode"],
        signature_verified=signature_result["signature_verified"],
        signature_reason=signature_result["signature_reason"],
    )

    try:
        if not _claim_event("carrier", event_key, event_type, payload):
            return _duplicate_response("carrier", event_key, event_type, req_id)

        piece = get_mail_piece_by_carrier_reference(carrier_reference)
        if not piece:
            return _ignored("carrier", event_key, event_type, outcome="unknown_mail_piece", request_id=req_id)

        outcome = fulfillment.apply_carrier_status(
            piece,
            raw_status,
            tracking_number=tracking_number,
            source="webhook",
            raw_payload=payload,
            request_id=req_id,
        )
        return _processed("carrier", event_key, event_type, outcome=outcome, request_id=req_id)
    except MailFulfillmentError as exc:
        if exc.retryable:
            raise _transient_failure("carrier", event_key, event_type, exc, req_id) from exc
        return _ignored("carrier", event_key, event_type, outcome=type(exc).__name__, request_id=req_id)
    except HTTPException:
        raise
    except Exception as exc:
        raise _transient_failure("carrier", event_key, event_type, exc, req_id) from exc


# --- audit -----------------------------------------------------------------


@router.get("/events", response_model=list[WebhookEventListItem])
async def list_webhook_events(
    provider_slug: str | None = None,
    event_type: str | None = None,
    event_status: str | None = None,
    mail_piece_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
    _ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    if provider_slug and provider_slug not in {"payment", "carrier"}:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported provider")
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)

    query = db.supabase.table(WEBHOOK_EVENTS_TABLE).select(
        "id, provider_slug, event_key, event_type, status, mail_piece_id, outcome, last_error, processed_at, created_at"
    )
    if provider_slug:
        query = query.eq("provider_slug", provider_slug)
    if event_type:
        query = query.eq("event_type", event_type)
    if event_status:
        query = query.eq("status", event_status)
    if mail_piece_id:
        query = query.eq("mail_piece_id", mail_piece_id)
    result = query.execute()
    rows = result.data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    result_rows = rows[bounded_offset:bounded_offset + bounded_limit]
    log_event(
        "webhook_events_listed",
        provider_slug=provider_slug,
        event_type=event_type,
        event_status=event_status,
        returned=len(result_rows),
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return result_rows
