"""Carrier adapter: the mail-fulfillment view of Lob.

Translates mail pieces and address rows into Lob letter/postcard payloads and
Lob responses back into ``CarrierSubmission`` / ``CarrierStatus`` values.
Without ``LOB_API_KEY`` every call answers from a deterministic simulation so
the pipeline behaves the same in development and tests.

This module keeps no memory of earlier calls. Guarding against a second
submission for the same mail piece is the caller's job.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

from src.config import settings
from src.domain.errors import AmbiguousExternalOutcome, CarrierSubmissionError, CarrierUnavailable
from src.domain.pricing import quote_mail_piece_cents
from src.observability import incr_metric, log_event
from src.providers.lob.client import (
    LobProviderError,
    create_letter,
    create_postcard,
    get_letter,
    get_postcard,
    list_letters,
    list_postcards,
)


_POSTCARD_PREFIX = "psc_"
_SIMULATED_MARKER = "_sim_"
_SIMULATED_STATUS = "processing"
_POSTCARD_BACK_TEMPLATE = "https://s3.amazonaws.com/lob-assets/postcard-back.pdf"
_EXTRA_SERVICE_BY_CLASS = {
    "usps_express": "express",
    "usps_priority": "priority",
}


@dataclass
class CarrierSubmission:
    carrier_reference: str
    carrier_status: str
    tracking_number: str | None
    cost_cents: int | None
    raw: dict[str, Any] = field(default_factory=dict)
    simulated: bool = False


@dataclass
class CarrierStatus:
    carrier_reference: str
    carrier_status: str | None
    tracking_number: str | None
    events: list[dict[str, Any]] = field(default_factory=list)
    simulated: bool = False


def is_simulated() -> bool:
    return not settings.lob_api_key


def idempotency_key_for(mail_piece_id: str) -> str:
    return f"mail-piece-{mail_piece_id}"


def _piece_kind(mail_type: str | None) -> str:
    return "postcard" if mail_type == "postcard" else "letter"


def _kind_for_reference(carrier_reference: str) -> str:
    return "postcard" if carrier_reference.startswith(_POSTCARD_PREFIX) else "letter"


def _to_lob_address(address: dict[str, Any]) -> dict[str, Any]:
    lob_address = {
        "name": address.get("contact_name") or address.get("name"),
        "company": address.get("company_name") or address.get("company"),
        "address_line1": address.get("address_line1"),
        "address_line2": address.get("address_line2"),
        "address_city": address.get("address_city") or address.get("city"),
        "address_state": address.get("address_state") or address.get("state"),
        "address_zip": address.get("address_zip") or address.get("zip_code"),
        "address_country": address.get("address_country") or "US",
    }
    return {key: value for key, value in lob_address.items() if value}


def _price_cents(raw: dict[str, Any]) -> int | None:
    price = raw.get("price")
    if price in (None, ""):
        return None
    try:
        return round(float(price) * 100)
    except (TypeError, ValueError):
        return None


def _carrier_status_from_raw(raw: dict[str, Any]) -> str:
    status = raw.get("status")
    if status:
        return str(status)
    tracking_events = raw.get("tracking_events") or []
    if tracking_events and isinstance(tracking_events[-1], dict):
        latest = tracking_events[-1].get("type") or tracking_events[-1].get("name")
        if latest:
            return str(latest).lower().replace(" ", "_")
    return _SIMULATED_STATUS


def _events_from_raw(raw: dict[str, Any]) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for event in raw.get("tracking_events") or []:
        if not isinstance(event, dict):
            continue
        details = event.get("details") if isinstance(event.get("details"), dict) else {}
        events.append(
            {
                "status": str(event.get("type") or event.get("name") or "").lower().replace(" ", "_") or None,
                "description": details.get("description") or event.get("name"),
                "location": event.get("location"),
                "timestamp": event.get("time") or event.get("date_created"),
            }
        )
    return events


def _build_payload(
    piece: dict[str, Any],
    document_url: str,
    sender: dict[str, Any],
    recipient: dict[str, Any],
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "description": piece.get("description") or f"Mail piece {piece['id']}",
        "to": _to_lob_address(recipient),
        "from": _to_lob_address(sender),
        "use_type": "operational",
        "metadata": {"mail_piece_id": str(piece["id"])},
    }
    if _piece_kind(piece.get("mail_type")) == "postcard":
        payload["front"] = document_url
        payload["back"] = _POSTCARD_BACK_TEMPLATE
        if piece.get("mail_size"):
            payload["size"] = piece["mail_size"]
        return payload
    payload["file"] = document_url
    payload["color"] = False
    extra_service = _EXTRA_SERVICE_BY_CLASS.get(piece.get("mail_class") or "")
    if extra_service:
        payload["extra_service"] = extra_service
    return payload


def _simulated_submission(piece: dict[str, Any]) -> CarrierSubmission:
    digest = hashlib.sha256(str(piece["id"]).encode("utf-8")).hexdigest()[:16]
    prefix = "psc" if _piece_kind(piece.get("mail_type")) == "postcard" else "ltr"
    reference = f"{prefix}{_SIMULATED_MARKER}{digest}"
    return CarrierSubmission(
        carrier_reference=reference,
        carrier_status=_SIMULATED_STATUS,
        tracking_number=f"TRK{digest.upper()}",
        cost_cents=quote_mail_piece_cents(piece.get("mail_type") or "letter", piece.get("mail_class") or ""),
        raw={"id": reference, "status": _SIMULATED_STATUS, "simulated": True},
        simulated=True,
    )


def _raise_for_submission(exc: LobProviderError, *, mail_piece_id: str) -> None:
    incr_metric("carrier.submission.failed", category=exc.category)
    log_event(
        "carrier_submission_failed",
        level=logging.ERROR if exc.category != "transient" else logging.WARNING,
        mail_piece_id=mail_piece_id,
        category=exc.category,
        status_code=exc.status_code,
        error=str(exc),
    )
    if exc.ambiguous:
        raise AmbiguousExternalOutcome("carrier_submission", str(exc)) from exc
    if exc.retryable:
        raise CarrierUnavailable(f"Lob unavailable: {exc}") from exc
    raise CarrierSubmissionError(f"Lob rejected mail piece {mail_piece_id}: {exc}") from exc


def submit(
    piece: dict[str, Any],
    document_url: str,
    *,
    sender: dict[str, Any],
    recipient: dict[str, Any],
) -> CarrierSubmission:
    """Create the letter/postcard at Lob.

    Raises ``AmbiguousExternalOutcome`` when Lob may have accepted the piece
    without us seeing the response, ``CarrierUnavailable`` when the request
    never reached Lob and ``CarrierSubmissionError`` on a permanent rejection.
    """
    mail_piece_id = str(piece["id"])
    if is_simulated():
        submission = _simulated_submission(piece)
        incr_metric("carrier.submission.simulated")
        log_event(
            "carrier_submission_simulated",
            mail_piece_id=mail_piece_id,
            carrier_reference=submission.carrier_reference,
        )
        return submission

    payload = _build_payload(piece, document_url, sender, recipient)
    create = create_postcard if _piece_kind(piece.get("mail_type")) == "postcard" else create_letter
    try:
        raw = create(
            settings.lob_api_key,
            payload,
            idempotency_key=idempotency_key_for(mail_piece_id),
            base_url=settings.lob_base_url,
            timeout_seconds=settings.lob_timeout_seconds,
        )
    except LobProviderError as exc:
        _raise_for_submission(exc, mail_piece_id=mail_piece_id)
        raise

    if not raw.get("id"):
        raise AmbiguousExternalOutcome("carrier_submission", "Lob response carried no id")
    incr_metric("carrier.submission.created", kind=_piece_kind(piece.get("mail_type")))
    return CarrierSubmission(
        carrier_reference=str(raw["id"]),
        carrier_status=_carrier_status_from_raw(raw),
        tracking_number=raw.get("tracking_number"),
        cost_cents=_price_cents(raw),
        raw=raw,
    )


def get_status(carrier_reference: str) -> CarrierStatus:
    if is_simulated() or _SIMULATED_MARKER in carrier_reference:
        digest = carrier_reference.rsplit("_", 1)[-1]
        return CarrierStatus(
            carrier_reference=carrier_reference,
            carrier_status=_SIMULATED_STATUS,
            tracking_number=f"TRK{digest.upper()}",
            events=[{"status": _SIMULATED_STATUS, "description": "Simulated carrier status"}],
            simulated=True,
        )

    fetch = get_postcard if _kind_for_reference(carrier_reference) == "postcard" else get_letter
    try:
        raw = fetch(
            settings.lob_api_key,
            carrier_reference,
            base_url=settings.lob_base_url,
            timeout_seconds=settings.lob_timeout_seconds,
        )
    except LobProviderError as exc:
        incr_metric("carrier.status.failed", category=exc.category)
        log_event(
            "carrier_status_failed",
            level=logging.WARNING,
            carrier_reference=carrier_reference,
            category=exc.category,
            error=str(exc),
        )
        if exc.retryable:
            raise CarrierUnavailable(f"Lob unavailable: {exc}") from exc
        raise CarrierSubmissionError(f"Lob status lookup failed for {carrier_reference}: {exc}") from exc

    return CarrierStatus(
        carrier_reference=carrier_reference,
        carrier_status=raw.get("status") or _carrier_status_from_raw(raw),
        tracking_number=raw.get("tracking_number"),
        events=_events_from_raw(raw),
    )


def find_existing_submission(piece: dict[str, Any]) -> CarrierSubmission | None:
    """Look up a piece Lob already created for this mail piece (metadata search).

    Used before re-submitting after an ambiguous outcome. Returns ``None``
    when nothing exists or in simulation mode.
    """
    if is_simulated():
        return None
    mail_piece_id = str(piece["id"])
    search = list_postcards if _piece_kind(piece.get("mail_type")) == "postcard" else list_letters
    try:
        listing = search(
            settings.lob_api_key,
            params={"metadata[mail_piece_id]": mail_piece_id, "limit": 2},
            base_url=settings.lob_base_url,
            timeout_seconds=settings.lob_timeout_seconds,
        )
    except LobProviderError as exc:
        log_event(
            "carrier_lookup_failed",
            level=logging.WARNING,
            mail_piece_id=mail_piece_id,
            category=exc.category,
            error=str(exc),
        )
        raise CarrierUnavailable(f"Lob lookup failed: {exc}") from exc

    matches = [
        row
        for row in listing.get("data") or []
        if isinstance(row, dict) and (row.get("metadata") or {}).get("mail_piece_id") == mail_piece_id
    ]
    if not matches:
        return None
    if len(matches) > 1:
        log_event(
            "carrier_duplicate_pieces_found",
            level=logging.ERROR,
            mail_piece_id=mail_piece_id,
            carrier_references=[row.get("id") for row in matches],
        )
    raw = matches[0]
    incr_metric("carrier.submission.adopted")
    return CarrierSubmission(
        carrier_reference=str(raw["id"]),
        carrier_status=_carrier_status_from_raw(raw),
        tracking_number=raw.get("tracking_number"),
        cost_cents=_price_cents(raw),
        raw=raw,
    )
