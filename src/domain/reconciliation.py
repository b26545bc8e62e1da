"""Repair mail pieces whose local status drifted from the gateway or the carrier.

Two drift patterns are swept:

* ``draft``/``pending_payment`` with a payment reference: the payment may
  have settled without its webhook reaching us.
* ``paid`` without a carrier reference: submission never ran, crashed, or
  ended in an ambiguous timeout.

Each piece is handled on its own and reported on its own; one failure never
stops the sweep. Concurrent sweeps over the same piece are safe because every
status change goes through the compare-and-swap transition and carrier
creates carry an idempotency key derived from the mail piece ID.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from src import db
from src.config import settings
from src.domain.errors import MailFulfillmentError
from src.domain.fulfillment import apply_payment_status, record_submission, submit_paid_mail_piece
from src.domain.mail_pieces import get_mail_piece, list_payment_drift, list_submission_drift
from src.observability import incr_metric, log_event, persist_metrics_snapshot
from src.providers.lob import carrier
from src.providers.stripe import client as payment_gateway


@dataclass
class ReconciliationItem:
    id: str
    status: str  # fixed | submitted_to_lob | error
    message: str
    carrier_reference: str | None = None


@dataclass
class ReconciliationReport:
    started_at: datetime
    finished_at: datetime
    scanned_count: int
    results: list[ReconciliationItem] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for item in self.results if item.status == status)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def select_drifted_pieces(limit: int) -> list[dict[str, Any]]:
    """Payment drift first (it can fall through to submission), then submission drift."""
    selected: list[dict[str, Any]] = []
    seen: set[str] = set()
    for piece in list_payment_drift(limit) + list_submission_drift(limit):
        if piece["id"] in seen:
            continue
        seen.add(piece["id"])
        selected.append(piece)
    return selected[:limit]


def _reconcile_payment(piece: dict[str, Any], request_id: str | None) -> tuple[dict[str, Any] | None, str | None]:
    """Returns the refreshed piece and a message when something changed, or ``(None, reason)``."""
    gateway = payment_gateway.get_payment_status(piece["payment_reference"])
    if gateway.payment_status == "pending":
        return None, f"payment still {gateway.gateway_status or 'pending'} at gateway"

    outcome = apply_payment_status(
        piece,
        gateway.payment_status,
        source="system",
        description=f"Reconciled: gateway reported {gateway.gateway_status}",
        raw_payload={"reference": gateway.reference, "gateway_status": gateway.gateway_status},
        request_id=request_id,
    )
    return outcome.mail_piece, f"{piece['status']} -> {outcome.status} (gateway: {gateway.gateway_status})"


def _reconcile_submission(piece: dict[str, Any], request_id: str | None) -> ReconciliationItem:
    existing = carrier.find_existing_submission(piece)
    if existing:
        result = record_submission(
            piece,
            existing,
            source="system",
            description=f"Reconciled: adopted carrier piece {existing.carrier_reference}",
            request_id=request_id,
        )
        return ReconciliationItem(
            id=piece["id"],
            status="submitted_to_lob",
            message="Adopted existing carrier submission",
            carrier_reference=result.mail_piece.get("carrier_reference"),
        )

    result = submit_paid_mail_piece(piece["id"], source="system", request_id=request_id)
    return ReconciliationItem(
        id=piece["id"],
        status="submitted_to_lob",
        message="Submitted to carrier" if result.applied else "Already submitted to carrier",
        carrier_reference=result.mail_piece.get("carrier_reference"),
    )


def reconcile_mail_piece(piece: dict[str, Any], *, request_id: str | None = None) -> ReconciliationItem | None:
    """Repair one piece. Returns ``None`` when the gateway says the payment is still pending."""
    mail_piece_id = piece["id"]
    fixed_message: str | None = None
    try:
        if piece["status"] in {"draft", "pending_payment"} and piece.get("payment_reference"):
            refreshed, message = _reconcile_payment(piece, request_id)
            if refreshed is None:
                log_event(
                    "reconciliation_item_unchanged",
                    request_id=request_id,
                    mail_piece_id=mail_piece_id,
                    message=message,
                )
                return None
            fixed_message = message
            piece = get_mail_piece(mail_piece_id) or refreshed

        if piece["status"] == "paid" and not piece.get("carrier_reference"):
            item = _reconcile_submission(piece, request_id)
            if fixed_message:
                item.message = f"{fixed_message}; {item.message}"
        else:
            item = ReconciliationItem(
                id=mail_piece_id,
                status="fixed",
                message=fixed_message or f"No action needed for {piece['status']} mail piece",
                carrier_reference=piece.get("carrier_reference"),
            )
    except MailFulfillmentError as exc:
        item = ReconciliationItem(
            id=mail_piece_id,
            status="error",
            message=f"{fixed_message}; {exc}" if fixed_message else str(exc),
        )
        log_event(
            "reconciliation_item_failed",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            error_type=type(exc).__name__,
            category=exc.category,
            error=str(exc),
        )
    except Exception as exc:
        item = ReconciliationItem(id=mail_piece_id, status="error", message=f"Unexpected error: {exc}")
        log_event(
            "reconciliation_item_failed",
            level=logging.ERROR,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    incr_metric("reconciliation.items", status=item.status)
    log_event(
        "reconciliation_item_completed",
        request_id=request_id,
        mail_piece_id=mail_piece_id,
        status=item.status,
        carrier_reference=item.carrier_reference,
    )
    return item


def run_reconciliation(*, limit: int | None = None, request_id: str | None = None) -> ReconciliationReport:
    started_at = _now_utc()
    batch_limit = max(1, min(int(limit or settings.reconciliation_batch_limit), settings.reconciliation_batch_limit))
    incr_metric("reconciliation.runs.started")
    pieces = select_drifted_pieces(batch_limit)
    log_event("reconciliation_started", request_id=request_id, selected=len(pieces), limit=batch_limit)

    results: list[ReconciliationItem] = []
    if pieces:
        workers = max(1, min(int(settings.reconciliation_max_workers or 1), len(pieces)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            # map keeps selection order
            for item in pool.map(lambda piece: reconcile_mail_piece(piece, request_id=request_id), pieces):
                if item is not None:
                    results.append(item)

    report = ReconciliationReport(
        started_at=started_at,
        finished_at=_now_utc(),
        scanned_count=len(pieces),
        results=results,
    )
    incr_metric("reconciliation.runs.completed")
    log_event(
        "reconciliation_completed",
        request_id=request_id,
        scanned=report.scanned_count,
        fixed=report.count("fixed"),
        submitted_to_lob=report.count("submitted_to_lob"),
        errors=report.count("error"),
    )
    persist_metrics_snapshot(
        supabase_client=db.supabase,
        source="reconciliation",
        request_id=request_id,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return report
