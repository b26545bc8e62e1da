"""The only code path allowed to change ``mail_pieces.status``.

Each transition is applied by the ``apply_mail_piece_transition`` database
function, which updates the piece only while its status still equals the
status read here (compare-and-swap) and appends the history row in the same
statement. An empty result means another writer moved the piece first; the
engine re-reads and re-evaluates, which turns a lost race for the same target
into an idempotent no-op.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from src import db
from src.config import settings
from src.domain.errors import InvalidTransition, TransitionConflict, UnknownMailPiece
from src.domain.mail_pieces import get_mail_piece
from src.domain.mail_status import is_transition_allowed
from src.observability import incr_metric, log_event


TRANSITION_RPC = "apply_mail_piece_transition"


@dataclass
class TransitionResult:
    mail_piece: dict[str, Any]
    applied: bool
    previous_status: str
    status: str


def _default_updates(current: str, target: str) -> dict[str, Any]:
    if target == "pending_payment":
        return {"payment_status": "pending"}
    if target == "paid":
        return {"payment_status": "paid"}
    if target == "failed" and current == "pending_payment":
        return {"payment_status": "failed"}
    return {}


def _check_preconditions(piece: dict[str, Any], target: str, updates: dict[str, Any]) -> None:
    mail_piece_id = piece["id"]
    current = piece["status"]
    if target == "pending_payment" and not (updates.get("payment_reference") or piece.get("payment_reference")):
        raise InvalidTransition(mail_piece_id, current, target, "no payment attempt recorded")
    if target == "paid" and not piece.get("payment_reference"):
        raise InvalidTransition(mail_piece_id, current, target, "payment reference is missing")
    if target == "submitted":
        if not updates.get("carrier_reference"):
            raise InvalidTransition(mail_piece_id, current, target, "carrier reference is required")
        if piece.get("carrier_reference"):
            raise InvalidTransition(mail_piece_id, current, target, "carrier reference already recorded")
        if piece.get("payment_status") != "paid":
            raise InvalidTransition(mail_piece_id, current, target, "payment is not settled")


def _apply(
    *,
    piece: dict[str, Any],
    target: str,
    source: str,
    description: str,
    raw_payload: dict[str, Any] | None,
    updates: dict[str, Any],
    require_null_carrier_reference: bool,
) -> dict[str, Any] | None:
    result = db.supabase.rpc(
        TRANSITION_RPC,
        {
            "p_mail_piece_id": piece["id"],
            "p_expected_status": piece["status"],
            "p_new_status": target,
            "p_source": source,
            "p_description": description,
            "p_raw_payload": raw_payload,
            "p_updates": updates,
            "p_require_null_carrier_reference": require_null_carrier_reference,
        },
    ).execute()
    rows = result.data or []
    return rows[0] if rows else None


def transition_mail_piece(
    mail_piece_id: str,
    target_status: str,
    *,
    source: str,
    description: str,
    raw_payload: dict[str, Any] | None = None,
    updates: dict[str, Any] | None = None,
    expected_status: str | None = None,
    require_null_carrier_reference: bool = False,
    request_id: str | None = None,
) -> TransitionResult:
    """Move a mail piece to ``target_status`` or explain why not.

    Returns ``applied=False`` when the piece is already in the target status.
    Raises ``InvalidTransition`` when the move is not in the allowed table,
    ``UnknownMailPiece`` when the piece does not exist and
    ``TransitionConflict`` when every compare-and-swap attempt lost.

    Callers that acted on an earlier read (a gateway call made while the piece
    was ``paid``, say) pass ``expected_status``: if the piece has moved by the
    time it is re-read, including to the target itself, ``InvalidTransition``
    is raised instead of the move or no-op. ``require_null_carrier_reference``
    likewise rejects a piece that has reached the carrier, and is enforced
    again inside the compare-and-swap.
    """
    guard_carrier_reference = require_null_carrier_reference or target_status == "submitted"
    max_attempts = max(1, int(settings.transition_max_attempts or 1))
    for attempt in range(1, max_attempts + 1):
        piece = get_mail_piece(mail_piece_id)
        if not piece:
            raise UnknownMailPiece(mail_piece_id)
        current = piece["status"]

        if expected_status is not None and current != expected_status:
            incr_metric("mail_piece.transitions.stale", expected=expected_status, current=current, target=target_status)
            log_event(
                "mail_piece_transition_stale",
                level=logging.WARNING,
                request_id=request_id,
                mail_piece_id=mail_piece_id,
                expected_status=expected_status,
                current=current,
                target=target_status,
                source=source,
            )
            raise InvalidTransition(
                mail_piece_id,
                current,
                target_status,
                f"mail piece moved from {expected_status} to {current}",
            )
        if require_null_carrier_reference and piece.get("carrier_reference"):
            raise InvalidTransition(mail_piece_id, current, target_status, "mail piece already submitted to carrier")

        if current == target_status:
            incr_metric("mail_piece.transitions.noop", target=target_status, source=source)
            log_event(
                "mail_piece_transition_noop",
                request_id=request_id,
                mail_piece_id=mail_piece_id,
                status=current,
                source=source,
                attempt=attempt,
            )
            return TransitionResult(mail_piece=piece, applied=False, previous_status=current, status=current)

        if not is_transition_allowed(current, target_status):
            incr_metric("mail_piece.transitions.rejected", current=current, target=target_status, source=source)
            log_event(
                "mail_piece_transition_rejected",
                level=logging.WARNING,
                request_id=request_id,
                mail_piece_id=mail_piece_id,
                current=current,
                target=target_status,
                source=source,
            )
            raise InvalidTransition(mail_piece_id, current, target_status)

        merged_updates = {**_default_updates(current, target_status), **(updates or {})}
        _check_preconditions(piece, target_status, merged_updates)

        row = _apply(
            piece=piece,
            target=target_status,
            source=source,
            description=description,
            raw_payload=raw_payload,
            updates=merged_updates,
            require_null_carrier_reference=guard_carrier_reference,
        )
        if row:
            incr_metric("mail_piece.transitions.applied", current=current, target=target_status, source=source)
            log_event(
                "mail_piece_transitioned",
                request_id=request_id,
                mail_piece_id=mail_piece_id,
                previous_status=current,
                status=target_status,
                source=source,
                description=description,
            )
            return TransitionResult(mail_piece=row, applied=True, previous_status=current, status=target_status)

        incr_metric("mail_piece.transitions.conflict", target=target_status)
        log_event(
            "mail_piece_transition_conflict",
            level=logging.WARNING,
            request_id=request_id,
            mail_piece_id=mail_piece_id,
            expected_status=current,
            target=target_status,
            attempt=attempt,
        )

    raise TransitionConflict(mail_piece_id, target_status, max_attempts)
