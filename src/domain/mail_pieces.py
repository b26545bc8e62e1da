from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from src import db
from src.domain.ledger import append_status_entry
from src.observability import log_event


MAIL_PIECES_TABLE = "mail_pieces"
MAIL_PIECE_COLUMNS = (
    "id, user_id, sender_address_id, recipient_address_id, file_id, mail_type, mail_class, mail_size, "
    "description, status, payment_reference, payment_status, cost_cents, carrier_reference, carrier_status, "
    "tracking_number, metadata, created_at, updated_at"
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _first(result: Any) -> dict[str, Any] | None:
    return result.data[0] if result.data else None


def get_mail_piece(mail_piece_id: str, *, user_id: str | None = None) -> dict[str, Any] | None:
    query = db.supabase.table(MAIL_PIECES_TABLE).select(MAIL_PIECE_COLUMNS).eq("id", mail_piece_id)
    if user_id:
        query = query.eq("user_id", user_id)
    return _first(query.execute())


def get_mail_piece_by_payment_reference(payment_reference: str) -> dict[str, Any] | None:
    return _first(
        db.supabase.table(MAIL_PIECES_TABLE)
        .select(MAIL_PIECE_COLUMNS)
        .eq("payment_reference", payment_reference)
        .execute()
    )


def get_mail_piece_by_carrier_reference(carrier_reference: str) -> dict[str, Any] | None:
    return _first(
        db.supabase.table(MAIL_PIECES_TABLE)
        .select(MAIL_PIECE_COLUMNS)
        .eq("carrier_reference", carrier_reference)
        .execute()
    )


def list_mail_pieces(
    *,
    user_id: str,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    query = db.supabase.table(MAIL_PIECES_TABLE).select(MAIL_PIECE_COLUMNS).eq("user_id", user_id)
    if status:
        query = query.eq("status", status)
    rows = query.order("created_at", desc=True).execute().data or []
    return rows[offset:offset + limit]


def get_owned_row(table: str, row_id: str, user_id: str) -> dict[str, Any] | None:
    """Addresses and files belong to their own collaborators; this core only reads them."""
    return _first(db.supabase.table(table).select("*").eq("id", row_id).eq("user_id", user_id).execute())


def create_draft(
    *,
    user_id: str,
    sender_address_id: str,
    recipient_address_id: str,
    file_id: str,
    mail_type: str,
    mail_class: str,
    mail_size: str,
    description: str | None = None,
) -> dict[str, Any]:
    now_iso = _now_iso()
    created = db.supabase.table(MAIL_PIECES_TABLE).insert(
        {
            "user_id": user_id,
            "sender_address_id": sender_address_id,
            "recipient_address_id": recipient_address_id,
            "file_id": file_id,
            "mail_type": mail_type,
            "mail_class": mail_class,
            "mail_size": mail_size,
            "description": description,
            "status": "draft",
            "payment_status": "pending",
            "metadata": {},
            "created_at": now_iso,
            "updated_at": now_iso,
        }
    ).execute()
    piece = created.data[0]
    try:
        append_status_entry(
            mail_piece_id=piece["id"],
            status="draft",
            previous_status=None,
            description="Mail piece created",
            source="user",
        )
    except Exception:
        # a piece without its first ledger row would break status/history agreement
        db.supabase.table(MAIL_PIECES_TABLE).delete().eq("id", piece["id"]).eq("status", "draft").execute()
        raise
    return piece


def update_carrier_tracking(
    mail_piece_id: str,
    *,
    carrier_status: str | None,
    tracking_number: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Mirror raw carrier fields without touching the normalized status."""
    payload: dict[str, Any] = {"updated_at": _now_iso()}
    if carrier_status is not None:
        payload["carrier_status"] = carrier_status
    if tracking_number is not None:
        payload["tracking_number"] = tracking_number
    if metadata is not None:
        payload["metadata"] = metadata
    return _first(db.supabase.table(MAIL_PIECES_TABLE).update(payload).eq("id", mail_piece_id).execute())


def mark_payment_refunded(mail_piece_id: str) -> dict[str, Any] | None:
    return _first(
        db.supabase.table(MAIL_PIECES_TABLE)
        .update({"payment_status": "refunded", "updated_at": _now_iso()})
        .eq("id", mail_piece_id)
        .execute()
    )


def delete_draft(mail_piece_id: str, *, user_id: str) -> bool:
    """Hard-delete only while still ``draft``; history rows cascade in the database."""
    result = (
        db.supabase.table(MAIL_PIECES_TABLE)
        .delete()
        .eq("id", mail_piece_id)
        .eq("user_id", user_id)
        .eq("status", "draft")
        .execute()
    )
    deleted = bool(result.data)
    if deleted:
        log_event("mail_piece_deleted", mail_piece_id=mail_piece_id, user_id=user_id)
    else:
        log_event(
            "mail_piece_delete_refused",
            level=logging.WARNING,
            mail_piece_id=mail_piece_id,
            user_id=user_id,
        )
    return deleted


def list_payment_drift(limit: int) -> list[dict[str, Any]]:
    """Pieces whose payment may have settled without the webhook reaching us."""
    result = (
        db.supabase.table(MAIL_PIECES_TABLE)
        .select(MAIL_PIECE_COLUMNS)
        .in_("status", ["draft", "pending_payment"])
        .not_.is_("payment_reference", "null")
        .order("created_at")
        .limit(limit)
        .execute()
    )
    return result.data or []


def list_submission_drift(limit: int) -> list[dict[str, Any]]:
    """Paid pieces that never got a carrier reference."""
    result = (
        db.supabase.table(MAIL_PIECES_TABLE)
        .select(MAIL_PIECE_COLUMNS)
        .eq("status", "paid")
        .is_("carrier_reference", "null")
        .order("created_at")
        .limit(limit)
        .execute()
    )
    return result.data or []
