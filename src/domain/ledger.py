"""Append-only status history for mail pieces.

Rows are written by the transition function in the database (see
``scripts/create_tables.py``) and, for the very first ``draft`` entry, by
``append_status_entry``. Nothing in this module updates or deletes rows.
"""

from __future__ import annotations

from typing import Any

from src import db


HISTORY_TABLE = "mail_piece_status_history"
HISTORY_COLUMNS = "id, mail_piece_id, status, previous_status, description, source, raw_payload, created_at"


def append_status_entry(
    *,
    mail_piece_id: str,
    status: str,
    previous_status: str | None,
    description: str,
    source: str,
    raw_payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    result = db.supabase.table(HISTORY_TABLE).insert(
        {
            "mail_piece_id": mail_piece_id,
            "status": status,
            "previous_status": previous_status,
            "description": description,
            "source": source,
            "raw_payload": raw_payload,
        }
    ).execute()
    return result.data[0] if result.data else {}


def list_status_history(mail_piece_id: str) -> list[dict[str, Any]]:
    """Newest first."""
    result = (
        db.supabase.table(HISTORY_TABLE)
        .select(HISTORY_COLUMNS)
        .eq("mail_piece_id", mail_piece_id)
        .order("id", desc=True)
        .execute()
    )
    return result.data or []


def latest_status_entry(mail_piece_id: str) -> dict[str, Any] | None:
    result = (
        db.supabase.table(HISTORY_TABLE)
        .select(HISTORY_COLUMNS)
        .eq("mail_piece_id", mail_piece_id)
        .order("id", desc=True)
        .limit(1)
        .execute()
    )
    return result.data[0] if result.data else None
