from __future__ import annotations

from typing import Literal


MailPieceStatus = Literal[
    "draft",
    "pending_payment",
    "paid",
    "submitted",
    "in_transit",
    "delivered",
    "returned",
    "failed",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
TransitionSource = Literal["system", "user", "webhook", "manual"]

MAIL_PIECE_STATUSES: tuple[str, ...] = (
    "draft",
    "pending_payment",
    "paid",
    "submitted",
    "in_transit",
    "delivered",
    "returned",
    "failed",
)
TERMINAL_STATUSES = frozenset({"delivered", "returned", "failed"})

# Closed table: anything not listed here is an InvalidTransition.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "draft": frozenset({"pending_payment"}),
    "pending_payment": frozenset({"paid", "failed"}),
    "paid": frozenset({"submitted", "failed"}),
    "submitted": frozenset({"in_transit", "delivered", "returned", "failed"}),
    "in_transit": frozenset({"delivered", "returned", "failed"}),
    "delivered": frozenset(),
    "returned": frozenset(),
    "failed": frozenset(),
}

# Carrier vocabulary -> normalized status. Extend by adding rows only.
CARRIER_STATUS_MAPPING: dict[str, MailPieceStatus] = {
    "delivered": "delivered",
    "returned": "returned",
    "returned_to_sender": "returned",
    "in_transit": "in_transit",
    "processing": "submitted",
    "printed": "submitted",
    "mailed": "submitted",
    "created": "submitted",
    "cancelled": "failed",
    "failed": "failed",
}

PAYMENT_INTENT_STATUS_MAPPING: dict[str, PaymentStatus] = {
    "succeeded": "paid",
    "canceled": "failed",
}
CHECKOUT_PAYMENT_STATUS_MAPPING: dict[str, PaymentStatus] = {
    "paid": "paid",
    "no_payment_required": "paid",
}


def is_transition_allowed(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def normalize_carrier_status(value: str | None) -> MailPieceStatus | None:
    """Map a raw carrier status string to a normalized status, or None when unmapped."""
    if not value:
        return None
    key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    return CARRIER_STATUS_MAPPING.get(key)


def carrier_status_from_event_type(value: str | None) -> str | None:
    """Lob event types look like ``letter.in_transit``; the suffix is the raw status."""
    if not value:
        return None
    key = str(value).strip().lower()
    if "." in key:
        key = key.rsplit(".", 1)[-1]
    return key or None


def normalize_payment_status(
    *,
    reference_kind: str,
    gateway_status: str | None,
    session_status: str | None = None,
) -> PaymentStatus:
    if reference_kind == "checkout_session":
        if session_status == "expired":
            return "failed"
        return CHECKOUT_PAYMENT_STATUS_MAPPING.get(str(gateway_status or "").lower(), "pending")
    return PAYMENT_INTENT_STATUS_MAPPING.get(str(gateway_status or "").lower(), "pending")
