from __future__ import annotations


_BASE_COST_USD = {
    "postcard": 0.50,
    "letter": 0.60,
    "check": 0.60,
    "self_mailer": 0.60,
    "catalog": 0.60,
    "booklet": 0.60,
}
_CLASS_MULTIPLIERS = {
    "usps_first_class": 1.0,
    "usps_priority": 1.5,
    "usps_express": 2.0,
}


def quote_mail_piece_cents(mail_type: str, mail_class: str) -> int:
    """Price used to size the payment; the carrier's own price becomes the final cost."""
    base = _BASE_COST_USD.get(mail_type, 0.60)
    multiplier = _CLASS_MULTIPLIERS.get(mail_class, 1.0)
    return round(base * multiplier * 100)
