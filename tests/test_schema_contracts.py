import re
from pathlib import Path
from typing import get_args

from src.domain import pricing
from src.domain.mail_status import MAIL_PIECE_STATUSES
from src.models.mail_pieces import MailClass, MailPieceCreateRequest, MailType


DDL = (Path(__file__).resolve().parents[1] / "scripts" / "create_tables.py").read_text()


def _check_values(column: str) -> set[str]:
    match = re.search(rf"\b{column} IN \(([^)]*)\)", DDL)
    assert match, f"no CHECK constraint for {column}"
    return set(re.findall(r"'([a-z_]+)'", match.group(1)))


def test_every_accepted_mail_type_is_storable_and_priced():
    accepted = set(get_args(MailType))

    assert _check_values("mail_type") == accepted
    assert accepted <= set(pricing._BASE_COST_USD)


def test_every_accepted_mail_class_is_storable_and_priced():
    accepted = set(get_args(MailClass))

    assert _check_values("mail_class") == accepted
    assert accepted == set(pricing._CLASS_MULTIPLIERS)


def test_status_constraint_matches_state_machine():
    assert _check_values("status") == set(MAIL_PIECE_STATUSES)


def test_mail_size_fits_its_column():
    column_width = int(re.search(r"mail_size VARCHAR\((\d+)\)", DDL).group(1))

    metadata = MailPieceCreateRequest.model_fields["mail_size"].metadata
    max_length = next(item.max_length for item in metadata if hasattr(item, "max_length"))

    assert max_length == column_width
