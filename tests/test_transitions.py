import pytest

from src.domain import transitions
from src.domain.errors import InvalidTransition, TransitionConflict, UnknownMailPiece
from src.domain.ledger import latest_status_entry, list_status_history
from src.domain.mail_pieces import create_draft
from src.observability import metric_total


def test_create_draft_writes_first_history_entry(fake_db, make_piece):
    seed = make_piece("draft")
    piece = create_draft(
        user_id="user-1",
        sender_address_id=seed["sender_address_id"],
        recipient_address_id=seed["recipient_address_id"],
        file_id=seed["file_id"],
        mail_type="postcard",
        mail_class="usps_first_class",
        mail_size="4x6",
    )

    history = fake_db.history(piece["id"])
    assert piece["status"] == "draft"
    assert len(history) == 1
    assert history[0]["status"] == "draft"
    assert history[0]["previous_status"] is None
    assert history[0]["source"] == "user"


def test_walks_lifecycle_and_history_agrees_with_status(fake_db, make_piece):
    piece = make_piece("draft")

    transitions.transition_mail_piece(
        piece["id"],
        "pending_payment",
        source="user",
        description="Payment intent created",
        updates={"payment_reference": "pi_1", "cost_cents": 60},
    )
    paid = transitions.transition_mail_piece(piece["id"], "paid", source="webhook", description="paid")
    submitted = transitions.transition_mail_piece(
        piece["id"],
        "submitted",
        source="system",
        description="submitted",
        updates={"carrier_reference": "ltr_1", "carrier_status": "processing"},
    )

    assert paid.applied is True
    assert paid.previous_status == "pending_payment"
    assert paid.mail_piece["payment_status"] == "paid"
    assert submitted.mail_piece["carrier_reference"] == "ltr_1"
    assert fake_db.piece(piece["id"])["status"] == "submitted"
    assert latest_status_entry(piece["id"])["status"] == "submitted"
    assert [row["status"] for row in list_status_history(piece["id"])] == [
        "submitted",
        "paid",
        "pending_payment",
        "draft",
    ]
    assert fake_db.rpc_calls[-1][1]["p_require_null_carrier_reference"] is True


def test_disallowed_transition_raises_and_changes_nothing(fake_db, make_piece):
    piece = make_piece("draft")
    before = len(fake_db.history(piece["id"]))

    with pytest.raises(InvalidTransition) as exc_info:
        transitions.transition_mail_piece(piece["id"], "in_transit", source="webhook", description="early scan")

    assert exc_info.value.current == "draft"
    assert exc_info.value.target == "in_transit"
    assert fake_db.piece(piece["id"])["status"] == "draft"
    assert len(fake_db.history(piece["id"])) == before
    assert fake_db.rpc_calls == []
    assert metric_total("mail_piece.transitions.rejected") == 1


def test_same_target_is_a_noop_without_history(fake_db, make_piece):
    piece = make_piece("paid", payment_reference="pi_1")
    before = len(fake_db.history(piece["id"]))

    result = transitions.transition_mail_piece(piece["id"], "paid", source="webhook", description="again")

    assert result.applied is False
    assert result.status == "paid"
    assert len(fake_db.history(piece["id"])) == before


def test_submitted_requires_carrier_reference_and_settled_payment(fake_db, make_piece):
    paid = make_piece("paid", payment_reference="pi_1")
    unsettled = make_piece("paid", payment_reference="pi_2", payment_status="pending")

    with pytest.raises(InvalidTransition) as missing_reference:
        transitions.transition_mail_piece(paid["id"], "submitted", source="system", description="x")
    with pytest.raises(InvalidTransition) as unpaid:
        transitions.transition_mail_piece(
            unsettled["id"],
            "submitted",
            source="system",
            description="x",
            updates={"carrier_reference": "ltr_2"},
        )

    assert missing_reference.value.reason == "carrier reference is required"
    assert unpaid.value.reason == "payment is not settled"


def test_pending_payment_requires_payment_reference(fake_db, make_piece):
    piece = make_piece("draft")

    with pytest.raises(InvalidTransition):
        transitions.transition_mail_piece(piece["id"], "pending_payment", source="user", description="x")


def test_lost_race_to_same_target_becomes_noop(fake_db, make_piece):
    piece = make_piece("pending_payment", payment_reference="pi_1")

    def _concurrent_writer(fake, params):
        fake.rpc_hooks.clear()
        fake.apply_transition({**params, "p_source": "system", "p_description": "other writer"})

    fake_db.rpc_hooks.append(_concurrent_writer)

    result = transitions.transition_mail_piece(piece["id"], "paid", source="webhook", description="webhook")

    paid_rows = [row for row in fake_db.history(piece["id"]) if row["status"] == "paid"]
    assert result.applied is False
    assert result.status == "paid"
    assert len(paid_rows) == 1
    assert paid_rows[0]["description"] == "other writer"
    assert metric_total("mail_piece.transitions.conflict") == 1


def test_lost_race_to_conflicting_target_is_reevaluated(fake_db, make_piece):
    piece = make_piece("pending_payment", payment_reference="pi_1")

    def _concurrent_failure(fake, params):
        fake.rpc_hooks.clear()
        fake.apply_transition(
            {
                **params,
                "p_new_status": "failed",
                "p_source": "system",
                "p_description": "expired",
                "p_updates": {"payment_status": "failed"},
            }
        )

    fake_db.rpc_hooks.append(_concurrent_failure)

    with pytest.raises(InvalidTransition) as exc_info:
        transitions.transition_mail_piece(piece["id"], "paid", source="webhook", description="late success")

    assert exc_info.value.current == "failed"
    assert fake_db.piece(piece["id"])["status"] == "failed"


def test_persistent_conflict_raises_after_bounded_attempts(fake_db, make_piece, monkeypatch):
    piece = make_piece("pending_payment", payment_reference="pi_1")
    attempts = []

    def _always_lose(**kwargs):
        attempts.append(kwargs["target"])
        return None

    monkeypatch.setattr(transitions, "_apply", _always_lose)
    monkeypatch.setattr(transitions.settings, "transition_max_attempts", 3)

    with pytest.raises(TransitionConflict) as exc_info:
        transitions.transition_mail_piece(piece["id"], "paid", source="webhook", description="x")

    assert exc_info.value.attempts == 3
    assert attempts == ["paid", "paid", "paid"]
    assert exc_info.value.retryable is True


def test_unknown_mail_piece(fake_db):
    with pytest.raises(UnknownMailPiece):
        transitions.transition_mail_piece("missing", "paid", source="webhook", description="x")


def test_expected_status_rejects_a_piece_that_moved_on(fake_db, make_piece):
    piece = make_piece("submitted", payment_reference="pi_1", carrier_reference="ltr_1")

    with pytest.raises(InvalidTransition) as exc_info:
        transitions.transition_mail_piece(
            piece["id"],
            "failed",
            source="user",
            description="refund",
            updates={"payment_status": "refunded"},
            expected_status="paid",
        )

    assert exc_info.value.current == "submitted"
    assert exc_info.value.reason == "mail piece moved from paid to submitted"
    assert fake_db.piece(piece["id"])["status"] == "submitted"
    assert fake_db.rpc_calls == []


def test_expected_status_turns_a_lost_race_to_the_same_target_into_an_error(fake_db, make_piece):
    piece = make_piece("pending_payment", payment_reference="cs_winner")

    with pytest.raises(InvalidTransition) as exc_info:
        transitions.transition_mail_piece(
            piece["id"],
            "pending_payment",
            source="user",
            description="checkout",
            updates={"payment_reference": "cs_loser"},
            expected_status="draft",
        )

    assert exc_info.value.current == "pending_payment"
    assert fake_db.piece(piece["id"])["payment_reference"] == "cs_winner"


def test_carrier_reference_guard_is_sent_with_the_swap(fake_db, make_piece):
    piece = make_piece("paid", payment_reference="pi_1")

    def _carrier_reference_lands(fake, params):
        fake.rpc_hooks.clear()
        fake.piece(params["p_mail_piece_id"])["carrier_reference"] = "ltr_late"

    fake_db.rpc_hooks.append(_carrier_reference_lands)

    with pytest.raises(InvalidTransition) as exc_info:
        transitions.transition_mail_piece(
            piece["id"],
            "failed",
            source="user",
            description="refund",
            expected_status="paid",
            require_null_carrier_reference=True,
        )

    assert exc_info.value.reason == "mail piece already submitted to carrier"
    assert fake_db.rpc_calls[0][1]["p_require_null_carrier_reference"] is True
    assert fake_db.piece(piece["id"])["status"] == "paid"
