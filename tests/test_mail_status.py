from src.domain import mail_status


def test_transition_table_is_closed_and_terminal_states_have_no_exits():
    assert set(mail_status.ALLOWED_TRANSITIONS) == set(mail_status.MAIL_PIECE_STATUSES)
    for terminal in mail_status.TERMINAL_STATUSES:
        assert mail_status.ALLOWED_TRANSITIONS[terminal] == frozenset()
    for targets in mail_status.ALLOWED_TRANSITIONS.values():
        assert targets <= set(mail_status.MAIL_PIECE_STATUSES)

    assert mail_status.is_transition_allowed("draft", "pending_payment") is True
    assert mail_status.is_transition_allowed("draft", "paid") is False
    assert mail_status.is_transition_allowed("draft", "in_transit") is False
    assert mail_status.is_transition_allowed("delivered", "in_transit") is False
    assert mail_status.is_transition_allowed("in_transit", "returned") is True
    assert mail_status.is_transition_allowed("unknown", "draft") is False


def test_carrier_status_mapping_normalizes_spelling_and_leaves_unknowns_unmapped():
    assert mail_status.normalize_carrier_status("in_transit") == "in_transit"
    assert mail_status.normalize_carrier_status("In Transit") == "in_transit"
    assert mail_status.normalize_carrier_status("Returned to Sender") == "returned"
    assert mail_status.normalize_carrier_status("processing") == "submitted"
    assert mail_status.normalize_carrier_status("cancelled") == "failed"
    assert mail_status.normalize_carrier_status("re-routed") is None
    assert mail_status.normalize_carrier_status("") is None
    assert mail_status.normalize_carrier_status(None) is None


def test_carrier_status_from_event_type_takes_suffix():
    assert mail_status.carrier_status_from_event_type("letter.in_transit") == "in_transit"
    assert mail_status.carrier_status_from_event_type("postcard.delivered") == "delivered"
    assert mail_status.carrier_status_from_event_type("delivered") == "delivered"
    assert mail_status.carrier_status_from_event_type(None) is None


def test_payment_status_normalization_for_intents_and_sessions():
    assert mail_status.normalize_payment_status(reference_kind="payment_intent", gateway_status="succeeded") == "paid"
    assert mail_status.normalize_payment_status(reference_kind="payment_intent", gateway_status="canceled") == "failed"
    assert (
        mail_status.normalize_payment_status(reference_kind="payment_intent", gateway_status="requires_payment_method")
        == "pending"
    )
    assert (
        mail_status.normalize_payment_status(
            reference_kind="checkout_session",
            gateway_status="paid",
            session_status="complete",
        )
        == "paid"
    )
    assert (
        mail_status.normalize_payment_status(
            reference_kind="checkout_session",
            gateway_status="unpaid",
            session_status="expired",
        )
        == "failed"
    )
    assert (
        mail_status.normalize_payment_status(
            reference_kind="checkout_session",
            gateway_status="unpaid",
            session_status="open",
        )
        == "pending"
    )
