import pytest

from src.domain.errors import AmbiguousExternalOutcome, CarrierSubmissionError, CarrierUnavailable
from src.providers.lob import carrier
from src.providers.lob.client import LobProviderError


SENDER = {
    "contact_name": "Ada Sender",
    "address_line1": "1 Market St",
    "address_city": "San Francisco",
    "address_state": "CA",
    "address_zip": "94105",
}
RECIPIENT = {
    "contact_name": "Grace Recipient",
    "company_name": "Example Co",
    "address_line1": "200 Broadway",
    "address_line2": "Suite 5",
    "address_city": "New York",
    "address_state": "NY",
    "address_zip": "10007",
    "address_country": "US",
}


def _piece(**overrides) -> dict:
    piece = {
        "id": "mp-1",
        "mail_type": "letter",
        "mail_class": "usps_first_class",
        "mail_size": "us_letter",
        "description": None,
    }
    piece.update(overrides)
    return piece


@pytest.fixture
def live(monkeypatch):
    monkeypatch.setattr(carrier.settings, "lob_api_key", "test_lob_key")


def test_simulation_is_deterministic_per_mail_piece():
    first = carrier.submit(_piece(), "https://files.example/a.pdf", sender=SENDER, recipient=RECIPIENT)
    again = carrier.submit(_piece(), "https://files.example/a.pdf", sender=SENDER, recipient=RECIPIENT)
    postcard = carrier.submit(_piece(id="mp-2", mail_type="postcard"), "https://files.example/b.pdf", sender=SENDER, recipient=RECIPIENT)

    assert first.simulated is True
    assert first.carrier_reference == again.carrier_reference
    assert first.carrier_reference.startswith("ltr_sim_")
    assert first.tracking_number == again.tracking_number
    assert first.carrier_status == "processing"
    assert first.cost_cents == 60
    assert postcard.carrier_reference.startswith("psc_sim_")
    assert postcard.cost_cents == 50
    assert carrier.find_existing_submission(_piece()) is None


def test_simulated_status_echoes_reference():
    submission = carrier.submit(_piece(), "https://files.example/a.pdf", sender=SENDER, recipient=RECIPIENT)

    status = carrier.get_status(submission.carrier_reference)

    assert status.simulated is True
    assert status.carrier_status == "processing"
    assert status.tracking_number == submission.tracking_number


def test_letter_payload_and_idempotency_key(live, monkeypatch):
    captured = {}

    def _create_letter(api_key, payload, *, idempotency_key=None, base_url=None, timeout_seconds=12.0):
        captured.update(payload=payload, idempotency_key=idempotency_key, api_key=api_key)
        return {"id": "ltr_live", "status": "processing", "tracking_number": "9400", "price": "1.25"}

    monkeypatch.setattr(carrier, "create_letter", _create_letter)

    submission = carrier.submit(
        _piece(mail_class="usps_priority", description="Invoice"),
        "https://files.example/a.pdf",
        sender=SENDER,
        recipient=RECIPIENT,
    )

    payload = captured["payload"]
    assert captured["api_key"] == "test_lob_key"
    assert captured["idempotency_key"] == "mail-piece-mp-1"
    assert payload["file"] == "https://files.example/a.pdf"
    assert payload["extra_service"] == "priority"
    assert payload["metadata"] == {"mail_piece_id": "mp-1"}
    assert payload["to"]["name"] == "Grace Recipient"
    assert payload["to"]["company"] == "Example Co"
    assert payload["from"]["address_country"] == "US"
    assert "address_line2" not in payload["from"]
    assert submission.carrier_reference == "ltr_live"
    assert submission.cost_cents == 125
    assert submission.simulated is False


def test_postcard_payload_uses_front_and_size(live, monkeypatch):
    captured = {}

    def _create_postcard(api_key, payload, *, idempotency_key=None, base_url=None, timeout_seconds=12.0):
        captured["payload"] = payload
        return {"id": "psc_live"}

    monkeypatch.setattr(carrier, "create_postcard", _create_postcard)

    submission = carrier.submit(
        _piece(mail_type="postcard", mail_size="6x9"),
        "https://files.example/front.pdf",
        sender=SENDER,
        recipient=RECIPIENT,
    )

    assert captured["payload"]["front"] == "https://files.example/front.pdf"
    assert captured["payload"]["size"] == "6x9"
    assert "file" not in captured["payload"]
    assert submission.carrier_status == "processing"


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (LobProviderError("Lob connectivity error: read timed out", ambiguous=True), AmbiguousExternalOutcome),
        (LobProviderError("Lob connectivity error: refused"), CarrierUnavailable),
        (LobProviderError("Lob API returned HTTP 429: slow down", status_code=429), CarrierUnavailable),
        (LobProviderError("Lob API returned HTTP 422: bad address", status_code=422), CarrierSubmissionError),
    ],
)
def test_submission_errors_map_to_domain_errors(live, monkeypatch, error, expected):
    def _create_letter(*args, **kwargs):
        raise error

    monkeypatch.setattr(carrier, "create_letter", _create_letter)

    with pytest.raises(expected):
        carrier.submit(_piece(), "https://files.example/a.pdf", sender=SENDER, recipient=RECIPIENT)


def test_response_without_id_is_ambiguous(live, monkeypatch):
    monkeypatch.setattr(carrier, "create_letter", lambda *args, **kwargs: {"status": "processing"})

    with pytest.raises(AmbiguousExternalOutcome):
        carrier.submit(_piece(), "https://files.example/a.pdf", sender=SENDER, recipient=RECIPIENT)


def test_live_status_reads_tracking_events(live, monkeypatch):
    monkeypatch.setattr(
        carrier,
        "get_letter",
        lambda api_key, letter_id, **kwargs: {
            "id": letter_id,
            "tracking_number": "9400",
            "tracking_events": [
                {"type": "Mailed", "name": "Mailed", "time": "2026-10-01T10:00:00Z"},
                {"type": "In Transit", "details": {"description": "Arrived at facility"}, "location": "10007"},
            ],
        },
    )

    status = carrier.get_status("ltr_live")

    assert status.carrier_status == "in_transit"
    assert [event["status"] for event in status.events] == ["mailed", "in_transit"]
    assert status.events[1]["description"] == "Arrived at facility"


def test_find_existing_submission_filters_on_metadata(live, monkeypatch):
    monkeypatch.setattr(
        carrier,
        "list_letters",
        lambda api_key, **kwargs: {
            "data": [
                {"id": "ltr_other", "metadata": {"mail_piece_id": "mp-9"}},
                {"id": "ltr_mine", "status": "processing", "metadata": {"mail_piece_id": "mp-1"}},
            ]
        },
    )

    existing = carrier.find_existing_submission(_piece())

    assert existing.carrier_reference == "ltr_mine"


def test_find_existing_submission_lookup_failure_is_transient(live, monkeypatch):
    def _list_letters(*args, **kwargs):
        raise LobProviderError("Lob API returned HTTP 503: busy", status_code=503)

    monkeypatch.setattr(carrier, "list_letters", _list_letters)

    with pytest.raises(CarrierUnavailable):
        carrier.find_existing_submission(_piece())
