from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


WebhookProviderSlug = Literal["payment", "carrier"]
WebhookEventStatus = Literal["received", "processed", "ignored", "failed"]


class WebhookEventListItem(BaseModel):
    id: str
    provider_slug: WebhookProviderSlug
    event_key: str
    event_type: str | None = None
    status: WebhookEventStatus | None = None
    mail_piece_id: str | None = None
    outcome: str | None = None
    last_error: str | None = None
    processed_at: datetime | None = None
    created_at: datetime | None = None


class PaymentEventData(BaseModel):
    object: dict[str, Any]


class PaymentEventEnvelope(BaseModel):
    """Stripe event envelope; only the fields ingestion relies on are declared."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: PaymentEventData
    created: int | None = None
    livemode: bool | None = None


class CarrierTrackingEvent(BaseModel):
    status: str | None = None
    description: str | None = None
    location: str | None = None
    timestamp: str | None = None


class CarrierStatusPayload(BaseModel):
    """Flat carrier notification: ``{id, status, tracking_number, events?}``."""

    id: str = Field(min_length=1)
    status: str = Field(min_length=1)
    tracking_number: str | None = None
    events: list[CarrierTrackingEvent] = Field(default_factory=list)


class CarrierEventType(BaseModel):
    id: str = Field(min_length=1)


class CarrierEventBody(BaseModel):
    id: str = Field(min_length=1)
    tracking_number: str | None = None
    metadata: dict[str, Any] | None = None


class CarrierEventEnvelope(BaseModel):
    """Lob native event: ``event_type.id`` like ``letter.in_transit`` and the piece under ``body``."""

    id: str = Field(min_length=1)
    event_type: CarrierEventType
    body: CarrierEventBody
    date_created: str | None = None


class WebhookIngestResponse(BaseModel):
    status: Literal["processed", "duplicate_ignored", "ignored"]
    event_key: str
    event_type: str
    mail_piece_id: str | None = None
    outcome: str | None = None
    mail_piece_status: str | None = None
    detail: str | None = None
