from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.domain.mail_status import MailPieceStatus, PaymentStatus


MailType = Literal["letter", "postcard", "check", "self_mailer", "catalog", "booklet"]
MailClass = Literal["usps_first_class", "usps_priority", "usps_express"]


class MailPieceCreateRequest(BaseModel):
    sender_address_id: str
    recipient_address_id: str
    file_id: str
    mail_type: MailType
    mail_class: MailClass = "usps_first_class"
    mail_size: str = Field(min_length=1, max_length=20)
    description: str | None = Field(default=None, max_length=500)


class StatusHistoryEntryResponse(BaseModel):
    id: int
    status: MailPieceStatus
    previous_status: MailPieceStatus | None = None
    description: str
    source: Literal["system", "user", "webhook", "manual"]
    raw_payload: dict[str, Any] | None = None
    created_at: datetime | None = None


class MailPieceResponse(BaseModel):
    id: str
    user_id: str
    sender_address_id: str
    recipient_address_id: str
    file_id: str
    mail_type: str
    mail_class: str
    mail_size: str
    description: str | None = None
    status: MailPieceStatus
    payment_reference: str | None = None
    payment_status: PaymentStatus | None = None
    cost_cents: int | None = None
    carrier_reference: str | None = None
    carrier_status: str | None = None
    tracking_number: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MailPieceDetailResponse(MailPieceResponse):
    status_history: list[StatusHistoryEntryResponse] = Field(default_factory=list)


class MailPieceListResponse(BaseModel):
    mail_pieces: list[MailPieceResponse]
    limit: int
    offset: int


class MailPieceBulkDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1)


class MailPieceBulkDeleteItem(BaseModel):
    id: str
    status: Literal["deleted", "failed"]
    reason: str | None = None


class MailPieceBulkDeleteResponse(BaseModel):
    deleted_count: int
    failed_count: int
    results: list[MailPieceBulkDeleteItem]


class CheckoutSessionRequest(BaseModel):
    success_url: str | None = None
    cancel_url: str | None = None


class PaymentCreateResponse(BaseModel):
    mail_piece: MailPieceResponse
    payment_reference: str
    kind: Literal["payment_intent", "checkout_session"]
    amount_cents: int
    client_secret: str | None = None
    checkout_url: str | None = None


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class StatusOperationResponse(BaseModel):
    mail_piece: MailPieceResponse
    outcome: Literal["transitioned", "noop", "unmapped", "rejected", "ignored"]
    detail: str | None = None
