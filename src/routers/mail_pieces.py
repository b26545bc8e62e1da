from __future__ import annotations

import logging
from typing import Any, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from src.auth import AuthContext, get_current_user
from src.config import settings
from src.domain import fulfillment
from src.domain.errors import (
    AmbiguousExternalOutcome,
    CarrierSubmissionError,
    CarrierUnavailable,
    InvalidTransition,
    MailFulfillmentError,
    PaymentGatewayUnavailable,
    PaymentRequestError,
    TransitionConflict,
    UnknownMailPiece,
)
from src.domain.ledger import list_status_history
from src.domain.mail_pieces import create_draft, delete_draft, get_mail_piece, get_owned_row, list_mail_pieces
from src.domain.mail_status import MAIL_PIECE_STATUSES
from src.domain.provider_errors import provider_error_detail, provider_error_http_status
from src.models.mail_pieces import (
    CheckoutSessionRequest,
    MailPieceBulkDeleteItem,
    MailPieceBulkDeleteRequest,
    MailPieceBulkDeleteResponse,
    MailPieceCreateRequest,
    MailPieceDetailResponse,
    MailPieceListResponse,
    MailPieceResponse,
    PaymentCreateResponse,
    RefundRequest,
    StatusOperationResponse,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/mail-pieces", tags=["mail-pieces"])

_PAYMENT_ERRORS = (PaymentRequestError, PaymentGatewayUnavailable)
_CARRIER_ERRORS = (CarrierSubmissionError, CarrierUnavailable)


def _request_id(request: Request | None) -> str | None:
    if not request:
        return None
    return getattr(getattr(request, "state", None), "request_id", None)


def _raise_http_error(operation: str, exc: MailFulfillmentError, request_id: str | None = None) -> NoReturn:
    incr_metric("mail_pieces.requests.failed", operation=operation, error=type(exc).__name__)
    log_event(
        "mail_piece_operation_failed",
        level=logging.WARNING,
        request_id=request_id,
        operation=operation,
        error_type=type(exc).__name__,
        category=exc.category,
        error=str(exc),
    )
    if isinstance(exc, UnknownMailPiece):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mail piece not found") from exc
    if isinstance(exc, InvalidTransition):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "type": "invalid_transition",
                "current_status": exc.current,
                "target_status": exc.target,
                "message": exc.reason,
            },
        ) from exc
    if isinstance(exc, TransitionConflict):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Mail piece is being updated concurrently, retry shortly",
        ) from exc
    if isinstance(exc, _PAYMENT_ERRORS):
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider="stripe", operation=operation, exc=exc),
        ) from exc
    if isinstance(exc, _CARRIER_ERRORS):
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider="lob", operation=operation, exc=exc),
        ) from exc
    if isinstance(exc, AmbiguousExternalOutcome):
        raise HTTPException(
            status_code=provider_error_http_status(exc),
            detail=provider_error_detail(provider=exc.provider, operation=operation, exc=exc),
        ) from exc
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {operation.replace('_', ' ')} due to an internal error.",
    ) from exc


def _piece_row_to_response(row: dict[str, Any]) -> MailPieceResponse:
    return MailPieceResponse(**row)


def _get_piece_for_auth(auth: AuthContext, mail_piece_id: str) -> dict[str, Any]:
    piece = get_mail_piece(mail_piece_id, user_id=auth.user_id)
    if not piece:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mail piece not found")
    return piece


def _default_checkout_urls(mail_piece_id: str) -> tuple[str, str]:
    base = settings.app_base_url.rstrip("/")
    return (
        f"{base}/mail/checkout-result?mail_piece_id={mail_piece_id}&status=success",
        f"{base}/mail/checkout-result?mail_piece_id={mail_piece_id}&status=cancelled",
    )


@router.post("", response_model=MailPieceResponse, status_code=status.HTTP_201_CREATED)
async def create_mail_piece(
    data: MailPieceCreateRequest,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    for table, row_id, label in (
        ("mail_addresses", data.sender_address_id, "Sender address"),
        ("mail_addresses", data.recipient_address_id, "Recipient address"),
        ("files", data.file_id, "File"),
    ):
        if not get_owned_row(table, row_id, auth.user_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")

    piece = create_draft(
        user_id=auth.user_id,
        sender_address_id=data.sender_address_id,
        recipient_address_id=data.recipient_address_id,
        file_id=data.file_id,
        mail_type=data.mail_type,
        mail_class=data.mail_class,
        mail_size=data.mail_size,
        description=data.description,
    )
    incr_metric("mail_pieces.created", mail_type=data.mail_type)
    log_event(
        "mail_piece_created",
        request_id=request_id,
        mail_piece_id=piece["id"],
        user_id=auth.user_id,
        mail_type=data.mail_type,
        mail_class=data.mail_class,
    )
    return _piece_row_to_response(piece)


@router.get("", response_model=MailPieceListResponse)
async def list_user_mail_pieces(
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = 50,
    offset: int = 0,
    auth: AuthContext = Depends(get_current_user),
):
    if status_filter and status_filter not in MAIL_PIECE_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported status filter")
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    rows = list_mail_pieces(
        user_id=auth.user_id,
        status=status_filter,
        limit=bounded_limit,
        offset=bounded_offset,
    )
    return MailPieceListResponse(
        mail_pieces=[_piece_row_to_response(row) for row in rows],
        limit=bounded_limit,
        offset=bounded_offset,
    )


@router.post("/bulk-delete", response_model=MailPieceBulkDeleteResponse)
async def bulk_delete_mail_pieces(
    data: MailPieceBulkDeleteRequest,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    if len(data.ids) > settings.bulk_delete_max_items:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"At most {settings.bulk_delete_max_items} mail pieces can be deleted at once",
        )

    results: list[MailPieceBulkDeleteItem] = []
    for mail_piece_id in dict.fromkeys(data.ids):
        piece = get_mail_piece(mail_piece_id, user_id=auth.user_id)
        if not piece:
            results.append(MailPieceBulkDeleteItem(id=mail_piece_id, status="failed", reason="not_found"))
            continue
        if piece["status"] != "draft":
            results.append(
                MailPieceBulkDeleteItem(id=mail_piece_id, status="failed", reason=f"status_{piece['status']}")
            )
            continue
        if delete_draft(mail_piece_id, user_id=auth.user_id):
            results.append(MailPieceBulkDeleteItem(id=mail_piece_id, status="deleted"))
        else:
            # moved out of draft between the read and the conditional delete
            results.append(MailPieceBulkDeleteItem(id=mail_piece_id, status="failed", reason="no_longer_draft"))

    deleted_count = sum(1 for item in results if item.status == "deleted")
    failed_count = len(results) - deleted_count
    incr_metric("mail_pieces.bulk_delete.items", value=deleted_count, outcome="deleted")
    incr_metric("mail_pieces.bulk_delete.items", value=failed_count, outcome="failed")
    log_event(
        "mail_pieces_bulk_deleted",
        request_id=request_id,
        user_id=auth.user_id,
        requested=len(data.ids),
        deleted=deleted_count,
        failed=failed_count,
    )
    return MailPieceBulkDeleteResponse(deleted_count=deleted_count, failed_count=failed_count, results=results)


@router.get("/{mail_piece_id}", response_model=MailPieceDetailResponse)
async def get_user_mail_piece(
    mail_piece_id: str,
    auth: AuthContext = Depends(get_current_user),
):
    piece = _get_piece_for_auth(auth, mail_piece_id)
    return MailPieceDetailResponse(**piece, status_history=list_status_history(mail_piece_id))


@router.delete("/{mail_piece_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mail_piece(
    mail_piece_id: str,
    auth: AuthContext = Depends(get_current_user),
):
    piece = _get_piece_for_auth(auth, mail_piece_id)
    if piece["status"] != "draft" or not delete_draft(mail_piece_id, user_id=auth.user_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Only draft mail pieces can be deleted",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{mail_piece_id}/payment-intent", response_model=PaymentCreateResponse)
async def create_mail_payment_intent(
    mail_piece_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    try:
        payment, result = fulfillment.start_payment(
            mail_piece_id,
            user_id=auth.user_id,
            kind="payment_intent",
            request_id=request_id,
        )
    except MailFulfillmentError as exc:
        _raise_http_error("create_payment_intent", exc, request_id=request_id)
    return PaymentCreateResponse(
        mail_piece=_piece_row_to_response(result.mail_piece),
        payment_reference=payment.reference,
        kind="payment_intent",
        amount_cents=payment.amount_cents,
        client_secret=payment.client_secret,
    )


@router.post("/{mail_piece_id}/checkout-session", response_model=PaymentCreateResponse)
async def create_mail_checkout_session(
    mail_piece_id: str,
    request: Request,
    data: CheckoutSessionRequest | None = None,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    default_success, default_cancel = _default_checkout_urls(mail_piece_id)
    try:
        payment, result = fulfillment.start_payment(
            mail_piece_id,
            user_id=auth.user_id,
            kind="checkout_session",
            success_url=(data.success_url if data else None) or default_success,
            cancel_url=(data.cancel_url if data else None) or default_cancel,
            request_id=request_id,
        )
    except MailFulfillmentError as exc:
        _raise_http_error("create_checkout_session", exc, request_id=request_id)
    return PaymentCreateResponse(
        mail_piece=_piece_row_to_response(result.mail_piece),
        payment_reference=payment.reference,
        kind="checkout_session",
        amount_cents=payment.amount_cents,
        checkout_url=payment.url,
    )


@router.post("/{mail_piece_id}/confirm-payment", response_model=StatusOperationResponse)
async def confirm_mail_payment(
    mail_piece_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    try:
        outcome = fulfillment.confirm_payment(mail_piece_id, user_id=auth.user_id, request_id=request_id)
    except MailFulfillmentError as exc:
        _raise_http_error("confirm_payment", exc, request_id=request_id)
    return StatusOperationResponse(
        mail_piece=_piece_row_to_response(outcome.mail_piece),
        outcome=outcome.outcome,
        detail=outcome.detail,
    )


@router.post("/{mail_piece_id}/submit", response_model=StatusOperationResponse)
async def submit_mail_piece(
    mail_piece_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    try:
        result = fulfillment.submit_paid_mail_piece(
            mail_piece_id,
            source="user",
            user_id=auth.user_id,
            request_id=request_id,
        )
    except MailFulfillmentError as exc:
        _raise_http_error("submit_mail_piece", exc, request_id=request_id)
    return StatusOperationResponse(
        mail_piece=_piece_row_to_response(result.mail_piece),
        outcome="transitioned" if result.applied else "noop",
    )


@router.post("/{mail_piece_id}/sync", response_model=StatusOperationResponse)
async def sync_mail_piece_status(
    mail_piece_id: str,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    try:
        outcome = fulfillment.sync_carrier_status(mail_piece_id, user_id=auth.user_id, request_id=request_id)
    except MailFulfillmentError as exc:
        _raise_http_error("sync_mail_piece_status", exc, request_id=request_id)
    return StatusOperationResponse(
        mail_piece=_piece_row_to_response(outcome.mail_piece),
        outcome=outcome.outcome,
        detail=outcome.detail,
    )


@router.post("/{mail_piece_id}/refund", response_model=StatusOperationResponse)
async def refund_mail_payment(
    mail_piece_id: str,
    data: RefundRequest,
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    request_id = _request_id(request)
    try:
        result = fulfillment.refund_payment(
            mail_piece_id,
            user_id=auth.user_id,
            reason=data.reason,
            request_id=request_id,
        )
    except MailFulfillmentError as exc:
        _raise_http_error("refund_payment", exc, request_id=request_id)
    return StatusOperationResponse(
        mail_piece=_piece_row_to_response(result.mail_piece),
        outcome="transitioned" if result.applied else "noop",
    )
