from __future__ import annotations

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.domain.reconciliation import ReconciliationReport, run_reconciliation
from src.models.reconciliation import (
    MailReconciliationResultItem,
    MailReconciliationRunRequest,
    MailReconciliationRunResponse,
)
from src.observability import incr_metric, log_event


router = APIRouter(prefix="/api/internal/reconciliation", tags=["internal-reconciliation"])


def _report_to_response(report: ReconciliationReport) -> MailReconciliationRunResponse:
    return MailReconciliationRunResponse(
        fixed_count=report.count("fixed"),
        submitted_to_lob_count=report.count("submitted_to_lob"),
        error_count=report.count("error"),
        scanned_count=report.scanned_count,
        started_at=report.started_at,
        finished_at=report.finished_at,
        results=[
            MailReconciliationResultItem(
                id=item.id,
                status=item.status,
                message=item.message,
                carrier_reference=item.carrier_reference,
            )
            for item in report.results
        ],
    )


def _run_mail_reconciliation(
    data: MailReconciliationRunRequest | None,
    request_id: str | None = None,
) -> MailReconciliationRunResponse:
    report = run_reconciliation(limit=data.limit if data else None, request_id=request_id)
    return _report_to_response(report)


@router.post("/mail-pieces", response_model=MailReconciliationRunResponse)
async def reconcile_mail_pieces(
    request: Request,
    data: MailReconciliationRunRequest | None = None,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    request_id = getattr(request.state, "request_id", None)
    log_event("reconciliation_triggered", request_id=request_id, trigger="admin", super_admin_id=ctx.super_admin_id)
    return _run_mail_reconciliation(data, request_id=request_id)


@router.post("/mail-pieces/run-scheduled", response_model=MailReconciliationRunResponse)
async def run_mail_reconciliation_scheduled(
    request: Request,
    data: MailReconciliationRunRequest | None = None,
    x_internal_scheduler_secret: str | None = Header(default=None),
):
    request_id = getattr(request.state, "request_id", None)
    configured_secret = settings.internal_scheduler_secret
    if not configured_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="internal scheduler secret is not configured",
        )
    if not x_internal_scheduler_secret or not hmac.compare_digest(
        x_internal_scheduler_secret,
        configured_secret,
    ):
        incr_metric("reconciliation.scheduled.auth_failed")
        log_event("reconciliation_scheduled_auth_failed", request_id=request_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid scheduler secret",
        )
    incr_metric("reconciliation.scheduled.auth_succeeded")
    log_event("reconciliation_triggered", request_id=request_id, trigger="scheduler")
    return _run_mail_reconciliation(data, request_id=request_id)
