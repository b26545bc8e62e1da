from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src import db
from src.auth import SuperAdminContext, get_current_super_admin
from src.config import settings
from src.models.observability import (
    LiveMetricsResponse,
    MetricsSnapshotFlushRequest,
    MetricsSnapshotFlushResponse,
    MetricsSnapshotRecord,
)
from src.observability import metrics_snapshot, persist_metrics_snapshot


router = APIRouter(prefix="/api/super-admin/observability", tags=["observability"])


@router.get("/metrics", response_model=LiveMetricsResponse)
async def get_live_metrics(ctx: SuperAdminContext = Depends(get_current_super_admin)):
    counters = metrics_snapshot()
    return LiveMetricsResponse(counters=counters, counter_count=len(counters))


@router.get("/metrics-snapshots", response_model=list[MetricsSnapshotRecord])
async def list_metrics_snapshots(
    limit: int = 50,
    offset: int = 0,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    bounded_limit = max(1, min(limit, 200))
    bounded_offset = max(0, offset)
    result = (
        db.supabase.table("observability_metric_snapshots")
        .select("id, source, request_id, counters, created_at")
        .execute()
    )
    rows = result.data or []
    rows = sorted(rows, key=lambda row: row.get("created_at") or "", reverse=True)
    return rows[bounded_offset:bounded_offset + bounded_limit]


@router.post("/metrics-snapshots/flush", response_model=MetricsSnapshotFlushResponse)
async def flush_metrics_snapshot(
    request: Request,
    data: MetricsSnapshotFlushRequest,
    ctx: SuperAdminContext = Depends(get_current_super_admin),
):
    counter_count = len(metrics_snapshot())
    persisted = persist_metrics_snapshot(
        supabase_client=db.supabase,
        source=data.source,
        request_id=getattr(request.state, "request_id", None),
        reset_after_persist=data.reset_after_persist,
        export_url=settings.observability_export_url,
        export_bearer_token=settings.observability_export_bearer_token,
        export_timeout_seconds=settings.observability_export_timeout_seconds,
    )
    return MetricsSnapshotFlushResponse(
        persisted=persisted,
        source=data.source,
        counter_count=counter_count,
    )
