"""
Metrics API

GET /metrics
  Prometheus text exposition format
GET /api/stats
  Trigger, coverage and opportunity totals for the overview page
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.models import CoverageEntry, Opportunity, ScanRun, Trigger

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
async def prometheus_metrics():
    """Expose Prometheus metrics in text format."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


@router.get("/api/stats")
async def get_stats(db: AsyncSession = Depends(get_db)):
    triggers = (await db.execute(
        select(Trigger.is_enabled, func.count()).group_by(Trigger.is_enabled)
    )).all()
    coverage = (await db.execute(
        select(CoverageEntry.coverage_status, func.count()).group_by(CoverageEntry.coverage_status)
    )).all()
    opportunities = (await db.execute(
        select(Opportunity.status, func.count(), func.coalesce(func.sum(Opportunity.annual_margin_gain), 0))
        .group_by(Opportunity.status)
    )).all()

    # Most recent run of each scan type
    latest = (
        select(ScanRun.scan_type, func.max(ScanRun.id).label("run_id"))
        .group_by(ScanRun.scan_type)
        .subquery()
    )
    runs = (await db.execute(
        select(ScanRun).join(latest, ScanRun.id == latest.c.run_id).order_by(ScanRun.scan_type)
    )).scalars().all()

    enabled = {bool(flag): count for flag, count in triggers}
    return {
        "triggers": {"enabled": enabled.get(True, 0), "disabled": enabled.get(False, 0)},
        "coverage_entries": {status: count for status, count in coverage},
        "opportunities": {
            status: {"count": count, "annual_margin_gain": round(float(total), 2)}
            for status, count, total in opportunities
        },
        "last_scans": {
            run.scan_type: {
                "batch_id": run.batch_id,
                "status": run.status,
                "completed_at": run.completed_at,
                "duration_seconds": run.duration_seconds,
            }
            for run in runs
        },
    }
