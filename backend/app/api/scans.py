"""
Scans API — opportunity generation and bulk job control.

POST /api/scans/trigger/{trigger_id}
  Run one trigger across one or all pharmacies
POST /api/scans/pharmacy/{pharmacy_id}
  Run every enabled trigger for one pharmacy ("all" also refreshes patient profiles)
POST /api/scans/all
  Scan every active pharmacy in this request (stops at the deadline)
POST /api/scans/enqueue
  Enqueue a bulk scan as a background job (returns immediately)
GET /api/scans/jobs/{job_id}
  Check status of a background scan job
GET /api/scans/runs
  List past scan runs with stats
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.models import ScanRun
from app.schemas.schemas import (
    EnqueueScanRequest,
    EnqueueScanResponse,
    ScanAllRequest,
    ScanPharmacyRequest,
    ScanRunOut,
    ScanTriggerRequest,
)
from app.services.job_queue import enqueue_scan_job, get_job_status
from app.services.opportunity_generator import OpportunityGenerator
from app.services.scan_runs import track_scan

router = APIRouter(prefix="/api/scans", tags=["scans"])


@router.post("/trigger/{trigger_id}")
async def scan_trigger(
    trigger_id: int,
    body: ScanTriggerRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    body = body or ScanTriggerRequest()
    scope = {"trigger_id": trigger_id, **body.model_dump()}
    async with track_scan(db, "trigger", scope) as run:
        result = await OpportunityGenerator(db).scan_trigger(
            trigger_id, body.pharmacy_id, days_back=body.days_back, batch_id=run.batch_id,
            deadline_seconds=body.deadline_seconds,
        )
        run.stats = result.to_dict()
        if result.is_partial:
            run.status = "partial"
    return result.to_dict()


@router.post("/pharmacy/{pharmacy_id}")
async def scan_pharmacy(
    pharmacy_id: int,
    body: ScanPharmacyRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    body = body or ScanPharmacyRequest()
    scope = {"pharmacy_id": pharmacy_id, **body.model_dump()}
    async with track_scan(db, "pharmacy", scope) as run:
        result = await OpportunityGenerator(db).scan_pharmacy(
            pharmacy_id, days_back=body.days_back, scan_type=body.scan_type, batch_id=run.batch_id,
        )
        run.stats = result.to_dict()
    return result.to_dict()


@router.post("/all")
async def scan_all(
    body: ScanAllRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    body = body or ScanAllRequest()
    result = await OpportunityGenerator(db).scan_all_opportunities(
        days_back=body.days_back, deadline_seconds=body.deadline_seconds,
    )
    return result.to_dict()


@router.post("/enqueue", response_model=EnqueueScanResponse)
async def enqueue_scan(body: EnqueueScanRequest):
    """Enqueue a bulk scan as a background job. Poll /api/scans/jobs/{job_id} for status."""
    job_id = await enqueue_scan_job(body.job_type, body.params)
    return EnqueueScanResponse(job_id=job_id, status="queued")


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    data = await get_job_status(job_id)
    if not data:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return data


@router.get("/runs", response_model=list[ScanRunOut])
async def list_runs(
    scan_type: str | None = Query(None),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    query = select(ScanRun).order_by(ScanRun.id.desc()).limit(limit)
    if scan_type:
        query = query.where(ScanRun.scan_type == scan_type)
    return list((await db.execute(query)).scalars().all())
