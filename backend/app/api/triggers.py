"""
Triggers API

CRUD for trigger configuration, manual coverage pins, and coverage verification.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_actor, get_db
from app.schemas.schemas import (
    CoverageEntryOut,
    CoverageUpdate,
    TriggerDetail,
    TriggerIn,
    TriggerOut,
    TriggerUpdate,
    VerifyAllCoverageRequest,
    VerifyCoverageRequest,
)
from app.services.coverage_scanner import CoverageScanner
from app.services.scan_runs import track_scan
from app.services.trigger_store import TriggerStore

router = APIRouter(prefix="/api/triggers", tags=["triggers"])


def _detail(trigger) -> TriggerDetail:
    return TriggerDetail(
        **TriggerOut.model_validate(trigger).model_dump(),
        coverage=[CoverageEntryOut.model_validate(e) for e in trigger.coverage_entries],
    )


# ── GET /api/triggers — list triggers ───────────────────────────────────────

@router.get("", response_model=list[TriggerOut])
async def list_triggers(
    enabled: bool | None = Query(None),
    trigger_type: str | None = Query(None),
    search: str | None = Query(None, max_length=100),
    db: AsyncSession = Depends(get_db),
):
    return await TriggerStore(db).list_triggers(enabled=enabled, trigger_type=trigger_type, search=search)


# ── POST /api/triggers — create ─────────────────────────────────────────────

@router.post("", response_model=TriggerOut, status_code=201)
async def create_trigger(
    body: TriggerIn,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await TriggerStore(db).create(body.model_dump(), actor)


# ── POST /api/triggers/verify-all-coverage — bulk coverage scan ─────────────

@router.post("/verify-all-coverage")
async def verify_all_coverage(
    body: VerifyAllCoverageRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Verify coverage for every enabled trigger in one request.

    Long runs should go through POST /api/scans/enqueue instead; this call stops
    at the configured deadline and reports the triggers it did not reach.
    """
    body = body or VerifyAllCoverageRequest()
    result = await CoverageScanner(db).scan_all_coverage(
        min_claims=body.min_claims,
        days_back=body.days_back,
        min_margin=body.min_margin,
        dme_min_margin=body.dme_min_margin,
        deadline_seconds=body.deadline_seconds,
    )
    return result.to_dict()


# ── GET /api/triggers/{trigger_id} — detail with coverage ───────────────────

@router.get("/{trigger_id}", response_model=TriggerDetail)
async def get_trigger(trigger_id: int, db: AsyncSession = Depends(get_db)):
    trigger = await TriggerStore(db).get(trigger_id, with_coverage=True)
    return _detail(trigger)


# ── PUT /api/triggers/{trigger_id} — partial update ─────────────────────────

@router.put("/{trigger_id}")
async def update_trigger(
    trigger_id: int,
    body: TriggerUpdate,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Update a trigger. Economic changes re-price its open opportunities."""
    trigger, backfill = await TriggerStore(db).update(trigger_id, body.model_dump(exclude_unset=True), actor)
    return {
        "trigger": TriggerOut.model_validate(trigger),
        "backfill": backfill.to_dict() if backfill else None,
    }


# ── DELETE /api/triggers/{trigger_id} ───────────────────────────────────────

@router.delete("/{trigger_id}")
async def delete_trigger(
    trigger_id: int,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await TriggerStore(db).delete(trigger_id, actor)


# ── PUT /api/triggers/{trigger_id}/coverage — pin / manual override ─────────

@router.put("/{trigger_id}/coverage")
async def set_coverage(
    trigger_id: int,
    body: CoverageUpdate,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    entry, backfill = await TriggerStore(db).set_coverage(trigger_id, body.model_dump(exclude_unset=True), actor)
    return {
        "entry": CoverageEntryOut.model_validate(entry),
        "backfill": backfill.to_dict(),
    }


# ── POST /api/triggers/{trigger_id}/verify-coverage ─────────────────────────

@router.post("/{trigger_id}/verify-coverage")
async def verify_coverage(
    trigger_id: int,
    body: VerifyCoverageRequest | None = None,
    db: AsyncSession = Depends(get_db),
):
    """Rebuild the trigger's coverage table from claim history."""
    body = body or VerifyCoverageRequest()
    scope = {"trigger_id": trigger_id, **body.model_dump()}
    async with track_scan(db, "coverage", scope) as run:
        result = await CoverageScanner(db).scan_coverage(
            trigger_id,
            min_claims=body.min_claims,
            days_back=body.days_back,
            min_margin=body.min_margin,
        )
        run.stats = result.to_dict()

    return {
        **result.to_dict(),
        "batch_id": run.batch_id,
        "entries": [CoverageEntryOut.model_validate(e) for e in result.entries],
    }
