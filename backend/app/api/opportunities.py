"""
Opportunities API — review queue and status workflow.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_actor, get_db
from app.schemas.schemas import OpportunityListResponse, OpportunityOut, OpportunityStatusUpdate
from app.services.opportunity_service import OpportunityService

router = APIRouter(prefix="/api/opportunities", tags=["opportunities"])


@router.get("", response_model=OpportunityListResponse)
async def list_opportunities(
    pharmacy_id: int | None = Query(None),
    status: str | None = Query(None),
    trigger_class: str | None = Query(None),
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    return await OpportunityService(db).list_opportunities(
        pharmacy_id=pharmacy_id, status=status, trigger_class=trigger_class, page=page, size=size,
    )


@router.patch("/{opportunity_id}/status", response_model=OpportunityOut)
async def update_status(
    opportunity_id: int,
    body: OpportunityStatusUpdate,
    actor: str = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    return await OpportunityService(db).update_status(opportunity_id, body.status, actor, body.staff_notes)
