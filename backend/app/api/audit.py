"""
Audit API — read the trail of trigger, coverage and opportunity changes.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.schemas.schemas import AuditChainCheck, AuditEntryOut
from app.services.audit_service import AuditService

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("", response_model=list[AuditEntryOut])
async def list_audit_entries(
    resource_type: str | None = Query(None, pattern="^(trigger|coverage|opportunity)$"),
    resource_id: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Newest entries first, optionally for one resource."""
    return await AuditService(db).get_entries(resource_type, resource_id, limit=limit)


@router.get("/verify", response_model=AuditChainCheck)
async def verify_audit_chain(db: AsyncSession = Depends(get_db)):
    """Re-hash the whole trail and report the first tampered entry, if any."""
    return AuditChainCheck(**await AuditService(db).verify_chain())
