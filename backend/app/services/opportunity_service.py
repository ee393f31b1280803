"""
Opportunity review workflow: listing and status transitions.

  Not Submitted → Approved | Completed | Denied | Flagged | Didn't Work
  Approved / Flagged / Didn't Work → any other status
  Denied / Completed → Not Submitted only (explicit reopen)
"""

import logging
import math

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Opportunity, OpportunityStatus
from app.services.audit_service import AuditService
from app.services.errors import InvalidStatusTransition, NotFound

logger = logging.getLogger(__name__)

_ALL = {s.value for s in OpportunityStatus}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    OpportunityStatus.NOT_SUBMITTED.value: _ALL - {OpportunityStatus.NOT_SUBMITTED.value},
    OpportunityStatus.APPROVED.value: _ALL - {OpportunityStatus.APPROVED.value},
    OpportunityStatus.FLAGGED.value: _ALL - {OpportunityStatus.FLAGGED.value},
    OpportunityStatus.DIDNT_WORK.value: _ALL - {OpportunityStatus.DIDNT_WORK.value},
    OpportunityStatus.DENIED.value: {OpportunityStatus.NOT_SUBMITTED.value},
    OpportunityStatus.COMPLETED.value: {OpportunityStatus.NOT_SUBMITTED.value},
}


def check_transition(current: str, requested: str) -> None:
    if requested not in _ALL:
        raise InvalidStatusTransition(current, requested)
    if requested not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidStatusTransition(current, requested)


class OpportunityService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_opportunities(
        self,
        pharmacy_id: int | None = None,
        status: str | None = None,
        trigger_class: str | None = None,
        page: int = 1,
        size: int = 50,
    ) -> dict:
        query = select(Opportunity)
        count_query = select(func.count()).select_from(Opportunity)
        filters = []
        if pharmacy_id is not None:
            filters.append(Opportunity.pharmacy_id == pharmacy_id)
        if status:
            filters.append(Opportunity.status == status)
        if trigger_class:
            filters.append(Opportunity.trigger_class == trigger_class)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        total = (await self.session.execute(count_query)).scalar() or 0
        items = (await self.session.execute(
            query.order_by(Opportunity.annual_margin_gain.desc(), Opportunity.id)
            .offset((page - 1) * size)
            .limit(size)
        )).scalars().all()
        return {
            "total": total,
            "page": page,
            "size": size,
            "pages": math.ceil(total / size) if size else 0,
            "items": list(items),
        }

    async def update_status(
        self, opportunity_id: int, status: str, actor: str, staff_notes: str | None = None,
    ) -> Opportunity:
        opp = await self.session.get(Opportunity, opportunity_id)
        if opp is None:
            raise NotFound("Opportunity", opportunity_id)

        old_status = opp.status
        if status != old_status:
            check_transition(old_status, status)
            opp.status = status
        if staff_notes is not None:
            opp.staff_notes = staff_notes
        await self.session.flush()

        if status != old_status:
            await AuditService(self.session).log_opportunity_status_changed(opp.id, old_status, status, actor)
            logger.info("Opportunity %s: %s -> %s by %s", opp.id, old_status, status, actor)
        return opp
