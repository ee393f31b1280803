"""
Backfill Updater

When a trigger's economics change (coverage scan or manual edit), re-price every
still-open ("Not Submitted") opportunity of that trigger in place. Status is never
touched and opportunities are never recreated.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import CoverageStatus, Opportunity, OpportunityStatus, Trigger
from app.services.errors import NotFound
from app.services.margin import ZERO, money
from app.services.trigger_matcher import compute_gain, current_claim_gp, resolve_price
from app.services.trigger_rule import CoverageIndex, TriggerRule

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    trigger_id: int
    examined: int = 0
    updated: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "trigger_id": self.trigger_id,
            "examined": self.examined,
            "updated": self.updated,
            "skipped": self.skipped,
        }


class BackfillUpdater:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def backfill(self, trigger_id: int) -> BackfillResult:
        trigger = (await self.session.execute(
            select(Trigger)
            .options(selectinload(Trigger.coverage_entries))
            .where(Trigger.id == trigger_id)
            .execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if trigger is None:
            raise NotFound("Trigger", trigger_id)

        rule = TriggerRule.from_model(trigger)
        # Excluded rows are ignored here: an open opportunity falls back to the default price
        coverage = CoverageIndex.from_entries(
            e for e in trigger.coverage_entries if e.coverage_status != CoverageStatus.EXCLUDED.value
        )

        opps = (await self.session.execute(
            select(Opportunity)
            .options(selectinload(Opportunity.prescription))
            .where(
                Opportunity.trigger_id == trigger_id,
                Opportunity.status == OpportunityStatus.NOT_SUBMITTED.value,
            )
        )).scalars().all()

        result = BackfillResult(trigger_id=trigger_id)
        for opp in opps:
            result.examined += 1
            rx = opp.prescription
            bin_ = rx.insurance_bin if rx is not None else opp.insurance_bin
            group = rx.insurance_group if rx is not None else opp.insurance_group

            price, quote, source = resolve_price(rule, coverage, bin_, group)
            if price is None:
                result.skipped += 1
                continue
            if rx is None and not rule.is_add_on:
                # Without the originating claim the current GP is unknown
                result.skipped += 1
                continue

            current_gp = current_claim_gp(rx, rule) if rx is not None else ZERO
            gain = money(compute_gain(rule, price, current_gp))
            if gain <= 0:
                result.skipped += 1
                continue

            opp.potential_margin_gain = gain
            opp.annual_margin_gain = money(gain * rule.annual_fills)
            opp.price_source = source
            if source != "default" and quote is not None:
                if quote.avg_qty is not None:
                    opp.avg_dispensed_qty = money(quote.avg_qty)
                if quote.best_ndc:
                    opp.recommended_ndc = quote.best_ndc
            result.updated += 1

        await self.session.flush()
        logger.info(
            "Backfill for trigger %s: %d examined, %d updated, %d skipped",
            trigger.trigger_code, result.examined, result.updated, result.skipped,
        )
        return result
