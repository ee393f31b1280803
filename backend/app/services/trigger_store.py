"""
Trigger Store

CRUD for trigger configuration and manual coverage pins. Every change is
written to the audit trail; changes that move prices re-run the backfill so
open opportunities reflect the new economics.
"""

import logging

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models import CoverageEntry, CoverageStatus, Opportunity, Trigger
from app.services.audit_service import AuditService
from app.services.backfill import BackfillResult, BackfillUpdater
from app.services.errors import DuplicateTriggerCode, NotFound
from app.services.margin import to_decimal
from app.services.trigger_rule import group_key

logger = logging.getLogger(__name__)

# Fields whose change alters opportunity prices
ECONOMIC_FIELDS = {
    "trigger_type", "annual_fills", "default_gp_value", "expected_qty", "expected_days_supply",
}

DECIMAL_FIELDS = {"default_gp_value", "expected_qty"}


def _coerce(field: str, value):
    if field in DECIMAL_FIELDS:
        return to_decimal(value)
    return value


class TriggerStore:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditService(session)

    async def list_triggers(
        self,
        enabled: bool | None = None,
        trigger_type: str | None = None,
        search: str | None = None,
    ) -> list[Trigger]:
        query = select(Trigger).order_by(Trigger.trigger_code)
        if enabled is not None:
            query = query.where(Trigger.is_enabled.is_(enabled))
        if trigger_type:
            query = query.where(Trigger.trigger_type == trigger_type)
        if search:
            pattern = f"%{search.upper()}%"
            query = query.where(or_(
                func.upper(Trigger.trigger_code).like(pattern),
                func.upper(Trigger.display_name).like(pattern),
                func.upper(Trigger.recommended_drug).like(pattern),
            ))
        return list((await self.session.execute(query)).scalars().all())

    async def get(self, trigger_id: int, with_coverage: bool = False) -> Trigger:
        query = select(Trigger).where(Trigger.id == trigger_id)
        if with_coverage:
            query = query.options(selectinload(Trigger.coverage_entries)).execution_options(populate_existing=True)
        trigger = (await self.session.execute(query)).scalar_one_or_none()
        if trigger is None:
            raise NotFound("Trigger", trigger_id)
        return trigger

    async def create(self, data: dict, actor: str) -> Trigger:
        code = data["trigger_code"].strip()
        existing = (await self.session.execute(
            select(Trigger.id).where(Trigger.trigger_code == code)
        )).scalar_one_or_none()
        if existing is not None:
            raise DuplicateTriggerCode(code)

        trigger = Trigger(**{k: _coerce(k, v) for k, v in data.items()})
        trigger.trigger_code = code
        trigger.version = 1
        trigger.last_modified_by = actor
        try:
            async with self.session.begin_nested():
                self.session.add(trigger)
                await self.session.flush()
        except IntegrityError as exc:
            # Lost a race with a concurrent create
            raise DuplicateTriggerCode(code) from exc
        await self.session.refresh(trigger)

        await self.audit.log_trigger_created(trigger.id, trigger.trigger_code, actor)
        logger.info("Trigger %s created by %s", trigger.trigger_code, actor)
        return trigger

    async def update(self, trigger_id: int, changes: dict, actor: str) -> tuple[Trigger, BackfillResult | None]:
        """Apply a partial update. Returns the trigger and the backfill result, if one ran."""
        trigger = await self.get(trigger_id)

        diff = {}
        for field, value in changes.items():
            value = _coerce(field, value)
            old = getattr(trigger, field)
            if old == value:
                continue
            diff[field] = {"old": old, "new": value}
            setattr(trigger, field, value)

        if not diff:
            return trigger, None

        trigger.version = (trigger.version or 1) + 1
        trigger.last_modified_by = actor
        await self.session.flush()
        await self.audit.log_trigger_config_changed(trigger.id, trigger.trigger_code, diff, actor)

        backfill = None
        if ECONOMIC_FIELDS & diff.keys():
            backfill = await BackfillUpdater(self.session).backfill(trigger.id)
        return trigger, backfill

    async def delete(self, trigger_id: int, actor: str) -> dict:
        """
        Delete a trigger. Triggers that already produced opportunities are only
        disabled so those opportunities keep their attribution.
        """
        trigger = (await self.session.execute(
            select(Trigger)
            .options(selectinload(Trigger.coverage_entries))
            .where(Trigger.id == trigger_id)
        )).scalar_one_or_none()
        if trigger is None:
            raise NotFound("Trigger", trigger_id)

        referenced = (await self.session.execute(
            select(func.count()).select_from(Opportunity).where(Opportunity.trigger_id == trigger_id)
        )).scalar() or 0

        code = trigger.trigger_code
        if referenced:
            trigger.is_enabled = False
            trigger.version = (trigger.version or 1) + 1
            trigger.last_modified_by = actor
            await self.session.flush()
        else:
            await self.session.delete(trigger)
            await self.session.flush()

        await self.audit.log_trigger_removed(trigger_id, code, bool(referenced), actor)
        logger.info("Trigger %s %s by %s", code, "disabled" if referenced else "deleted", actor)
        return {"trigger_id": trigger_id, "deleted": not referenced, "disabled": bool(referenced),
                "opportunities_referencing": referenced}

    async def set_coverage(self, trigger_id: int, data: dict, actor: str) -> tuple[CoverageEntry, BackfillResult]:
        """
        Pin a (BIN, Group) segment as excluded/works, or enter manual pricing.

        A `works` pin is stored as a manual override without manual values, so
        the scanned price still applies. Excluded and manual rows survive
        coverage rescans.
        """
        trigger = await self.get(trigger_id)
        bin_ = data["insurance_bin"].strip()
        group = (data.get("insurance_group") or "").strip() or None

        entry = (await self.session.execute(
            select(CoverageEntry).where(
                CoverageEntry.trigger_id == trigger_id,
                CoverageEntry.insurance_bin == bin_,
                CoverageEntry.group_key == group_key(group),
            )
        )).scalar_one_or_none()
        if entry is None:
            entry = CoverageEntry(
                trigger_id=trigger_id,
                insurance_bin=bin_,
                insurance_group=group,
                group_key=group_key(group),
                coverage_status=CoverageStatus.UNKNOWN.value,
                verified_claim_count=0,
                is_manual_override=False,
            )
            self.session.add(entry)

        if data.get("coverage_status"):
            entry.coverage_status = data["coverage_status"]

        manual_fields = ("manual_gp_value", "manual_ndc", "manual_drug_name", "manual_note")
        if data.get("is_manual_override") is False:
            entry.is_manual_override = False
            for field in manual_fields:
                setattr(entry, field, None)
        else:
            provided = {f: data[f] for f in manual_fields if data.get(f) is not None}
            pinned_works = data.get("coverage_status") == CoverageStatus.WORKS.value
            if provided or pinned_works or data.get("is_manual_override"):
                entry.is_manual_override = True
                for field, value in provided.items():
                    setattr(entry, field, to_decimal(value) if field == "manual_gp_value" else value)
                if entry.coverage_status == CoverageStatus.UNKNOWN.value:
                    entry.coverage_status = CoverageStatus.WORKS.value

        await self.session.flush()
        await self.session.refresh(entry)
        await self.audit.log_coverage_pinned(
            trigger.trigger_code, bin_, group,
            {
                "coverage_status": entry.coverage_status,
                "is_manual_override": entry.is_manual_override,
                "manual_gp_value": entry.manual_gp_value,
                "manual_ndc": entry.manual_ndc,
            },
            actor,
        )
        backfill = await BackfillUpdater(self.session).backfill(trigger_id)
        return entry, backfill
