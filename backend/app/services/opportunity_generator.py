"""
Opportunity Generator

Runs the trigger matcher over every patient of a pharmacy and persists the
matches as "Not Submitted" opportunities.

Dedup works at two levels: a scan-scoped ScanContext (seeded from the
pharmacy's existing opportunities) skips known keys without touching the
database, and the unique constraint on (pharmacy, patient, trigger class,
drug key) plus ON CONFLICT DO NOTHING makes concurrent scans safe.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import dialect_insert
from app.middleware.metrics import opportunities_created_total
from app.models import CoverageEntry, Opportunity, OpportunityStatus, Pharmacy, Prescription, Trigger
from app.services.errors import InvalidTriggerConfig, NotFound, ScanPartialFailure
from app.services.patient_profiles import PatientProfiler
from app.services.scan_runs import Deadline, new_batch_id, track_scan
from app.services.trigger_matcher import Matched, NotApplicable, Reason, TriggerMatcher, drug_key
from app.services.trigger_rule import CoverageIndex, TriggerRule

logger = logging.getLogger(__name__)


@dataclass
class ScanContext:
    """State of one pharmacy scan, passed explicitly down the call graph."""

    batch_id: str
    pharmacy_id: int
    seen: set[tuple[int, str, str]] = field(default_factory=set)


@dataclass
class TriggerTally:
    created: int = 0
    skipped: int = 0
    matched: int = 0

    def add(self, other: "TriggerTally") -> None:
        self.created += other.created
        self.skipped += other.skipped
        self.matched += other.matched


@dataclass
class PharmacyScanResult:
    pharmacy_id: int
    batch_id: str
    patients_scanned: int = 0
    patients_matched: int = 0
    profiles_updated: int = 0
    by_trigger: dict[str, TriggerTally] = field(default_factory=dict)

    @property
    def created(self) -> int:
        return sum(t.created for t in self.by_trigger.values())

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.by_trigger.values())

    def to_dict(self) -> dict:
        return {
            "pharmacy_id": self.pharmacy_id,
            "batch_id": self.batch_id,
            "created": self.created,
            "skipped": self.skipped,
            "patients_scanned": self.patients_scanned,
            "patients_matched": self.patients_matched,
            "profiles_updated": self.profiles_updated,
            "by_trigger": {code: vars(t) for code, t in self.by_trigger.items()},
        }


@dataclass
class MultiScanResult:
    """Aggregate over several pharmacies (scan_trigger / scan_all_opportunities)."""

    batch_id: str
    pharmacies_scanned: int = 0
    patients_matched: int = 0
    by_trigger: dict[str, TriggerTally] = field(default_factory=dict)
    failures: list[ScanPartialFailure] = field(default_factory=list)
    skipped_pharmacies: list[int] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(t.created for t in self.by_trigger.values())

    @property
    def skipped(self) -> int:
        return sum(t.skipped for t in self.by_trigger.values())

    @property
    def is_partial(self) -> bool:
        return bool(self.failures or self.skipped_pharmacies)

    def merge(self, result: PharmacyScanResult) -> None:
        self.pharmacies_scanned += 1
        self.patients_matched += result.patients_matched
        for code, tally in result.by_trigger.items():
            self.by_trigger.setdefault(code, TriggerTally()).add(tally)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "created": self.created,
            "skipped": self.skipped,
            "pharmacies_scanned": self.pharmacies_scanned,
            "patients_matched": self.patients_matched,
            "by_trigger": {code: vars(t) for code, t in self.by_trigger.items()},
            "failures": [f.to_dict() for f in self.failures],
            "skipped_pharmacies": self.skipped_pharmacies,
        }


class OpportunityGenerator:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def scan_pharmacy(
        self,
        pharmacy_id: int,
        rules: list[TriggerRule] | None = None,
        *,
        days_back: int | None = None,
        scan_type: str = "opportunities",
        batch_id: str | None = None,
    ) -> PharmacyScanResult:
        """
        Evaluate every patient of the pharmacy against the enabled triggers.

        scan_type "all" also refreshes the patients' inferred conditions first.
        """
        pharmacy = await self.session.get(Pharmacy, pharmacy_id)
        if pharmacy is None:
            raise NotFound("Pharmacy", pharmacy_id)
        days_back = settings.opportunity_days_back if days_back is None else days_back

        if rules is None:
            rules = await self.load_rules()
        rules = [r for r in rules if r.is_enabled and r.applies_to_pharmacy(pharmacy_id)]

        ctx = ScanContext(batch_id=batch_id or new_batch_id(), pharmacy_id=pharmacy_id)
        result = PharmacyScanResult(pharmacy_id=pharmacy_id, batch_id=ctx.batch_id)
        for rule in rules:
            result.by_trigger[rule.trigger_code] = TriggerTally()

        if scan_type == "all":
            result.profiles_updated = await PatientProfiler(self.session).update_profiles(pharmacy_id)
        if not rules:
            logger.info("Pharmacy %s: no enabled triggers in scope", pharmacy_id)
            return result

        coverage = await self._load_coverage([r.id for r in rules])
        matchers = [(rule, TriggerMatcher(rule, coverage.get(rule.id))) for rule in rules]
        ctx.seen = await self._existing_keys(pharmacy_id)

        prescriptions = await self._load_prescriptions(pharmacy_id, days_back)
        for patient_id, rx_iter in itertools.groupby(prescriptions, key=lambda rx: rx.patient_id):
            history = list(rx_iter)
            result.patients_scanned += 1
            patient_matched = False
            for rule, matcher in matchers:
                tally = result.by_trigger[rule.trigger_code]
                outcome = matcher.evaluate(patient_id, history, ctx.seen)
                if isinstance(outcome, NotApplicable):
                    if outcome.reason == Reason.DUPLICATE:
                        tally.matched += 1
                        tally.skipped += 1
                        patient_matched = True
                    continue

                tally.matched += 1
                patient_matched = True
                if await self._insert(ctx, rule, outcome):
                    tally.created += 1
                    opportunities_created_total.labels(trigger_class=rule.trigger_class).inc()
                else:
                    tally.skipped += 1
                ctx.seen.add(outcome.dedup_key)
            if patient_matched:
                result.patients_matched += 1

        await self.session.flush()
        logger.info(
            "Pharmacy %s scan %s: %d patients, %d matched, %d created, %d skipped",
            pharmacy_id, ctx.batch_id, result.patients_scanned, result.patients_matched,
            result.created, result.skipped,
        )
        return result

    async def scan_trigger(
        self,
        trigger_id: int,
        pharmacy_id: int | None = None,
        *,
        days_back: int | None = None,
        batch_id: str | None = None,
        deadline_seconds: float | None = None,
    ) -> MultiScanResult:
        """
        Run one trigger across one pharmacy, or every active pharmacy.

        A single-pharmacy run raises on failure. Across all pharmacies each one
        is isolated like in scan_all_opportunities, and the run stops at the deadline.
        """
        trigger = await self.session.get(Trigger, trigger_id)
        if trigger is None:
            raise NotFound("Trigger", trigger_id)
        if not trigger.is_enabled:
            raise InvalidTriggerConfig(trigger.trigger_code, "trigger is disabled")
        rule = TriggerRule.from_model(trigger)

        result = MultiScanResult(batch_id=batch_id or new_batch_id())
        if pharmacy_id is not None:
            result.merge(await self.scan_pharmacy(pharmacy_id, [rule], days_back=days_back, batch_id=result.batch_id))
            return result

        if deadline_seconds is None:
            deadline_seconds = settings.bulk_scan_deadline_seconds
        await self._scan_pharmacies(
            await self._active_pharmacy_ids(), [rule], result, Deadline(deadline_seconds), days_back,
        )
        return result

    async def scan_all_opportunities(
        self, *, days_back: int | None = None, deadline_seconds: float | None = None,
    ) -> MultiScanResult:
        """
        Scan every active pharmacy with every enabled trigger.

        Each pharmacy runs in its own savepoint; a failure is recorded and the
        scan moves on. Pharmacies not reached before the deadline are reported.
        """
        if deadline_seconds is None:
            deadline_seconds = settings.bulk_scan_deadline_seconds
        deadline = Deadline(deadline_seconds)

        async with track_scan(self.session, "all_opportunities", {"days_back": days_back}) as run:
            rules = await self.load_rules()
            pharmacy_ids = await self._active_pharmacy_ids()
            result = MultiScanResult(batch_id=run.batch_id)
            logger.info(
                "Opportunity scan %s started: %d pharmacies, %d triggers",
                run.batch_id, len(pharmacy_ids), len(rules),
            )

            await self._scan_pharmacies(pharmacy_ids, rules, result, deadline, days_back)

            run.stats = result.to_dict()
            if result.is_partial:
                run.status = "partial"
            logger.info(
                "Opportunity scan %s: %d pharmacies, %d created, %d skipped, %d failed, %d not reached",
                run.batch_id, result.pharmacies_scanned, result.created, result.skipped,
                len(result.failures), len(result.skipped_pharmacies),
            )
        return result

    async def load_rules(self) -> list[TriggerRule]:
        triggers = (await self.session.execute(
            select(Trigger).where(Trigger.is_enabled.is_(True)).order_by(Trigger.id)
        )).scalars().all()
        return [TriggerRule.from_model(t) for t in triggers]

    # ── Internals ────────────────────────────────────────────────────────────

    async def _scan_pharmacies(
        self,
        pharmacy_ids: list[int],
        rules: list[TriggerRule],
        result: MultiScanResult,
        deadline: Deadline,
        days_back: int | None,
    ) -> None:
        """Scan each pharmacy in its own savepoint, recording failures and unreached pharmacies."""
        for pid in pharmacy_ids:
            if deadline.expired:
                result.skipped_pharmacies.append(pid)
                continue
            try:
                async with self.session.begin_nested():
                    pharmacy_result = await self.scan_pharmacy(
                        pid, rules, days_back=days_back, batch_id=result.batch_id,
                    )
            except Exception as exc:
                logger.error("Opportunity scan failed for pharmacy %s: %s", pid, exc, exc_info=True)
                result.failures.append(ScanPartialFailure.from_exception("pharmacy", pid, None, exc))
                continue
            result.merge(pharmacy_result)

    async def _active_pharmacy_ids(self) -> list[int]:
        return list((await self.session.execute(
            select(Pharmacy.id).where(Pharmacy.is_active.is_(True)).order_by(Pharmacy.id)
        )).scalars().all())

    async def _load_coverage(self, trigger_ids: list[int]) -> dict[int, CoverageIndex]:
        entries = (await self.session.execute(
            select(CoverageEntry).where(CoverageEntry.trigger_id.in_(trigger_ids))
        )).scalars().all()
        by_trigger: dict[int, list[CoverageEntry]] = {}
        for entry in entries:
            by_trigger.setdefault(entry.trigger_id, []).append(entry)
        return {tid: CoverageIndex.from_entries(rows) for tid, rows in by_trigger.items()}

    async def _existing_keys(self, pharmacy_id: int) -> set[tuple[int, str, str]]:
        rows = (await self.session.execute(
            select(Opportunity.patient_id, Opportunity.trigger_class, Opportunity.current_drug_key)
            .where(Opportunity.pharmacy_id == pharmacy_id)
        )).all()
        return {(patient_id, trigger_class, key) for patient_id, trigger_class, key in rows}

    async def _load_prescriptions(self, pharmacy_id: int, days_back: int) -> list[Prescription]:
        cutoff = date.today() - timedelta(days=days_back)
        cutoff_ts = datetime.combine(cutoff, datetime.min.time())
        return list((await self.session.execute(
            select(Prescription)
            .where(
                Prescription.pharmacy_id == pharmacy_id,
                or_(
                    Prescription.dispensed_date >= cutoff,
                    and_(Prescription.dispensed_date.is_(None), Prescription.created_at >= cutoff_ts),
                ),
            )
            .order_by(
                Prescription.patient_id,
                Prescription.dispensed_date.desc().nullslast(),
                Prescription.id.desc(),
            )
        )).scalars().all())

    async def _insert(self, ctx: ScanContext, rule: TriggerRule, match: Matched) -> bool:
        """Conditional insert. False when the dedup key already exists."""
        stmt = (
            dialect_insert(self.session, Opportunity)
            .values(
                pharmacy_id=ctx.pharmacy_id,
                patient_id=match.patient_id,
                prescription_id=match.prescription_id,
                trigger_id=match.trigger_id,
                trigger_class=match.trigger_class,
                opportunity_type=rule.trigger_type,
                current_drug_name=match.current_drug_name,
                current_drug_key=drug_key(match.current_drug_name),
                current_ndc=match.current_ndc,
                recommended_drug_name=match.recommended_drug_name,
                recommended_ndc=match.recommended_ndc,
                potential_margin_gain=match.net_gain,
                annual_margin_gain=match.annual_gain,
                avg_dispensed_qty=match.avg_dispensed_qty,
                insurance_bin=match.insurance_bin,
                insurance_group=match.insurance_group,
                price_source=match.price_source,
                clinical_rationale=rule.clinical_rationale,
                status=OpportunityStatus.NOT_SUBMITTED.value,
                scan_batch_id=ctx.batch_id,
            )
            .on_conflict_do_nothing(
                index_elements=["pharmacy_id", "patient_id", "trigger_class", "current_drug_key"],
            )
            .returning(Opportunity.id)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none() is not None
