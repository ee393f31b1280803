"""
Coverage Verification Scanner

For each trigger, mine historical paid claims of the *recommended* product to find
which insurance segments (BIN, Group) actually reimburse it and at what normalized
gross profit:

  1. Build search terms (recommended drug, or detection keywords for
     ndc_optimization triggers; exact NDC as a last resort)
  2. Pull candidate claims (SQL prefilter on tokens, BIN and date window)
  3. Re-check tokens, exclude keywords and BIN rules in Python
  4. Normalize each claim's GP, aggregate per (BIN, Group, drug, NDC)
  5. Keep the best product per (BIN, Group), then apply thresholds
  6. Replace the trigger's auto-derived coverage rows in one savepoint
  7. Recompute the trigger's default GP (median) and best NDC
  8. Backfill open opportunities with the new prices
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import dialect_insert
from app.middleware.metrics import coverage_entries_verified, coverage_scans_total
from app.models import CoverageEntry, CoverageStatus, Opportunity, OpportunityStatus, Prescription, Trigger
from app.services.backfill import BackfillResult, BackfillUpdater
from app.services.errors import InvalidTriggerConfig, NotFound, ScanPartialFailure
from app.services.keywords import build_search_terms, terms_match
from app.services.margin import ZERO, extract_gross_profit, median, money, normalize_margin
from app.services.scan_runs import Deadline, track_scan
from app.services.trigger_rule import TriggerRule, group_key

logger = logging.getLogger(__name__)


# ── Pure ranking ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NormalizedClaim:
    insurance_bin: str
    insurance_group: str | None
    drug_name: str
    ndc: str | None
    gp: Decimal
    qty: Decimal


@dataclass(frozen=True)
class CoverageCandidate:
    """Best-paying product of one (BIN, Group) segment."""

    insurance_bin: str
    insurance_group: str | None
    drug_name: str
    ndc: str | None
    claim_count: int
    avg_gp: Decimal
    avg_qty: Decimal

    @property
    def group_key(self) -> str:
        return group_key(self.insurance_group)


def rank_coverage(claims, min_claims: int = 1, min_margin=ZERO) -> list[CoverageCandidate]:
    """
    Aggregate normalized claims and pick the best product per (BIN, Group).

    Products are ranked inside each segment by average GP (ties: more claims,
    then drug name). Thresholds are applied to the winner only, so a segment is
    either represented by its best product or dropped.
    """
    min_margin = Decimal(str(min_margin))
    segments: dict[tuple[str, str], dict[tuple[str, str | None], list[NormalizedClaim]]] = defaultdict(
        lambda: defaultdict(list)
    )
    display_group: dict[tuple[str, str], str | None] = {}

    for claim in claims:
        seg = (claim.insurance_bin, group_key(claim.insurance_group))
        display_group.setdefault(seg, (claim.insurance_group or "").strip() or None)
        segments[seg][(claim.drug_name, claim.ndc)].append(claim)

    winners = []
    for seg, products in segments.items():
        ranked = []
        for (drug_name, ndc), rows in products.items():
            count = len(rows)
            ranked.append(CoverageCandidate(
                insurance_bin=seg[0],
                insurance_group=display_group[seg],
                drug_name=drug_name,
                ndc=ndc,
                claim_count=count,
                avg_gp=sum((r.gp for r in rows), ZERO) / count,
                avg_qty=sum((r.qty for r in rows), ZERO) / count,
            ))
        ranked.sort(key=lambda c: (-c.avg_gp, -c.claim_count, c.drug_name, c.ndc or ""))
        best = ranked[0]
        if best.claim_count < min_claims or best.avg_gp < min_margin:
            continue
        winners.append(best)

    winners.sort(key=lambda c: (-c.avg_gp, -c.claim_count, c.insurance_bin, c.group_key))
    return winners


def coverage_search_terms(rule: TriggerRule, recommended_drug: str | None) -> list[list[str]]:
    if rule.is_ndc_optimization:
        return build_search_terms(rule.detection_keywords)
    return build_search_terms([recommended_drug] if recommended_drug else [])


# ── Results ──────────────────────────────────────────────────────────────────


@dataclass
class CoverageScanResult:
    trigger_id: int
    trigger_code: str
    entries: list[CoverageEntry] = field(default_factory=list)
    candidates: list[CoverageCandidate] = field(default_factory=list)
    claims_examined: int = 0
    default_gp_value: Decimal | None = None
    recommended_ndc: str | None = None
    backfill: BackfillResult | None = None

    @property
    def verified_count(self) -> int:
        return len(self.candidates)

    def top_bins(self, limit: int = 3) -> list[dict]:
        return [
            {
                "bin": c.insurance_bin,
                "group": c.insurance_group,
                "gp_value": float(money(c.avg_gp)),
                "claim_count": c.claim_count,
            }
            for c in self.candidates[:limit]
        ]

    def drug_variations(self) -> list[dict]:
        """Distinct product names that won a segment, with their NDCs."""
        variations: dict[str, dict] = {}
        for c in self.candidates:
            item = variations.setdefault(c.drug_name, {"drug_name": c.drug_name, "claim_count": 0, "ndcs": []})
            item["claim_count"] += c.claim_count
            if c.ndc and c.ndc not in item["ndcs"]:
                item["ndcs"].append(c.ndc)
        return sorted(variations.values(), key=lambda v: -v["claim_count"])

    def to_dict(self) -> dict:
        return {
            "trigger_id": self.trigger_id,
            "trigger_code": self.trigger_code,
            "verified_count": self.verified_count,
            "claims_examined": self.claims_examined,
            "default_gp_value": float(self.default_gp_value) if self.default_gp_value is not None else None,
            "recommended_ndc": self.recommended_ndc,
            "top_bins": self.top_bins(),
            "drug_variations": self.drug_variations(),
            "backfill": self.backfill.to_dict() if self.backfill else None,
        }


@dataclass
class BulkCoverageResult:
    batch_id: str
    results: list[dict] = field(default_factory=list)
    failures: list[ScanPartialFailure] = field(default_factory=list)
    out_of_scope_removed: int = 0

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r["outcome"] == outcome)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures) or self.count("skipped") > 0

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "total": len(self.results),
            "matched": self.count("matched"),
            "no_match": self.count("no_match"),
            "errors": self.count("error"),
            "skipped": self.count("skipped"),
            "out_of_scope_removed": self.out_of_scope_removed,
            "results": self.results,
            "failures": [f.to_dict() for f in self.failures],
        }


# ── Scanner ──────────────────────────────────────────────────────────────────


class CoverageScanner:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def scan_coverage(
        self,
        trigger_id: int,
        *,
        min_claims: int | None = None,
        days_back: int | None = None,
        min_margin=None,
    ) -> CoverageScanResult:
        """Verify one trigger's coverage from claim history and re-price its open opportunities."""
        trigger = await self.session.get(Trigger, trigger_id)
        if trigger is None:
            raise NotFound("Trigger", trigger_id)

        min_claims = settings.coverage_min_claims if min_claims is None else min_claims
        days_back = settings.coverage_days_back if days_back is None else days_back
        if min_margin is None:
            min_margin = settings.coverage_min_margin

        rule = TriggerRule.from_model(trigger)
        terms = coverage_search_terms(rule, trigger.recommended_drug)
        ndc = (trigger.recommended_ndc or "").strip() or None
        if not terms and not ndc:
            raise InvalidTriggerConfig(trigger.trigger_code, "no recommended drug, search keywords or NDC to verify")

        claims = await self._load_claims(rule, terms, ndc, days_back)
        result = CoverageScanResult(trigger_id=trigger.id, trigger_code=trigger.trigger_code)
        result.claims_examined = len(claims)
        result.candidates = rank_coverage(claims, min_claims=min_claims, min_margin=min_margin)

        async with self.session.begin_nested():
            if not result.candidates:
                logger.info(
                    "No coverage found for trigger %s (%d claims examined, terms=%s, ndc=%s)",
                    trigger.trigger_code, len(claims), terms, ndc,
                )
                trigger.synced_at = datetime.utcnow()
            else:
                await self._replace_entries(trigger.id, result.candidates)
                gp = median([c.avg_gp for c in result.candidates])
                if gp is not None:
                    trigger.default_gp_value = money(gp)
                best_ndc = result.candidates[0].ndc
                if best_ndc and best_ndc != trigger.recommended_ndc:
                    logger.info(
                        "Trigger %s recommended NDC %s -> %s",
                        trigger.trigger_code, trigger.recommended_ndc, best_ndc,
                    )
                    trigger.recommended_ndc = best_ndc
                trigger.synced_at = datetime.utcnow()
            await self.session.flush()
            result.backfill = await BackfillUpdater(self.session).backfill(trigger.id)

        # Only the segments this scan wrote; pinned and older rows are not part of the run
        written = {(c.insurance_bin, c.group_key) for c in result.candidates}
        if written:
            rows = (await self.session.execute(
                select(CoverageEntry)
                .where(CoverageEntry.trigger_id == trigger.id)
                .order_by(CoverageEntry.gp_value.desc(), CoverageEntry.insurance_bin)
                .execution_options(populate_existing=True)
            )).scalars().all()
            result.entries = [e for e in rows if (e.insurance_bin, e.group_key) in written]
        result.default_gp_value = trigger.default_gp_value
        result.recommended_ndc = trigger.recommended_ndc

        coverage_entries_verified.inc(result.verified_count)
        logger.info(
            "Coverage scan for %s: %d claims, %d segments verified, default GP %s",
            trigger.trigger_code, result.claims_examined, result.verified_count, trigger.default_gp_value,
        )
        return result

    async def scan_all_coverage(
        self,
        *,
        min_claims: int | None = None,
        days_back: int | None = None,
        min_margin=None,
        dme_min_margin=None,
        deadline_seconds: float | None = None,
    ) -> BulkCoverageResult:
        """
        Scan every enabled trigger. A failing trigger is reported and the rest go on;
        triggers not reached before the deadline are reported as skipped.
        """
        if min_margin is None:
            min_margin = settings.coverage_min_margin
        if dme_min_margin is None:
            dme_min_margin = settings.coverage_dme_min_margin
        if deadline_seconds is None:
            deadline_seconds = settings.bulk_scan_deadline_seconds
        deadline = Deadline(deadline_seconds)

        scope = {
            "min_claims": min_claims,
            "days_back": days_back,
            "min_margin": float(min_margin),
            "dme_min_margin": float(dme_min_margin),
        }
        async with track_scan(self.session, "coverage_all", scope) as run:
            triggers = (await self.session.execute(
                select(Trigger).where(Trigger.is_enabled.is_(True)).order_by(Trigger.id)
            )).scalars().all()
            # Snapshot plain values: a failed savepoint expires the ORM rows
            units = [(t.id, t.trigger_code, TriggerRule.from_model(t)) for t in triggers]

            bulk = BulkCoverageResult(batch_id=run.batch_id)
            logger.info("Bulk coverage scan %s started for %d triggers", run.batch_id, len(units))

            for trigger_id, code, rule in units:
                if deadline.expired:
                    bulk.results.append({"trigger_id": trigger_id, "trigger_code": code, "outcome": "skipped",
                                         "reason": "deadline exceeded"})
                    coverage_scans_total.labels(outcome="skipped").inc()
                    continue

                threshold = dme_min_margin if rule.is_ndc_optimization else min_margin
                try:
                    async with self.session.begin_nested():
                        result = await self.scan_coverage(
                            trigger_id, min_claims=min_claims, days_back=days_back, min_margin=threshold,
                        )
                except InvalidTriggerConfig as exc:
                    bulk.results.append({"trigger_id": trigger_id, "trigger_code": code, "outcome": "no_match",
                                         "reason": exc.reason})
                    coverage_scans_total.labels(outcome="no_match").inc()
                    continue
                except Exception as exc:
                    failure = ScanPartialFailure.from_exception("trigger", trigger_id, code, exc)
                    logger.error("Coverage scan failed for %s: %s", code, exc, exc_info=True)
                    bulk.failures.append(failure)
                    bulk.results.append({"trigger_id": trigger_id, "trigger_code": code, "outcome": "error",
                                         "reason": failure.reason})
                    coverage_scans_total.labels(outcome="error").inc()
                    continue

                if result.verified_count:
                    bulk.results.append({
                        "trigger_id": trigger_id,
                        "trigger_code": code,
                        "outcome": "matched",
                        "verified_count": result.verified_count,
                        "default_gp_value": float(result.default_gp_value)
                        if result.default_gp_value is not None else None,
                        "top_bins": result.top_bins(),
                        "drug_variations": result.drug_variations(),
                    })
                    coverage_scans_total.labels(outcome="matched").inc()
                else:
                    bulk.results.append({
                        "trigger_id": trigger_id,
                        "trigger_code": code,
                        "outcome": "no_match",
                        "reason": f"no paid claims above thresholds ({result.claims_examined} examined)",
                    })
                    coverage_scans_total.labels(outcome="no_match").inc()

            bulk.out_of_scope_removed = await self.remove_out_of_scope_opportunities()

            run.stats = bulk.to_dict()
            if bulk.is_partial:
                run.status = "partial"
            logger.info(
                "Bulk coverage scan %s: %d matched, %d no match, %d errors, %d skipped",
                run.batch_id, bulk.count("matched"), bulk.count("no_match"),
                bulk.count("error"), bulk.count("skipped"),
            )
        return bulk

    async def remove_out_of_scope_opportunities(self) -> int:
        """Delete open opportunities at pharmacies a trigger is no longer scoped to."""
        scoped = (await self.session.execute(
            select(Trigger.id, Trigger.pharmacy_inclusions)
        )).all()

        removed = 0
        for trigger_id, inclusions in scoped:
            pharmacy_ids = [int(p) for p in (inclusions or [])]
            if not pharmacy_ids:
                continue
            res = await self.session.execute(
                delete(Opportunity)
                .where(
                    Opportunity.trigger_id == trigger_id,
                    Opportunity.status == OpportunityStatus.NOT_SUBMITTED.value,
                    Opportunity.pharmacy_id.not_in(pharmacy_ids),
                )
                .execution_options(synchronize_session=False)
            )
            removed += res.rowcount or 0
        if removed:
            logger.info("Removed %d out-of-scope opportunities", removed)
        return removed

    # ── Internals ────────────────────────────────────────────────────────────

    async def _load_claims(
        self, rule: TriggerRule, terms: list[list[str]], ndc: str | None, days_back: int,
    ) -> list[NormalizedClaim]:
        cutoff = date.today() - timedelta(days=days_back)
        cutoff_ts = datetime.combine(cutoff, datetime.min.time())

        if terms:
            drug = func.upper(Prescription.drug_name)
            match = or_(*[and_(*[drug.contains(token, autoescape=True) for token in tokens]) for tokens in terms])
        else:
            match = Prescription.ndc == ndc

        rows = (await self.session.execute(
            select(
                Prescription.drug_name,
                Prescription.ndc,
                Prescription.insurance_bin,
                Prescription.insurance_group,
                Prescription.quantity_dispensed,
                Prescription.days_supply,
                Prescription.raw_data,
            ).where(
                match,
                Prescription.insurance_bin.is_not(None),
                Prescription.insurance_bin != "",
                or_(
                    Prescription.dispensed_date >= cutoff,
                    and_(Prescription.dispensed_date.is_(None), Prescription.created_at >= cutoff_ts),
                ),
            )
        )).all()

        excludes = build_search_terms(rule.exclude_keywords, drop_noise=False)
        claims = []
        for drug_name, rx_ndc, bin_, group, qty, days, raw in rows:
            if terms and not terms_match(drug_name, terms):
                continue
            if excludes and terms_match(drug_name, excludes):
                continue
            bin_ = bin_.strip()
            if not bin_ or not rule.bin_allowed(bin_):
                continue
            normalized = normalize_margin(
                extract_gross_profit(raw), qty, days, rule.expected_qty, rule.expected_days_supply,
            )
            if normalized is None:
                continue
            claims.append(NormalizedClaim(
                insurance_bin=bin_,
                insurance_group=group,
                drug_name=(drug_name or "").strip(),
                ndc=rx_ndc,
                gp=normalized.gp,
                qty=normalized.qty,
            ))
        return claims

    async def _replace_entries(self, trigger_id: int, candidates: list[CoverageCandidate]) -> None:
        """
        Swap the trigger's auto-derived rows for the new candidates.

        Excluded rows are never touched. Manual-override rows keep their status
        and manual fields; only the scanned columns are refreshed.
        """
        await self.session.execute(
            delete(CoverageEntry).where(
                CoverageEntry.trigger_id == trigger_id,
                CoverageEntry.coverage_status != CoverageStatus.EXCLUDED.value,
                CoverageEntry.is_manual_override.is_(False),
            )
        )

        now = datetime.utcnow()
        for c in candidates:
            stmt = dialect_insert(self.session, CoverageEntry).values(
                trigger_id=trigger_id,
                insurance_bin=c.insurance_bin,
                insurance_group=c.insurance_group,
                group_key=c.group_key,
                coverage_status=CoverageStatus.VERIFIED.value,
                gp_value=money(c.avg_gp),
                avg_qty=money(c.avg_qty),
                verified_claim_count=c.claim_count,
                best_drug_name=c.drug_name,
                best_ndc=c.ndc,
                verified_at=now,
                is_manual_override=False,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["trigger_id", "insurance_bin", "group_key"],
                set_={
                    "gp_value": stmt.excluded.gp_value,
                    "avg_qty": stmt.excluded.avg_qty,
                    "verified_claim_count": stmt.excluded.verified_claim_count,
                    "best_drug_name": stmt.excluded.best_drug_name,
                    "best_ndc": stmt.excluded.best_ndc,
                    "verified_at": stmt.excluded.verified_at,
                    "coverage_status": case(
                        (CoverageEntry.is_manual_override.is_(True), CoverageEntry.coverage_status),
                        else_=CoverageStatus.VERIFIED.value,
                    ),
                    "updated_at": func.now(),
                },
                where=CoverageEntry.coverage_status != CoverageStatus.EXCLUDED.value,
            )
            await self.session.execute(stmt)
