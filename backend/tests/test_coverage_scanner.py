"""Tests for coverage verification."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import CoverageEntry, Opportunity, ScanRun, Trigger
from app.services.coverage_scanner import CoverageScanner, NormalizedClaim, rank_coverage
from app.services.errors import InvalidTriggerConfig, NotFound


def _nc(bin_, group, drug, gp, ndc=None, qty="30"):
    return NormalizedClaim(
        insurance_bin=bin_, insurance_group=group, drug_name=drug, ndc=ndc, gp=Decimal(gp), qty=Decimal(qty),
    )


async def _entries(db_session, trigger_id):
    return {
        (e.insurance_bin, e.group_key): e
        for e in (await db_session.execute(
            select(CoverageEntry)
            .where(CoverageEntry.trigger_id == trigger_id)
            .execution_options(populate_existing=True)
        )).scalars().all()
    }


class TestRankCoverage:
    def test_best_product_per_segment(self):
        claims = [
            _nc("610014", "RX100", "LOSARTAN 50MG TAB", "20", ndc="A"),
            _nc("610014", "RX100", "LOSARTAN 50MG TAB", "30", ndc="A"),
            _nc("610014", "rx100", "LOSARTAN 100MG TAB", "40", ndc="B"),
        ]
        ranked = rank_coverage(claims)
        assert len(ranked) == 1
        assert ranked[0].ndc == "B"
        assert ranked[0].avg_gp == Decimal("40")
        assert ranked[0].group_key == "RX100"

    def test_ties_prefer_more_claims(self):
        claims = [
            _nc("610014", None, "DRUG A", "25", ndc="A"),
            _nc("610014", None, "DRUG B", "25", ndc="B"),
            _nc("610014", None, "DRUG B", "25", ndc="B"),
        ]
        assert rank_coverage(claims)[0].ndc == "B"

    def test_thresholds_apply_to_winner(self):
        claims = [
            _nc("610014", None, "DRUG A", "50", ndc="A"),
            _nc("610014", None, "DRUG B", "20", ndc="B"),
            _nc("610014", None, "DRUG B", "20", ndc="B"),
        ]
        # The best product has a single claim, so the segment is dropped
        assert rank_coverage(claims, min_claims=2) == []

    def test_min_margin(self):
        claims = [_nc("610014", None, "DRUG A", "9.99"), _nc("004336", None, "DRUG A", "10")]
        ranked = rank_coverage(claims, min_margin=10)
        assert [c.insurance_bin for c in ranked] == ["004336"]

    def test_sorted_by_gp(self):
        claims = [
            _nc("004336", None, "DRUG", "12"),
            _nc("610014", "RX1", "DRUG", "70"),
            _nc("015581", None, "DRUG", "33"),
        ]
        assert [c.avg_gp for c in rank_coverage(claims)] == [Decimal("70"), Decimal("33"), Decimal("12")]

    def test_raising_one_claim_never_lowers_segment(self):
        base = [_nc("610014", None, "DRUG", "10"), _nc("610014", None, "DRUG", "20")]
        raised = [_nc("610014", None, "DRUG", "10"), _nc("610014", None, "DRUG", "50")]
        assert rank_coverage(raised)[0].avg_gp >= rank_coverage(base)[0].avg_gp


class TestScanCoverage:
    @pytest.mark.asyncio
    async def test_writes_entries_median_and_best_ndc(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger("ACE_TO_ARB", recommended_drug="Losartan Tablet")
        await factory.claim(patient, "LOSARTAN POTASSIUM 50MG TABLET", gp=45, ndc="NDC-A")
        await factory.claim(patient, "LOSARTAN POTASSIUM 50MG TABLET", insurance_bin="004336",
                            insurance_group=None, gp=25, ndc="NDC-B")
        await factory.claim(patient, "Losartan 100mg Tablet", insurance_bin="015581",
                            insurance_group="X1", gp=60, ndc="NDC-C")
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", insurance_bin="999999", gp=90)

        result = await CoverageScanner(db_session).scan_coverage(
            trigger.id, min_claims=1, days_back=90, min_margin=0,
        )

        assert result.verified_count == 3
        assert result.claims_examined == 3
        assert result.default_gp_value == Decimal("45.00")
        assert result.recommended_ndc == "NDC-C"
        assert [c["bin"] for c in result.top_bins()] == ["015581", "610014", "004336"]

        entries = await _entries(db_session, trigger.id)
        assert set(entries) == {("015581", "X1"), ("610014", "RX100"), ("004336", "")}
        assert all(e.coverage_status == "verified" for e in entries.values())
        assert entries[("610014", "RX100")].gp_value == Decimal("45.00")

        refreshed = await db_session.get(Trigger, trigger.id)
        assert refreshed.synced_at is not None

    @pytest.mark.asyncio
    async def test_excluded_and_manual_rows_survive(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger("ACE_TO_ARB", recommended_drug="Losartan")
        await factory.coverage(trigger, "610014", "RX100", gp=5, status="excluded")
        await factory.coverage(trigger, "004336", gp=1, status="works", is_manual_override=True,
                               manual_gp_value=Decimal("99"))
        await factory.coverage(trigger, "777777", gp=12)

        await factory.claim(patient, "LOSARTAN 50MG TAB", gp=45)
        await factory.claim(patient, "LOSARTAN 50MG TAB", insurance_bin="004336", insurance_group=None, gp=25)

        await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        entries = await _entries(db_session, trigger.id)
        assert ("777777", "") not in entries

        excluded = entries[("610014", "RX100")]
        assert excluded.coverage_status == "excluded"
        assert excluded.gp_value == Decimal("5.00")

        manual = entries[("004336", "")]
        assert manual.coverage_status == "works"
        assert manual.is_manual_override is True
        assert manual.manual_gp_value == Decimal("99.00")
        assert manual.gp_value == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_result_lists_only_scanned_segments(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger("ACE_TO_ARB", recommended_drug="Losartan")
        await factory.coverage(trigger, "015581", gp=5, status="excluded")
        await factory.claim(patient, "LOSARTAN 50MG TAB", gp=45)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert [(e.insurance_bin, e.group_key) for e in result.entries] == [("610014", "RX100")]
        assert ("015581", "") in await _entries(db_session, trigger.id)

    @pytest.mark.asyncio
    async def test_no_candidates_keeps_entries(self, db_session, factory):
        trigger = await factory.trigger("EMPTY", recommended_drug="Nonexistium", default_gp_value=30)
        await factory.coverage(trigger, "610014", gp=22)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert result.verified_count == 0
        assert result.default_gp_value == Decimal("30.00")
        assert result.entries == []
        assert ("610014", "") in await _entries(db_session, trigger.id)

    @pytest.mark.asyncio
    async def test_exclude_keywords_and_bin_rules(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger(
            "ARB", recommended_drug="Losartan", exclude_keywords=["HCTZ"], bin_exclusions=["004336"],
        )
        await factory.claim(patient, "LOSARTAN HCTZ 50-12.5MG TAB", gp=80)
        await factory.claim(patient, "LOSARTAN 50MG TAB", insurance_bin="004336", gp=70)
        await factory.claim(patient, "LOSARTAN 50MG TAB", insurance_bin="015581", gp=30)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert [c.insurance_bin for c in result.candidates] == ["015581"]

    @pytest.mark.asyncio
    async def test_claims_outside_window_and_without_bin_ignored(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger("ARB", recommended_drug="Losartan")
        await factory.claim(patient, "LOSARTAN 50MG TAB", gp=30, days_ago=200)
        await factory.claim(patient, "LOSARTAN 50MG TAB", insurance_bin="", gp=30)
        await factory.claim(patient, "LOSARTAN 50MG TAB", insurance_bin=None, gp=30)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert result.claims_examined == 0

    @pytest.mark.asyncio
    async def test_ndc_only_trigger(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger("NDC_ONLY", recommended_ndc="00093736598")
        await factory.claim(patient, "PRIVATE LABEL PRODUCT", ndc="00093736598", gp=18)
        await factory.claim(patient, "PRIVATE LABEL PRODUCT", ndc="11111111111", gp=50)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert result.verified_count == 1
        assert result.candidates[0].avg_gp == Decimal("18")

    @pytest.mark.asyncio
    async def test_ndc_optimization_searches_detection_keywords(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await factory.trigger(
            "STRIPS", trigger_type="ndc_optimization", detection_keywords=["Test Strip"],
            recommended_drug="Brand X", expected_qty=Decimal("100"),
        )
        await factory.claim(patient, "FREESTYLE LITE TEST STRIP", qty=200, gp=40, days_supply=50)

        result = await CoverageScanner(db_session).scan_coverage(trigger.id, min_claims=1, days_back=90, min_margin=0)

        assert result.verified_count == 1
        assert result.candidates[0].avg_gp == Decimal("20")

    @pytest.mark.asyncio
    async def test_invalid_config(self, db_session, factory):
        trigger = await factory.trigger("BARE")
        with pytest.raises(InvalidTriggerConfig):
            await CoverageScanner(db_session).scan_coverage(trigger.id)

    @pytest.mark.asyncio
    async def test_missing_trigger(self, db_session):
        with pytest.raises(NotFound):
            await CoverageScanner(db_session).scan_coverage(12345)


class TestScanAllCoverage:
    @pytest.mark.asyncio
    async def test_outcomes_per_trigger(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await factory.trigger("MATCHES", recommended_drug="Losartan")
        await factory.trigger("NO_CLAIMS", recommended_drug="Nonexistium")
        await factory.trigger("BARE")
        await factory.trigger("DISABLED", recommended_drug="Losartan", is_enabled=False)
        await factory.claim(patient, "LOSARTAN 50MG TAB", gp=45)

        bulk = await CoverageScanner(db_session).scan_all_coverage(days_back=90, min_margin=0)

        outcomes = {r["trigger_code"]: r["outcome"] for r in bulk.results}
        assert outcomes == {"MATCHES": "matched", "NO_CLAIMS": "no_match", "BARE": "no_match"}
        assert bulk.failures == []
        assert not bulk.is_partial

        run = (await db_session.execute(
            select(ScanRun).where(ScanRun.batch_id == bulk.batch_id)
        )).scalar_one()
        assert run.scan_type == "coverage_all"
        assert run.status == "completed"
        assert run.stats["matched"] == 1

    @pytest.mark.asyncio
    async def test_removes_out_of_scope_opportunities(self, db_session, factory):
        home = await factory.pharmacy("Home")
        other = await factory.pharmacy("Other")
        trigger = await factory.trigger("SCOPED", recommended_drug="Nonexistium", pharmacy_inclusions=[home.id])
        keep = await factory.opportunity(await factory.patient(home), trigger)
        await factory.opportunity(await factory.patient(other), trigger)
        await factory.opportunity(await factory.patient(other), trigger, status="Approved",
                                  current_drug_name="OTHER DRUG")

        removed = await CoverageScanner(db_session).remove_out_of_scope_opportunities()

        assert removed == 1
        remaining = (await db_session.execute(select(Opportunity.id))).scalars().all()
        assert len(remaining) == 2
        assert keep.id in remaining

    @pytest.mark.asyncio
    async def test_failing_trigger_rolls_back_alone(self, db_session, factory, monkeypatch):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        broken = await factory.trigger("BROKEN", recommended_drug="Losartan", default_gp_value=20)
        await factory.trigger("MATCHES", recommended_drug="Losartan")
        await factory.claim(patient, "LOSARTAN 50MG TAB", gp=45)

        load_claims = CoverageScanner._load_claims

        async def _load_claims(self, rule, terms, ndc, days_back):
            if rule.trigger_code == "BROKEN":
                trigger = await self.session.get(Trigger, rule.id)
                trigger.default_gp_value = Decimal("99")
                await self.session.flush()
                raise RuntimeError("canceling statement due to statement timeout")
            return await load_claims(self, rule, terms, ndc, days_back)

        monkeypatch.setattr(CoverageScanner, "_load_claims", _load_claims)

        bulk = await CoverageScanner(db_session).scan_all_coverage(days_back=90, min_margin=0)

        outcomes = {r["trigger_code"]: r["outcome"] for r in bulk.results}
        assert outcomes == {"BROKEN": "error", "MATCHES": "matched"}
        assert [f.unit_id for f in bulk.failures] == [broken.id]
        await db_session.refresh(broken)
        assert broken.default_gp_value == Decimal("20.00")

        run = (await db_session.execute(
            select(ScanRun).where(ScanRun.batch_id == bulk.batch_id)
        )).scalar_one()
        assert run.status == "partial"
