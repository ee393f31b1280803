"""Tests for opportunity generation."""

from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models import Opportunity, ScanRun
from app.services.errors import InvalidTriggerConfig, NotFound
from app.services.opportunity_generator import OpportunityGenerator


async def _ace_to_arb(factory, **kw):
    trigger = await factory.trigger(
        "ACE_TO_ARB",
        display_name="Lisinopril to Losartan",
        detection_keywords=["LISINOPRIL"],
        recommended_drug="Losartan 50mg Tablet",
        **kw,
    )
    await factory.coverage(trigger, "610014", "RX100", gp=45, best_ndc="00093736598", avg_qty=Decimal("30"))
    return trigger


async def _opportunities(db_session):
    return (await db_session.execute(select(Opportunity).order_by(Opportunity.id))).scalars().all()


@pytest.mark.asyncio
class TestScanPharmacy:
    async def test_creates_priced_opportunity(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await _ace_to_arb(factory)
        rx = await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 1
        assert result.patients_scanned == 1
        assert result.patients_matched == 1

        (opp,) = await _opportunities(db_session)
        assert opp.trigger_id == trigger.id
        assert opp.prescription_id == rx.id
        assert opp.trigger_class == "ACE_TO_ARB"
        assert opp.current_drug_name == "LISINOPRIL 10MG TABLET"
        assert opp.recommended_drug_name == "Losartan 50mg Tablet"
        assert opp.recommended_ndc == "00093736598"
        assert opp.potential_margin_gain == Decimal("35.00")
        assert opp.annual_margin_gain == Decimal("420.00")
        assert opp.price_source == "bin_group"
        assert opp.status == "Not Submitted"
        assert opp.scan_batch_id == result.batch_id

    async def test_second_scan_creates_nothing(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        generator = OpportunityGenerator(db_session)
        await generator.scan_pharmacy(pharmacy.id)
        again = await generator.scan_pharmacy(pharmacy.id)

        assert again.created == 0
        assert again.skipped == 1
        assert len(await _opportunities(db_session)) == 1

    async def test_reviewed_opportunity_is_not_recreated(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await _ace_to_arb(factory)
        await factory.opportunity(patient, trigger, status="Denied", current_drug_name="Lisinopril 10mg  Tablet")
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 0
        assert len(await _opportunities(db_session)) == 1

    async def test_one_opportunity_per_trigger_class(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await factory.trigger("ACE_A", trigger_group="ACE_SWITCH", detection_keywords=["LISINOPRIL"],
                              default_gp_value=40)
        await factory.trigger("ACE_B", trigger_group="ACE_SWITCH", detection_keywords=["LISINOPRIL"],
                              default_gp_value=50)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 1
        assert result.by_trigger["ACE_B"].skipped == 1

    async def test_unpriced_claims_create_nothing(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", insurance_bin="004336", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 0
        assert result.patients_matched == 0

    async def test_switched_away_from_excluded_bin(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory, bin_exclusions=["004336"])
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", insurance_bin="004336", gp=10, days_ago=80)
        current = await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10, days_ago=5)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 1
        (opp,) = await _opportunities(db_session)
        assert opp.prescription_id == current.id
        assert opp.insurance_bin == "610014"

    async def test_priced_on_current_insurance(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        trigger = await _ace_to_arb(factory)
        await factory.coverage(trigger, "003858", None, gp=20)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10, days_ago=60)
        current = await factory.claim(
            patient, "LISINOPRIL 10MG TABLET", insurance_bin="003858", insurance_group="RX200", gp=10, days_ago=5,
        )

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 1
        (opp,) = await _opportunities(db_session)
        assert opp.prescription_id == current.id
        assert opp.insurance_bin == "003858"
        assert opp.price_source == "bin"
        assert opp.potential_margin_gain == Decimal("10.00")

    async def test_old_claims_outside_window(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10, days_ago=400)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id, days_back=90)

        assert result.patients_scanned == 0
        assert result.created == 0

    async def test_pharmacy_scope(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        elsewhere = await factory.pharmacy("Elsewhere")
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory, pharmacy_inclusions=[elsewhere.id])
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.by_trigger == {}
        assert result.created == 0

    async def test_disabled_trigger_ignored(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory, is_enabled=False)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id)

        assert result.created == 0

    async def test_full_scan_updates_profiles(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)
        await factory.claim(patient, "METFORMIN 500MG TABLET", gp=4)

        result = await OpportunityGenerator(db_session).scan_pharmacy(pharmacy.id, scan_type="all")

        assert result.profiles_updated == 1
        assert "HTN" in patient.chronic_conditions
        assert "Diabetes" in patient.chronic_conditions

    async def test_unknown_pharmacy(self, db_session):
        with pytest.raises(NotFound):
            await OpportunityGenerator(db_session).scan_pharmacy(999)


@pytest.mark.asyncio
class TestScanTrigger:
    async def test_runs_across_active_pharmacies(self, db_session, factory):
        trigger = await _ace_to_arb(factory)
        for name in ("North", "South"):
            pharmacy = await factory.pharmacy(name)
            patient = await factory.patient(pharmacy)
            await factory.claim(patient, "LISINOPRIL 20MG TABLET", gp=12)
        closed = await factory.pharmacy("Closed", is_active=False)
        await factory.claim(await factory.patient(closed), "LISINOPRIL 20MG TABLET", gp=12)

        result = await OpportunityGenerator(db_session).scan_trigger(trigger.id)

        assert result.pharmacies_scanned == 2
        assert result.created == 2
        assert result.by_trigger["ACE_TO_ARB"].created == 2

    async def test_failing_pharmacy_does_not_stop_the_rest(self, db_session, factory, monkeypatch):
        trigger = await _ace_to_arb(factory)
        pharmacies = []
        for name in ("North", "South"):
            pharmacy = await factory.pharmacy(name)
            await factory.claim(await factory.patient(pharmacy), "LISINOPRIL 20MG TABLET", gp=12)
            pharmacies.append(pharmacy)
        north, south = pharmacies

        load_prescriptions = OpportunityGenerator._load_prescriptions

        async def _load_prescriptions(self, pharmacy_id, days_back):
            if pharmacy_id == north.id:
                raise RuntimeError("canceling statement due to statement timeout")
            return await load_prescriptions(self, pharmacy_id, days_back)

        monkeypatch.setattr(OpportunityGenerator, "_load_prescriptions", _load_prescriptions)

        result = await OpportunityGenerator(db_session).scan_trigger(trigger.id)

        assert result.created == 1
        assert result.pharmacies_scanned == 1
        assert [f.unit_id for f in result.failures] == [north.id]
        assert result.is_partial
        (opp,) = await _opportunities(db_session)
        assert opp.pharmacy_id == south.id

    async def test_deadline_reports_unreached_pharmacies(self, db_session, factory):
        trigger = await _ace_to_arb(factory)
        pharmacy = await factory.pharmacy()

        result = await OpportunityGenerator(db_session).scan_trigger(trigger.id, deadline_seconds=1e-9)

        assert result.skipped_pharmacies == [pharmacy.id]
        assert result.created == 0

    async def test_disabled_trigger_rejected(self, db_session, factory):
        trigger = await _ace_to_arb(factory, is_enabled=False)
        with pytest.raises(InvalidTriggerConfig):
            await OpportunityGenerator(db_session).scan_trigger(trigger.id)

    async def test_missing_trigger(self, db_session):
        with pytest.raises(NotFound):
            await OpportunityGenerator(db_session).scan_trigger(42)


@pytest.mark.asyncio
class TestScanAll:
    async def test_records_scan_run(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        patient = await factory.patient(pharmacy)
        await _ace_to_arb(factory)
        await factory.claim(patient, "LISINOPRIL 10MG TABLET", gp=10)

        result = await OpportunityGenerator(db_session).scan_all_opportunities()

        assert result.created == 1
        assert result.failures == []
        run = (await db_session.execute(
            select(ScanRun).where(ScanRun.batch_id == result.batch_id)
        )).scalar_one()
        assert run.scan_type == "all_opportunities"
        assert run.status == "completed"
        assert run.stats["created"] == 1

    async def test_deadline_reports_unreached_pharmacies(self, db_session, factory):
        pharmacy = await factory.pharmacy()
        await _ace_to_arb(factory)

        result = await OpportunityGenerator(db_session).scan_all_opportunities(deadline_seconds=1e-9)

        assert result.skipped_pharmacies == [pharmacy.id]
        assert result.is_partial
        run = (await db_session.execute(
            select(ScanRun).where(ScanRun.batch_id == result.batch_id)
        )).scalar_one()
        assert run.status == "partial"
