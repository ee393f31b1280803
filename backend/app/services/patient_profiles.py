"""
Patient profiler: infers chronic conditions from the last 12 months of fills.

Run as part of a full ("all") pharmacy scan so clinical staff reviewing an
opportunity see the patient's likely conditions next to it.
"""

import logging
import re
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Patient, Prescription

logger = logging.getLogger(__name__)

PROFILE_WINDOW_DAYS = 365

DRUG_CLASS_PATTERNS = {
    "statins": r"atorvastatin|simvastatin|rosuvastatin|pravastatin|lovastatin|fluvastatin|pitavastatin|lipitor|crestor|zocor",
    "ace_inhibitors": r"lisinopril|enalapril|ramipril|benazepril|captopril|fosinopril|quinapril|moexipril|perindopril|trandolapril|prinivil|zestril|vasotec|altace",
    "arbs": r"losartan|valsartan|irbesartan|olmesartan|candesartan|telmisartan|azilsartan|cozaar|diovan|avapro",
    "beta_blockers": r"metoprolol|atenolol|carvedilol|bisoprolol|propranolol|nadolol|nebivolol|labetalol|lopressor|toprol|coreg",
    "ccb": r"amlodipine|nifedipine|diltiazem|verapamil|felodipine|nicardipine|norvasc|cardizem|procardia",
    "thiazides": r"hydrochlorothiazide|chlorthalidone|indapamide|metolazone|hctz",
    "loop_diuretics": r"furosemide|bumetanide|torsemide|lasix|bumex",
    "metformin": r"metformin|glucophage|fortamet|glumetza|riomet",
    "sulfonylureas": r"glipizide|glyburide|glimepiride|glucotrol|diabeta|micronase|amaryl",
    "sglt2": r"canagliflozin|dapagliflozin|empagliflozin|ertugliflozin|invokana|farxiga|jardiance|steglatro",
    "glp1": r"semaglutide|liraglutide|dulaglutide|exenatide|ozempic|wegovy|victoza|trulicity|byetta|bydureon",
    "dpp4": r"sitagliptin|saxagliptin|linagliptin|alogliptin|januvia|onglyza|tradjenta|nesina",
    "insulin": r"insulin|novolog|humalog|lantus|levemir|basaglar|tresiba|toujeo|admelog|fiasp",
    "laba": r"salmeterol|formoterol|vilanterol|olodaterol|indacaterol|serevent|foradil",
    "lama": r"tiotropium|umeclidinium|aclidinium|glycopyrrolate|spiriva|incruse|tudorza",
    "ics": r"fluticasone|budesonide|beclomethasone|mometasone|ciclesonide|flovent|pulmicort|qvar|asmanex|alvesco",
    "ics_laba": r"advair|symbicort|breo|dulera|wixela|airduo",
    "saba": r"albuterol|levalbuterol|proair|proventil|ventolin|xopenex",
    "ssri": r"fluoxetine|sertraline|paroxetine|escitalopram|citalopram|fluvoxamine|prozac|zoloft|paxil|lexapro|celexa",
    "snri": r"venlafaxine|duloxetine|desvenlafaxine|levomilnacipran|effexor|cymbalta|pristiq|fetzima",
    "benzo": r"alprazolam|lorazepam|clonazepam|diazepam|temazepam|xanax|ativan|klonopin|valium|restoril",
    "opioids": r"oxycodone|hydrocodone|morphine|fentanyl|tramadol|codeine|hydromorphone|oxycontin|percocet|vicodin|norco|dilaudid",
    "nsaids": r"ibuprofen|naproxen|meloxicam|diclofenac|celecoxib|indomethacin|ketorolac|motrin|advil|aleve|mobic|voltaren|celebrex",
    "ppi": r"omeprazole|esomeprazole|lansoprazole|pantoprazole|rabeprazole|dexlansoprazole|prilosec|nexium|prevacid|protonix|aciphex|dexilant",
    "thyroid": r"levothyroxine|synthroid|levoxyl|tirosint|unithroid|armour thyroid|liothyronine",
    "bisphosphonates": r"alendronate|risedronate|ibandronate|zoledronic|fosamax|actonel|boniva|reclast",
    "anticoagulants": r"warfarin|apixaban|rivaroxaban|dabigatran|edoxaban|coumadin|eliquis|xarelto|pradaxa|savaysa",
    "glucose_test_strips": r"freestyle|onetouch|one touch|contour|accu-chek|accu chek|true metrix|truemetrix|prodigy|relion|embrace|test strip|blood glucose strip",
    "lancets": r"lancet|microlet|unistik",
    "pen_needles": r"pen needle|novofine|novotwist|nano pen|bd nano",
}

_COMPILED = {cls: re.compile(pattern, re.IGNORECASE) for cls, pattern in DRUG_CLASS_PATTERNS.items()}

DRUG_CLASS_CONDITIONS = {
    "statins": ["CVD", "Hyperlipidemia"],
    "ace_inhibitors": ["HTN", "CVD", "Heart Failure"],
    "arbs": ["HTN", "CVD", "Heart Failure"],
    "beta_blockers": ["HTN", "CVD", "Heart Failure", "Arrhythmia"],
    "ccb": ["HTN", "Angina"],
    "thiazides": ["HTN"],
    "loop_diuretics": ["Heart Failure", "Edema"],
    "metformin": ["Diabetes"],
    "sulfonylureas": ["Diabetes"],
    "sglt2": ["Diabetes", "Heart Failure"],
    "glp1": ["Diabetes", "Obesity"],
    "dpp4": ["Diabetes"],
    "insulin": ["Diabetes"],
    "laba": ["COPD", "Asthma"],
    "lama": ["COPD"],
    "ics": ["Asthma", "COPD"],
    "ics_laba": ["Asthma", "COPD"],
    "saba": ["Asthma", "COPD"],
    "ssri": ["Depression", "Anxiety"],
    "snri": ["Depression", "Anxiety", "Chronic Pain"],
    "benzo": ["Anxiety", "Insomnia"],
    "opioids": ["Chronic Pain", "Acute Pain"],
    "nsaids": ["Pain", "Inflammation"],
    "ppi": ["GERD", "Ulcer"],
    "thyroid": ["Hypothyroidism"],
    "bisphosphonates": ["Osteoporosis"],
    "anticoagulants": ["AFib", "DVT", "PE"],
}


def detect_drug_class(drug_name: str | None) -> str | None:
    """First therapeutic class whose pattern matches the drug name."""
    if not drug_name:
        return None
    for drug_class, pattern in _COMPILED.items():
        if pattern.search(drug_name):
            return drug_class
    return None


def infer_conditions(drug_classes) -> list[str]:
    conditions: list[str] = []
    for drug_class in drug_classes:
        for condition in DRUG_CLASS_CONDITIONS.get(drug_class, []):
            if condition not in conditions:
                conditions.append(condition)
    return conditions


class PatientProfiler:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def update_profiles(self, pharmacy_id: int) -> int:
        """Refresh chronic_conditions for every patient of a pharmacy. Returns patients updated."""
        cutoff = date.today() - timedelta(days=PROFILE_WINDOW_DAYS)
        rows = (await self.session.execute(
            select(Prescription.patient_id, Prescription.drug_name)
            .where(Prescription.pharmacy_id == pharmacy_id, Prescription.dispensed_date >= cutoff)
            .distinct()
        )).all()

        classes_by_patient: dict[int, list[str]] = {}
        for patient_id, drug_name in rows:
            classes = classes_by_patient.setdefault(patient_id, [])
            drug_class = detect_drug_class(drug_name)
            if drug_class and drug_class not in classes:
                classes.append(drug_class)

        if not classes_by_patient:
            return 0

        patients = (await self.session.execute(
            select(Patient).where(Patient.id.in_(list(classes_by_patient)))
        )).scalars().all()
        for patient in patients:
            patient.chronic_conditions = infer_conditions(classes_by_patient[patient.id])

        await self.session.flush()
        logger.info("Updated condition profiles for %d patients at pharmacy %s", len(patients), pharmacy_id)
        return len(patients)
