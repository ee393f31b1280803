"""
Trigger Matcher

Evaluates one patient's prescription history against one trigger:

  detect -> eligibility -> price resolution -> economics -> dedup

and returns either Matched (everything needed to write an Opportunity) or
NotApplicable with the step that stopped it.
"""

from dataclasses import dataclass
from decimal import Decimal

from app.services.keywords import matches_any, matches_detection, normalize_drug_name
from app.services.margin import ZERO, extract_gross_profit, money, normalize_margin, to_decimal
from app.services.trigger_rule import CoverageIndex, CoverageQuote, TriggerRule


class Reason:
    NO_DETECTION = "no_detection"
    BIN_EXCLUDED = "bin_excluded"
    GROUP_EXCLUDED = "group_excluded"
    CONTRACT_EXCLUDED = "contract_excluded"
    MISSING_CO_THERAPY = "missing_co_therapy"
    ALREADY_ON_THERAPY = "already_on_therapy"
    COVERAGE_EXCLUDED = "coverage_excluded"
    NO_PRICE = "no_price"
    NO_GAIN = "no_gain"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class Matched:
    trigger_id: int | None
    trigger_class: str
    patient_id: int
    prescription_id: int | None
    current_drug_name: str
    current_ndc: str | None
    recommended_drug_name: str | None
    recommended_ndc: str | None
    current_gp: Decimal
    price: Decimal
    net_gain: Decimal
    annual_gain: Decimal
    avg_dispensed_qty: Decimal | None
    insurance_bin: str | None
    insurance_group: str | None
    price_source: str

    @property
    def dedup_key(self) -> tuple[int, str, str]:
        return dedup_key(self.patient_id, self.trigger_class, self.current_drug_name)


@dataclass(frozen=True)
class NotApplicable:
    reason: str
    detail: str = ""


def dedup_key(patient_id: int, trigger_class: str, current_drug_name: str | None) -> tuple[int, str, str]:
    return (patient_id, trigger_class, drug_key(current_drug_name))


def drug_key(drug_name: str | None) -> str:
    """Upper-cased, whitespace-collapsed drug name used for dedup."""
    return " ".join((drug_name or "").upper().split())


def current_claim_gp(rx, rule: TriggerRule) -> Decimal:
    """The detected claim's own GP on the same scale as coverage prices."""
    normalized = normalize_margin(
        extract_gross_profit(rx.raw_data),
        rx.quantity_dispensed,
        rx.days_supply,
        rule.expected_qty,
        rule.expected_days_supply,
        enforce_min_days=False,
    )
    return normalized.gp if normalized else ZERO


def resolve_price(
    rule: TriggerRule, coverage: CoverageIndex, insurance_bin: str | None, insurance_group: str | None,
) -> tuple[Decimal | None, CoverageQuote | None, str | None]:
    """
    (BIN, Group) entry, then BIN-only entry, then the trigger default.

    Returns (price, quote, source). price is None when the resolved entry is
    excluded or nothing resolves; callers reject in both cases.
    """
    quote, source = coverage.lookup(insurance_bin, insurance_group)
    if quote is not None:
        if quote.is_excluded:
            return None, quote, source
        if quote.gp_value is not None and quote.gp_value > 0:
            return quote.gp_value, quote, source
    if rule.default_gp_value is not None and rule.default_gp_value > 0:
        return rule.default_gp_value, quote, "default"
    return None, quote, None


def compute_gain(rule: TriggerRule, price: Decimal, current_gp: Decimal) -> Decimal:
    """Add-on triggers earn the full price; replacements earn the difference."""
    return price if rule.is_add_on else price - current_gp


class TriggerMatcher:
    """Evaluates patients against one trigger and its coverage table."""

    def __init__(self, rule: TriggerRule, coverage: CoverageIndex | None = None):
        self.rule = rule
        self.coverage = coverage or CoverageIndex()

    def candidates(self, prescriptions):
        """Prescriptions matching the detection keywords and no exclude keyword, in input order."""
        rule = self.rule
        for rx in prescriptions:
            name = normalize_drug_name(rx.drug_name)
            if not matches_detection(name, rule.detection_keywords, rule.keyword_match_mode):
                continue
            if matches_any(name, rule.exclude_keywords):
                continue
            yield rx

    def detect(self, prescriptions) -> object | None:
        """First detected prescription, or None."""
        return next(self.candidates(prescriptions), None)

    def check_eligibility(self, rx, patient_drugs: list[str]) -> NotApplicable | None:
        rule = self.rule
        if not rule.bin_allowed(rx.insurance_bin):
            return NotApplicable(Reason.BIN_EXCLUDED, f"BIN {rx.insurance_bin or '-'}")

        group = (rx.insurance_group or "").strip().upper()
        if group in rule.group_exclusions:
            return NotApplicable(Reason.GROUP_EXCLUDED, f"group {group}")
        # Claims without a group are not rejected by an allow-list
        if rule.group_inclusions and group and group not in rule.group_inclusions:
            return NotApplicable(Reason.GROUP_EXCLUDED, f"group {group} not included")

        if rule.contract_prefix_exclusions:
            contract = (getattr(rx, "contract_id", None) or group or "").strip().upper()
            if contract and any(contract.startswith(p) for p in rule.contract_prefix_exclusions):
                return NotApplicable(Reason.CONTRACT_EXCLUDED, f"contract {contract}")

        if rule.if_has_keywords and not any(matches_any(d, rule.if_has_keywords) for d in patient_drugs):
            return NotApplicable(Reason.MISSING_CO_THERAPY)
        if rule.if_not_has_keywords and any(matches_any(d, rule.if_not_has_keywords) for d in patient_drugs):
            return NotApplicable(Reason.ALREADY_ON_THERAPY)
        return None

    def evaluate(self, patient_id: int, prescriptions, existing_keys=()) -> Matched | NotApplicable:
        """
        Run the full pipeline for one patient.

        `prescriptions` must be the patient's claims newest first. The newest
        detected claim that passes eligibility is the current prescription: it
        decides pricing, and the opportunity points at it. Older detected claims
        are only considered when newer ones are ineligible (e.g. a plan change
        away from an excluded BIN). `existing_keys` is any container of dedup
        keys already recorded for the pharmacy.
        """
        rule = self.rule
        patient_drugs = [normalize_drug_name(p.drug_name) for p in prescriptions]
        rx = None
        rejected = None
        for candidate in self.candidates(prescriptions):
            reason = self.check_eligibility(candidate, patient_drugs)
            if reason is None:
                rx = candidate
                break
            rejected = rejected or reason
        if rx is None:
            return rejected or NotApplicable(Reason.NO_DETECTION)

        price, quote, source = resolve_price(rule, self.coverage, rx.insurance_bin, rx.insurance_group)
        if price is None:
            if quote is not None and quote.is_excluded:
                return NotApplicable(Reason.COVERAGE_EXCLUDED, f"BIN {rx.insurance_bin} excluded")
            return NotApplicable(Reason.NO_PRICE)

        current_gp = current_claim_gp(rx, rule)
        net_gain = money(compute_gain(rule, price, current_gp))
        if net_gain <= 0:
            return NotApplicable(Reason.NO_GAIN, f"price {price} vs current {money(current_gp)}")

        key = dedup_key(patient_id, rule.trigger_class, rx.drug_name)
        if key in existing_keys:
            return NotApplicable(Reason.DUPLICATE)

        priced_by_coverage = source in ("bin_group", "bin") and quote is not None
        return Matched(
            trigger_id=rule.id,
            trigger_class=rule.trigger_class,
            patient_id=patient_id,
            prescription_id=rx.id,
            current_drug_name=rx.drug_name,
            current_ndc=rx.ndc,
            recommended_drug_name=rule.recommended_drug or rule.display_name,
            recommended_ndc=(quote.best_ndc if priced_by_coverage and quote.best_ndc else rule.recommended_ndc),
            current_gp=money(current_gp),
            price=money(price),
            net_gain=net_gain,
            annual_gain=money(net_gain * rule.annual_fills),
            avg_dispensed_qty=money(to_decimal(quote.avg_qty)) if priced_by_coverage else None,
            insurance_bin=rx.insurance_bin,
            insurance_group=rx.insurance_group,
            price_source=source,
        )
