"""
Canonical, immutable views of a trigger and its coverage table.

The matcher and scanners never read ORM rows directly: a Trigger is converted
once into a TriggerRule (sets upper-cased and stripped, defaults applied) and its
CoverageEntry rows into a CoverageIndex. Both are plain values, so the matching
logic can be exercised without a database.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from app.models.trigger import (
    ADD_ON_TRIGGER_TYPES, CoverageStatus, KeywordMatchMode, TriggerType,
)
from app.services.margin import to_decimal


def group_key(group: str | None) -> str:
    """Normalized insurance group used in coverage keys ("" = every group)."""
    return (group or "").strip().upper()


def _clean(values, *, upper: bool = False) -> tuple[str, ...]:
    out = []
    for v in values or []:
        text = str(v).strip()
        if not text:
            continue
        out.append(text.upper() if upper else text)
    return tuple(out)


@dataclass(frozen=True)
class TriggerRule:
    id: int | None
    trigger_code: str
    display_name: str
    trigger_type: str = TriggerType.THERAPEUTIC_INTERCHANGE.value
    trigger_class: str = ""
    detection_keywords: tuple[str, ...] = ()
    exclude_keywords: tuple[str, ...] = ()
    if_has_keywords: tuple[str, ...] = ()
    if_not_has_keywords: tuple[str, ...] = ()
    keyword_match_mode: str = KeywordMatchMode.ANY.value
    recommended_drug: str | None = None
    recommended_ndc: str | None = None
    bin_inclusions: tuple[str, ...] = ()
    bin_exclusions: tuple[str, ...] = ()
    group_inclusions: tuple[str, ...] = ()
    group_exclusions: tuple[str, ...] = ()
    contract_prefix_exclusions: tuple[str, ...] = ()
    pharmacy_inclusions: tuple[int, ...] = ()
    annual_fills: int = 12
    default_gp_value: Decimal | None = None
    expected_qty: Decimal | None = None
    expected_days_supply: int | None = None
    clinical_rationale: str | None = None
    is_enabled: bool = True

    @classmethod
    def from_model(cls, trigger) -> "TriggerRule":
        return cls(
            id=trigger.id,
            trigger_code=trigger.trigger_code,
            display_name=trigger.display_name or trigger.trigger_code,
            trigger_type=trigger.trigger_type or TriggerType.THERAPEUTIC_INTERCHANGE.value,
            trigger_class=trigger.trigger_group or trigger.trigger_code,
            detection_keywords=_clean(trigger.detection_keywords),
            exclude_keywords=_clean(trigger.exclude_keywords),
            if_has_keywords=_clean(trigger.if_has_keywords),
            if_not_has_keywords=_clean(trigger.if_not_has_keywords),
            keyword_match_mode=(trigger.keyword_match_mode or KeywordMatchMode.ANY.value).lower(),
            recommended_drug=trigger.recommended_drug,
            recommended_ndc=trigger.recommended_ndc,
            bin_inclusions=_clean(trigger.bin_inclusions),
            bin_exclusions=_clean(trigger.bin_exclusions),
            group_inclusions=_clean(trigger.group_inclusions, upper=True),
            group_exclusions=_clean(trigger.group_exclusions, upper=True),
            contract_prefix_exclusions=_clean(trigger.contract_prefix_exclusions, upper=True),
            pharmacy_inclusions=tuple(int(p) for p in (trigger.pharmacy_inclusions or [])),
            annual_fills=trigger.annual_fills or 12,
            default_gp_value=to_decimal(trigger.default_gp_value),
            expected_qty=to_decimal(trigger.expected_qty),
            expected_days_supply=trigger.expected_days_supply,
            clinical_rationale=trigger.clinical_rationale,
            is_enabled=bool(trigger.is_enabled) if trigger.is_enabled is not None else True,
        )

    @property
    def is_add_on(self) -> bool:
        return self.trigger_type in ADD_ON_TRIGGER_TYPES

    @property
    def is_ndc_optimization(self) -> bool:
        return self.trigger_type == TriggerType.NDC_OPTIMIZATION.value

    def applies_to_pharmacy(self, pharmacy_id: int) -> bool:
        return not self.pharmacy_inclusions or pharmacy_id in self.pharmacy_inclusions

    def bin_allowed(self, insurance_bin: str | None) -> bool:
        """Exclusions win over inclusions."""
        bin_ = (insurance_bin or "").strip()
        if bin_ in self.bin_exclusions:
            return False
        if self.bin_inclusions and bin_ not in self.bin_inclusions:
            return False
        return True


@dataclass(frozen=True)
class CoverageQuote:
    insurance_bin: str
    insurance_group: str | None
    status: str
    gp_value: Decimal | None = None
    avg_qty: Decimal | None = None
    best_ndc: str | None = None
    best_drug_name: str | None = None

    @property
    def is_excluded(self) -> bool:
        return self.status == CoverageStatus.EXCLUDED.value

    @classmethod
    def from_model(cls, entry) -> "CoverageQuote":
        # Manual override values win over scanned ones
        if entry.is_manual_override:
            gp = entry.manual_gp_value if entry.manual_gp_value is not None else entry.gp_value
            ndc = entry.manual_ndc or entry.best_ndc
            drug = entry.manual_drug_name or entry.best_drug_name
        else:
            gp, ndc, drug = entry.gp_value, entry.best_ndc, entry.best_drug_name
        return cls(
            insurance_bin=entry.insurance_bin,
            insurance_group=entry.insurance_group,
            status=entry.coverage_status or CoverageStatus.UNKNOWN.value,
            gp_value=to_decimal(gp),
            avg_qty=to_decimal(entry.avg_qty),
            best_ndc=ndc,
            best_drug_name=drug,
        )


@dataclass
class CoverageIndex:
    """Coverage quotes of one trigger keyed by (BIN, normalized group)."""

    quotes: dict[tuple[str, str], CoverageQuote] = field(default_factory=dict)

    @classmethod
    def from_entries(cls, entries) -> "CoverageIndex":
        index = cls()
        for entry in entries:
            quote = entry if isinstance(entry, CoverageQuote) else CoverageQuote.from_model(entry)
            index.quotes[(quote.insurance_bin.strip(), group_key(quote.insurance_group))] = quote
        return index

    def lookup(self, insurance_bin: str | None, insurance_group: str | None) -> tuple[CoverageQuote | None, str | None]:
        """
        Exact (BIN, Group) entry first, then the BIN-wide entry.

        Returns (quote, source) where source is "bin_group" or "bin".
        """
        bin_ = (insurance_bin or "").strip()
        if not bin_:
            return None, None
        grp = group_key(insurance_group)
        if grp:
            quote = self.quotes.get((bin_, grp))
            if quote is not None:
                return quote, "bin_group"
        quote = self.quotes.get((bin_, ""))
        if quote is not None:
            return quote, "bin"
        return None, None

    def __len__(self) -> int:
        return len(self.quotes)
