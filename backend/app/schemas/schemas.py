"""
Pydantic schemas for API request/response models.

Trigger inputs accept both snake_case and the camelCase keys used by the admin
panel export (detectionKeywords, binExclusions, ...). Everything past this
layer uses the snake_case names only.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TRIGGER_TYPE_PATTERN = "^(therapeutic_interchange|brand_to_generic|missing_therapy|ndc_optimization|combo_therapy)$"

_LIST_FIELDS = (
    "detection_keywords", "exclude_keywords", "if_has_keywords", "if_not_has_keywords",
    "bin_inclusions", "bin_exclusions", "group_inclusions", "group_exclusions",
    "contract_prefix_exclusions",
)


def _split_list(value):
    """Admin forms send comma-separated strings; the API also accepts lists."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


# ── Triggers ──

class TriggerIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    trigger_code: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=255)
    trigger_group: str | None = None
    trigger_type: str = Field("therapeutic_interchange", pattern=TRIGGER_TYPE_PATTERN)
    category: str | None = None

    detection_keywords: list[str] = []
    exclude_keywords: list[str] = []
    if_has_keywords: list[str] = []
    if_not_has_keywords: list[str] = []
    keyword_match_mode: str = Field("any", pattern="^(any|all)$")

    recommended_drug: str | None = None
    recommended_ndc: str | None = None
    clinical_rationale: str | None = None
    priority: str = Field("medium", pattern="^(low|medium|high|critical)$")

    bin_inclusions: list[str] = []
    bin_exclusions: list[str] = []
    group_inclusions: list[str] = []
    group_exclusions: list[str] = []
    contract_prefix_exclusions: list[str] = []
    pharmacy_inclusions: list[int] = []

    annual_fills: int = Field(12, ge=1, le=365)
    default_gp_value: float | None = Field(None, ge=0)
    expected_qty: float | None = Field(None, gt=0)
    expected_days_supply: int | None = Field(None, gt=0)
    is_enabled: bool = True

    @field_validator(*_LIST_FIELDS, mode="before")
    @classmethod
    def split_lists(cls, v):
        return _split_list(v)


class TriggerUpdate(BaseModel):
    """Partial update; only the keys sent are applied."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    display_name: str | None = Field(None, min_length=1, max_length=255)
    trigger_group: str | None = None
    trigger_type: str | None = Field(None, pattern=TRIGGER_TYPE_PATTERN)
    category: str | None = None

    detection_keywords: list[str] | None = None
    exclude_keywords: list[str] | None = None
    if_has_keywords: list[str] | None = None
    if_not_has_keywords: list[str] | None = None
    keyword_match_mode: str | None = Field(None, pattern="^(any|all)$")

    recommended_drug: str | None = None
    recommended_ndc: str | None = None
    clinical_rationale: str | None = None
    priority: str | None = Field(None, pattern="^(low|medium|high|critical)$")

    bin_inclusions: list[str] | None = None
    bin_exclusions: list[str] | None = None
    group_inclusions: list[str] | None = None
    group_exclusions: list[str] | None = None
    contract_prefix_exclusions: list[str] | None = None
    pharmacy_inclusions: list[int] | None = None

    annual_fills: int | None = Field(None, ge=1, le=365)
    default_gp_value: float | None = Field(None, ge=0)
    expected_qty: float | None = Field(None, gt=0)
    expected_days_supply: int | None = Field(None, gt=0)
    is_enabled: bool | None = None

    @field_validator(*_LIST_FIELDS, mode="before")
    @classmethod
    def split_lists(cls, v):
        return None if v is None else _split_list(v)


class CoverageEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    insurance_bin: str
    insurance_group: str | None
    coverage_status: str
    gp_value: float | None
    avg_qty: float | None
    verified_claim_count: int
    best_drug_name: str | None
    best_ndc: str | None
    verified_at: datetime | None
    is_manual_override: bool
    manual_gp_value: float | None
    manual_ndc: str | None
    manual_drug_name: str | None
    manual_note: str | None


class TriggerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trigger_code: str
    display_name: str
    trigger_group: str | None
    trigger_type: str
    category: str | None
    detection_keywords: list[str]
    exclude_keywords: list[str]
    if_has_keywords: list[str]
    if_not_has_keywords: list[str]
    keyword_match_mode: str
    recommended_drug: str | None
    recommended_ndc: str | None
    clinical_rationale: str | None
    priority: str
    bin_inclusions: list[str]
    bin_exclusions: list[str]
    group_inclusions: list[str]
    group_exclusions: list[str]
    contract_prefix_exclusions: list[str]
    pharmacy_inclusions: list[int]
    annual_fills: int
    default_gp_value: float | None
    expected_qty: float | None
    expected_days_supply: int | None
    is_enabled: bool
    version: int
    synced_at: datetime | None


class TriggerDetail(TriggerOut):
    coverage: list[CoverageEntryOut] = []


class CoverageUpdate(BaseModel):
    """Pin or override the coverage of one (BIN, Group) segment."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    insurance_bin: str = Field(..., min_length=1, max_length=20)
    insurance_group: str | None = None
    coverage_status: str | None = Field(None, pattern="^(unknown|works|excluded)$")
    is_manual_override: bool | None = None
    manual_gp_value: float | None = Field(None, ge=0)
    manual_ndc: str | None = None
    manual_drug_name: str | None = None
    manual_note: str | None = Field(None, max_length=500)


# ── Scans ──

class VerifyCoverageRequest(BaseModel):
    min_claims: int | None = Field(None, ge=1)
    days_back: int | None = Field(None, ge=1, le=3650)
    min_margin: float | None = None


class VerifyAllCoverageRequest(VerifyCoverageRequest):
    dme_min_margin: float | None = None
    deadline_seconds: float | None = Field(None, gt=0)


class ScanPharmacyRequest(BaseModel):
    scan_type: str = Field("opportunities", pattern="^(opportunities|all)$")
    days_back: int | None = Field(None, ge=1, le=3650)


class ScanTriggerRequest(BaseModel):
    pharmacy_id: int | None = None
    days_back: int | None = Field(None, ge=1, le=3650)
    deadline_seconds: float | None = Field(None, gt=0)


class ScanAllRequest(BaseModel):
    days_back: int | None = Field(None, ge=1, le=3650)
    deadline_seconds: float | None = Field(None, gt=0)


class EnqueueScanRequest(BaseModel):
    job_type: str = Field(..., pattern="^(verify_all_coverage|scan_all_opportunities)$")
    params: dict = {}


class EnqueueScanResponse(BaseModel):
    job_id: str
    status: str


class ScanRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: str
    scan_type: str
    scope: dict | None
    status: str
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    stats: dict | None
    error_message: str | None


# ── Opportunities ──

class OpportunityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pharmacy_id: int
    patient_id: int
    prescription_id: int | None
    trigger_id: int | None
    trigger_class: str
    opportunity_type: str
    current_drug_name: str
    current_ndc: str | None
    recommended_drug_name: str | None
    recommended_ndc: str | None
    potential_margin_gain: float
    annual_margin_gain: float
    avg_dispensed_qty: float | None
    insurance_bin: str | None
    insurance_group: str | None
    price_source: str
    clinical_rationale: str | None
    status: str
    staff_notes: str | None
    scan_batch_id: str | None
    created_at: datetime | None


class OpportunityListResponse(BaseModel):
    total: int
    page: int
    size: int
    pages: int
    items: list[OpportunityOut]


class OpportunityStatusUpdate(BaseModel):
    status: str = Field(..., pattern="^(Not Submitted|Approved|Completed|Denied|Flagged|Didn't Work)$")
    staff_notes: str | None = None


# ── Audit ──

class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_id: str
    event_type: str
    actor: str
    action: str
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict = {}
    previous_hash: str | None = None
    current_hash: str
    created_at: datetime | None = None


class AuditChainCheck(BaseModel):
    valid: bool
    entries_checked: int
    first_invalid: str | None = None
    resource: str | None = None
    reason: str | None = None
