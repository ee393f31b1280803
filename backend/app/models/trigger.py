import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    String, Boolean, DateTime, Integer, Numeric, Text, ForeignKey, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType


class TriggerType(str, enum.Enum):
    THERAPEUTIC_INTERCHANGE = "therapeutic_interchange"
    BRAND_TO_GENERIC = "brand_to_generic"
    MISSING_THERAPY = "missing_therapy"
    NDC_OPTIMIZATION = "ndc_optimization"
    COMBO_THERAPY = "combo_therapy"


# Trigger types that recommend an additional product instead of a replacement
ADD_ON_TRIGGER_TYPES = {TriggerType.MISSING_THERAPY.value, TriggerType.COMBO_THERAPY.value}


class KeywordMatchMode(str, enum.Enum):
    ANY = "any"
    ALL = "all"


class CoverageStatus(str, enum.Enum):
    UNKNOWN = "unknown"
    WORKS = "works"        # manually confirmed
    EXCLUDED = "excluded"  # manually pinned, never overwritten by scans
    VERIFIED = "verified"  # derived from claim history


class Trigger(Base):
    __tablename__ = "triggers"

    id: Mapped[int] = mapped_column(primary_key=True)
    trigger_code: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    display_name: Mapped[str] = mapped_column(String(255))
    trigger_group: Mapped[str | None] = mapped_column(String(100), nullable=True)
    trigger_type: Mapped[str] = mapped_column(String(50), index=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Detection
    detection_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    exclude_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    if_has_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    if_not_has_keywords: Mapped[list] = mapped_column(JSONType, default=list)
    keyword_match_mode: Mapped[str] = mapped_column(String(10), default=KeywordMatchMode.ANY.value)

    # Recommendation
    recommended_drug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recommended_ndc: Mapped[str | None] = mapped_column(String(20), nullable=True)
    clinical_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(20), default="medium")

    # Eligibility (empty = no restriction)
    bin_inclusions: Mapped[list] = mapped_column(JSONType, default=list)
    bin_exclusions: Mapped[list] = mapped_column(JSONType, default=list)
    group_inclusions: Mapped[list] = mapped_column(JSONType, default=list)
    group_exclusions: Mapped[list] = mapped_column(JSONType, default=list)
    contract_prefix_exclusions: Mapped[list] = mapped_column(JSONType, default=list)
    pharmacy_inclusions: Mapped[list] = mapped_column(JSONType, default=list)

    # Economics
    annual_fills: Mapped[int] = mapped_column(Integer, default=12)
    default_gp_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    expected_qty: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    expected_days_supply: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    last_modified_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    coverage_entries: Mapped[list["CoverageEntry"]] = relationship(
        back_populates="trigger", cascade="all, delete-orphan",
    )

    @property
    def trigger_class(self) -> str:
        return self.trigger_group or self.trigger_code


class CoverageEntry(Base):
    __tablename__ = "trigger_coverage"
    __table_args__ = (
        UniqueConstraint("trigger_id", "insurance_bin", "group_key", name="uq_trigger_coverage_segment"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    trigger_id: Mapped[int] = mapped_column(ForeignKey("triggers.id", ondelete="CASCADE"), index=True)
    insurance_bin: Mapped[str] = mapped_column(String(20), index=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Upper-cased group, "" when the entry covers every group of the BIN
    group_key: Mapped[str] = mapped_column(String(50), default="")
    coverage_status: Mapped[str] = mapped_column(String(20), default=CoverageStatus.UNKNOWN.value)

    gp_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    avg_qty: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    verified_claim_count: Mapped[int] = mapped_column(Integer, default=0)
    best_drug_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    best_ndc: Mapped[str | None] = mapped_column(String(20), nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Manual override (admin-entered pricing wins over scanned values)
    is_manual_override: Mapped[bool] = mapped_column(Boolean, default=False)
    manual_gp_value: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    manual_ndc: Mapped[str | None] = mapped_column(String(20), nullable=True)
    manual_drug_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    manual_note: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    trigger: Mapped["Trigger"] = relationship(back_populates="coverage_entries")
