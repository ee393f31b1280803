import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Numeric, Text, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


class OpportunityStatus(str, enum.Enum):
    NOT_SUBMITTED = "Not Submitted"
    APPROVED = "Approved"
    COMPLETED = "Completed"
    DENIED = "Denied"
    FLAGGED = "Flagged"
    DIDNT_WORK = "Didn't Work"


class Opportunity(Base):
    __tablename__ = "opportunities"
    __table_args__ = (
        # Authoritative dedup guard; scans insert with ON CONFLICT DO NOTHING
        UniqueConstraint(
            "pharmacy_id", "patient_id", "trigger_class", "current_drug_key",
            name="uq_opportunities_dedup",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"), index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), index=True)
    prescription_id: Mapped[int | None] = mapped_column(ForeignKey("prescriptions.id"), nullable=True)
    trigger_id: Mapped[int | None] = mapped_column(
        ForeignKey("triggers.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    trigger_class: Mapped[str] = mapped_column(String(100))
    opportunity_type: Mapped[str] = mapped_column(String(50))

    current_drug_name: Mapped[str] = mapped_column(String(255))
    current_drug_key: Mapped[str] = mapped_column(String(255))
    current_ndc: Mapped[str | None] = mapped_column(String(20), nullable=True)
    recommended_drug_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recommended_ndc: Mapped[str | None] = mapped_column(String(20), nullable=True)

    potential_margin_gain: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    annual_margin_gain: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    avg_dispensed_qty: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    insurance_bin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    price_source: Mapped[str] = mapped_column(String(20))  # "bin_group" | "bin" | "default"
    clinical_rationale: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), default=OpportunityStatus.NOT_SUBMITTED.value, index=True)
    staff_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    scan_batch_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    prescription: Mapped["Prescription | None"] = relationship(foreign_keys=[prescription_id])
