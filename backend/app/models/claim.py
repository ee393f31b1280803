from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Date, Boolean, DateTime, Integer, Numeric, ForeignKey, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType


class Pharmacy(Base):
    __tablename__ = "pharmacies"

    id: Mapped[int] = mapped_column(primary_key=True)
    npi: Mapped[str | None] = mapped_column(String(10), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(200))
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"), index=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    chronic_conditions: Mapped[list] = mapped_column(JSONType, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    pharmacy: Mapped["Pharmacy"] = relationship(foreign_keys=[pharmacy_id])


class Prescription(Base):
    """A dispensed claim, written by the ingestion pipeline and never mutated here."""

    __tablename__ = "prescriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    pharmacy_id: Mapped[int] = mapped_column(ForeignKey("pharmacies.id"), index=True)
    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"), index=True)
    drug_name: Mapped[str] = mapped_column(String(255))
    ndc: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    insurance_bin: Mapped[str | None] = mapped_column(String(20), nullable=True, index=True)
    insurance_group: Mapped[str | None] = mapped_column(String(50), nullable=True)
    contract_id: Mapped[str | None] = mapped_column(String(20), nullable=True)
    plan_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    quantity_dispensed: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    days_supply: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dispensed_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    prescriber_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    patient: Mapped["Patient"] = relationship(foreign_keys=[patient_id])
    pharmacy: Mapped["Pharmacy"] = relationship(foreign_keys=[pharmacy_id])
