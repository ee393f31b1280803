"""Shared test fixtures for backend tests."""

from datetime import date, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.main import app
from app.api.deps import get_db
from app.models import (
    CoverageEntry, CoverageStatus, Opportunity, Patient, Pharmacy, Prescription, Trigger,
)


def _make_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's implicit transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """A session on a freshly created schema."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    TestSession = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with TestSession() as session:
        yield session
    await engine.dispose()


def _override_db(session: AsyncSession):
    """Create a dependency override for get_db."""
    async def _get_db():
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return _get_db


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_db] = _override_db(db_session)
    transport = ASGITransport(app=app)
    headers = {"X-Actor": "tester@example.com"}
    async with AsyncClient(transport=transport, base_url="http://test", headers=headers) as c:
        yield c
    app.dependency_overrides.clear()


class Factory:
    """Builds rows with sensible defaults; every method flushes."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.flush()
        await self.session.refresh(obj)
        return obj

    async def pharmacy(self, name: str = "Main Street Pharmacy", **kw) -> Pharmacy:
        kw.setdefault("is_active", True)
        return await self._save(Pharmacy(name=name, **kw))

    async def patient(self, pharmacy: Pharmacy, **kw) -> Patient:
        kw.setdefault("chronic_conditions", [])
        return await self._save(Patient(pharmacy_id=pharmacy.id, **kw))

    async def claim(
        self,
        patient: Patient,
        drug_name: str,
        *,
        insurance_bin: str | None = "610014",
        insurance_group: str | None = "RX100",
        gp=10,
        qty=30,
        days_supply: int | None = 30,
        ndc: str | None = None,
        days_ago: int = 10,
        **kw,
    ) -> Prescription:
        return await self._save(Prescription(
            pharmacy_id=patient.pharmacy_id,
            patient_id=patient.id,
            drug_name=drug_name,
            ndc=ndc,
            insurance_bin=insurance_bin,
            insurance_group=insurance_group,
            quantity_dispensed=Decimal(str(qty)),
            days_supply=days_supply,
            dispensed_date=date.today() - timedelta(days=days_ago),
            raw_data={"gross_profit": str(gp)},
            **kw,
        ))

    async def trigger(self, trigger_code: str = "T1", **kw) -> Trigger:
        kw.setdefault("display_name", trigger_code)
        kw.setdefault("trigger_type", "therapeutic_interchange")
        kw.setdefault("annual_fills", 12)
        kw.setdefault("is_enabled", True)
        kw.setdefault("version", 1)
        kw.setdefault("keyword_match_mode", "any")
        for field in (
            "detection_keywords", "exclude_keywords", "if_has_keywords", "if_not_has_keywords",
            "bin_inclusions", "bin_exclusions", "group_inclusions", "group_exclusions",
            "contract_prefix_exclusions", "pharmacy_inclusions",
        ):
            kw.setdefault(field, [])
        if kw.get("default_gp_value") is not None:
            kw["default_gp_value"] = Decimal(str(kw["default_gp_value"]))
        return await self._save(Trigger(trigger_code=trigger_code, **kw))

    async def coverage(
        self,
        trigger: Trigger,
        insurance_bin: str,
        insurance_group: str | None = None,
        *,
        gp=None,
        status: str = CoverageStatus.VERIFIED.value,
        claim_count: int = 1,
        **kw,
    ) -> CoverageEntry:
        kw.setdefault("is_manual_override", False)
        return await self._save(CoverageEntry(
            trigger_id=trigger.id,
            insurance_bin=insurance_bin,
            insurance_group=insurance_group,
            group_key=(insurance_group or "").strip().upper(),
            coverage_status=status,
            gp_value=Decimal(str(gp)) if gp is not None else None,
            verified_claim_count=claim_count,
            **kw,
        ))

    async def opportunity(self, patient: Patient, trigger: Trigger | None, **kw) -> Opportunity:
        drug = kw.pop("current_drug_name", "LISINOPRIL 10 MG TABLET")
        kw.setdefault("trigger_class", trigger.trigger_code if trigger else "T1")
        kw.setdefault("opportunity_type", "therapeutic_interchange")
        kw.setdefault("potential_margin_gain", Decimal("20.00"))
        kw.setdefault("annual_margin_gain", Decimal("240.00"))
        kw.setdefault("price_source", "default")
        kw.setdefault("status", "Not Submitted")
        return await self._save(Opportunity(
            pharmacy_id=patient.pharmacy_id,
            patient_id=patient.id,
            trigger_id=trigger.id if trigger else None,
            current_drug_name=drug,
            current_drug_key=" ".join(drug.upper().split()),
            **kw,
        ))


@pytest_asyncio.fixture
async def factory(db_session: AsyncSession) -> Factory:
    return Factory(db_session)
