"""
ScanRun model — records every coverage or opportunity scan with its stats.
"""

from datetime import datetime

from sqlalchemy import String, DateTime, Float, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType


class ScanRun(Base):
    __tablename__ = "scan_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    # "coverage" | "coverage_all" | "pharmacy" | "trigger" | "all_opportunities"
    scan_type: Mapped[str] = mapped_column(String(30), index=True)
    scope: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="running")  # running, completed, partial, failed
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    stats: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
