"""
Scan bookkeeping shared by the coverage scanner and the opportunity generator:
batch ids, ScanRun rows, and deadlines for bulk operations.
"""

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.middleware.metrics import scan_duration_seconds, scans_total
from app.middleware.request_context import scan_batch
from app.models import ScanRun

logger = logging.getLogger(__name__)


def new_batch_id(prefix: str = "SCAN") -> str:
    return f"{prefix}-{uuid4().hex[:12].upper()}"


class Deadline:
    """Wall-clock budget for a bulk scan. None means unlimited."""

    def __init__(self, seconds: float | None):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds if seconds else None

    @property
    def expired(self) -> bool:
        return self._expires is not None and time.monotonic() >= self._expires


@asynccontextmanager
async def track_scan(session: AsyncSession, scan_type: str, scope: dict | None = None, batch_id: str | None = None):
    """
    Record a ScanRun around a scan.

    The body sets `run.stats` (and may set `run.status` to "partial"); the run
    is marked completed on exit, or failed if the body raises.
    """
    run = ScanRun(
        batch_id=batch_id or new_batch_id(),
        scan_type=scan_type,
        scope=scope or {},
        status="running",
        completed_at=None,
        duration_seconds=None,
        stats={},
        error_message=None,
    )
    session.add(run)
    await session.flush()

    t_start = time.time()
    try:
        with scan_batch(run.batch_id):
            yield run
    except Exception as exc:
        run.status = "failed"
        run.error_message = f"{type(exc).__name__}: {str(exc)[:500]}"
        run.completed_at = datetime.utcnow()
        run.duration_seconds = round(time.time() - t_start, 3)
        scans_total.labels(scan_type=scan_type, status="failed").inc()
        logger.error("Scan %s (%s) failed: %s", run.batch_id, scan_type, exc)
        raise
    else:
        if run.status == "running":
            run.status = "completed"
        run.completed_at = datetime.utcnow()
        run.duration_seconds = round(time.time() - t_start, 3)
        scans_total.labels(scan_type=scan_type, status=run.status).inc()
        scan_duration_seconds.labels(scan_type=scan_type).observe(run.duration_seconds)
        await session.flush()
