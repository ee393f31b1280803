"""
API Dependencies — DB session and caller identity.

Authentication is enforced by the gateway in front of this service; it forwards
the authenticated user in the X-Actor header, which is recorded in the audit
trail.
"""

import logging
from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session

logger = logging.getLogger(__name__)

DEFAULT_ACTOR = "system"


# ── Database session ─────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield a DB session per request, commit on success, rollback on error."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ── Caller identity ──────────────────────────────────────────────────────────

async def get_actor(request: Request) -> str:
    actor = request.headers.get("X-Actor", "").strip()
    return actor[:100] if actor else DEFAULT_ACTOR
