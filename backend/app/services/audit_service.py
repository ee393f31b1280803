"""
Audit Service

Immutable, hash-chained audit trail for trigger configuration changes,
coverage pins and opportunity status changes.
"""

import hashlib
import json
from uuid import uuid4

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog

HASHED_FIELDS = ("event_type", "actor", "action", "resource_type", "resource_id", "details")


def _hashed_content(entry: AuditLog) -> dict:
    return {name: getattr(entry, name) for name in HASHED_FIELDS}


class AuditService:
    """Immutable, hash-chained audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _calculate_hash(self, content: dict, previous_hash: str | None) -> str:
        """SHA-256 hash of entry contents + previous hash."""
        payload = {
            "content": content,
            "previous_hash": previous_hash or "",
        }
        raw = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode()).hexdigest()

    async def _get_latest_hash(self) -> str | None:
        result = await self.session.execute(
            select(AuditLog.current_hash)
            .order_by(AuditLog.id.desc())
            .limit(1)
        )
        return result.scalar()

    async def log_event(
        self,
        event_type: str,
        actor: str,
        action: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict | None = None,
    ) -> AuditLog:
        """
        Write an immutable audit entry.

        Args:
            event_type: e.g. "trigger_created", "coverage_pinned", "opportunity_status_changed"
            actor: e.g. "system", "admin@example.com"
            action: Human-readable description
            resource_type: "trigger", "coverage", "opportunity"
            resource_id: The ID of the affected resource
            details: Full event details as dict
        """
        previous_hash = await self._get_latest_hash()

        entry = AuditLog(
            event_id=str(uuid4()),
            event_type=event_type,
            actor=actor,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            # Decimals and datetimes are stored as strings
            details=json.loads(json.dumps(details or {}, default=str)),
            previous_hash=previous_hash,
        )
        entry.current_hash = self._calculate_hash(_hashed_content(entry), previous_hash)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def log_trigger_created(self, trigger_id: int, trigger_code: str, actor: str) -> AuditLog:
        return await self.log_event(
            event_type="trigger_created",
            actor=actor,
            action=f"Trigger {trigger_code} created",
            resource_type="trigger",
            resource_id=str(trigger_id),
            details={"trigger_code": trigger_code},
        )

    async def log_trigger_config_changed(self, trigger_id: int, trigger_code: str, changes: dict, actor: str) -> AuditLog:
        return await self.log_event(
            event_type="trigger_config_changed",
            actor=actor,
            action=f"Trigger {trigger_code} configuration updated",
            resource_type="trigger",
            resource_id=str(trigger_id),
            details=changes,
        )

    async def log_trigger_removed(self, trigger_id: int, trigger_code: str, disabled_only: bool, actor: str) -> AuditLog:
        return await self.log_event(
            event_type="trigger_disabled" if disabled_only else "trigger_deleted",
            actor=actor,
            action=f"Trigger {trigger_code} {'disabled' if disabled_only else 'deleted'}",
            resource_type="trigger",
            resource_id=str(trigger_id),
            details={"trigger_code": trigger_code, "disabled_only": disabled_only},
        )

    async def log_coverage_pinned(self, trigger_code: str, insurance_bin: str, group: str | None,
                                  details: dict, actor: str) -> AuditLog:
        segment = f"{insurance_bin}/{group}" if group else insurance_bin
        return await self.log_event(
            event_type="coverage_pinned",
            actor=actor,
            action=f"Coverage for {trigger_code} on {segment} set to {details.get('coverage_status')}",
            resource_type="coverage",
            resource_id=f"{trigger_code}:{segment}",
            details=details,
        )

    async def log_opportunity_status_changed(self, opportunity_id: int, old_status: str, new_status: str,
                                             actor: str) -> AuditLog:
        return await self.log_event(
            event_type="opportunity_status_changed",
            actor=actor,
            action=f"Opportunity {opportunity_id} status: {old_status} → {new_status}",
            resource_type="opportunity",
            resource_id=str(opportunity_id),
            details={"old_status": old_status, "new_status": new_status},
        )

    async def verify_chain(self) -> dict:
        """
        Re-hash every entry in insertion order.

        Reports the first entry whose link or content no longer matches, with
        the trigger/coverage/opportunity it belongs to.
        """
        entries = (await self.session.execute(
            select(AuditLog).order_by(AuditLog.id.asc()).execution_options(populate_existing=True)
        )).scalars().all()

        previous = None
        for checked, entry in enumerate(entries, start=1):
            if entry.previous_hash != previous:
                reason = "broken link to previous entry"
            elif entry.current_hash != self._calculate_hash(_hashed_content(entry), entry.previous_hash):
                reason = "entry content modified"
            else:
                previous = entry.current_hash
                continue
            return {
                "valid": False,
                "entries_checked": checked,
                "first_invalid": entry.event_id,
                "resource": f"{entry.resource_type}:{entry.resource_id}" if entry.resource_type else None,
                "reason": reason,
            }

        return {"valid": True, "entries_checked": len(entries), "first_invalid": None}

    async def get_entries(
        self,
        resource_type: str | None = None,
        resource_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditLog]:
        query = select(AuditLog).order_by(AuditLog.id.desc())
        if resource_type:
            query = query.where(AuditLog.resource_type == resource_type)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)
        result = await self.session.execute(query.limit(limit).execution_options(populate_existing=True))
        return list(result.scalars())

    async def get_entry_count(self, event_type: str | None = None) -> int:
        query = select(func.count()).select_from(AuditLog)
        if event_type:
            query = query.where(AuditLog.event_type == event_type)
        result = await self.session.execute(query)
        return result.scalar() or 0
