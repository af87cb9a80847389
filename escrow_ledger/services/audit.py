"""Audit trail for ledger mutations.

Entries are added to the caller's unit of work, so an audit row is
committed exactly when the change it describes is.
"""

import json

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.models.audit_log import AuditLog


def log_audit(
    db: AsyncSession,
    *,
    action: str,
    entity_type: str,
    entity_id: int | None = None,
    actor_id: str | None = None,
    details: dict | None = None,
) -> AuditLog:
    """Stage an audit log entry in the current session."""
    entry = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=json.dumps(details, default=str) if details else None,
    )
    db.add(entry)
    return entry


async def get_audit_trail(
    db: AsyncSession, entity_type: str, entity_id: int
) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.id.asc())
    )
    return list(result.scalars().all())
