from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import AuditLog


@dataclass(frozen=True)
class RequestContext:
    """Who triggered a workflow, for the ledger and the audit trail."""

    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


async def record_audit(
    session: AsyncSession,
    context: RequestContext,
    action: str,
    entity: str,
    entity_id: Optional[str],
    new_values: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    entry = AuditLog(
        user_id=context.user_id,
        action=action,
        entity=entity,
        entity_id=entity_id,
        new_values=new_values,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    session.add(entry)
    await session.flush()
    return entry
