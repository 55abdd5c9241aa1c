"""
services/audit.py

Audit events emitted by the session core and policy administration.

The sink is fire-and-forget from the caller's point of view: `record_safely`
catches and logs every sink failure, so a broken audit table can never block
a login or logout.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from auditportal.models.schemas import AuditStatus

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    action: str
    user_id: Optional[str] = None
    firm_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: AuditStatus = AuditStatus.SUCCESS
    error_message: Optional[str] = None


class AuditSink(Protocol):
    async def record(self, event: AuditEvent) -> None: ...


async def record_safely(sink: Optional[AuditSink], event: AuditEvent) -> None:
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception:
        logger.error(f"Failed to record audit event {event.action} ({event.status.value})", exc_info=True)
