"""
Audit Contract
==============
Best-effort, append-only record of operator and system actions on orders.
The order's own status history is the durable trail; this log adds
before/after snapshots for back-office review.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from schemas.orders import Actor, utcnow

logger = structlog.get_logger().bind(component="audit")


class AuditAction:
    ORDER_STATUS_UPDATE = "ORDER_STATUS_UPDATE"
    ORDER_CANCEL = "ORDER_CANCEL"
    ORDER_REFUND_INITIATE = "ORDER_REFUND_INITIATE"


class AuditEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    actor: Actor
    action: str
    entity_type: str
    entity_id: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class IAuditLog(ABC):

    @abstractmethod
    async def record(
        self,
        actor: Actor,
        action: str,
        entity_type: str,
        entity_id: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
    ) -> None:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: List[AuditEntry] = []
        self._by_entity: Dict[str, List[AuditEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def record(self, actor, action, entity_type, entity_id, before=None, after=None) -> None:
        entry = AuditEntry(
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=before,
            after=after,
        )
        async with self._lock:
            self._logs.append(entry)
            self._by_entity[entity_id].append(entry)

    async def get_for_entity(self, entity_id: str) -> List[AuditEntry]:
        async with self._lock:
            return list(self._by_entity.get(entity_id, []))


async def record_safely(audit: IAuditLog, actor: Actor, action: str, entity_id: str,
                        before: Optional[Dict[str, Any]] = None,
                        after: Optional[Dict[str, Any]] = None) -> None:
    """Audit failures are logged, never raised."""
    try:
        await audit.record(actor, action, "Order", entity_id, before, after)
    except Exception as e:
        logger.error("audit_record_failed", action=action, entity_id=entity_id, error=str(e))
