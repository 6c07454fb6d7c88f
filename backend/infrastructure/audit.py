"""
Audit Log - append-only record of autonomous activity

Every record is also emitted as one JSON log line on the "Audit" logger.
Writing an audit record never raises: a failed write is logged and the
caller's outcome stands.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from infrastructure.errors import PersistenceError

logger = logging.getLogger("Audit")


class AuditEvent(str, Enum):
    OFFLINE_EXECUTION = "offline_execution"
    OFFLINE_EXECUTION_FAILED = "offline_execution_failed"
    POLICY_VIOLATION = "policy_violation"
    AUTH_FAILURE = "auth_failure"
    RATE_LIMITED = "rate_limited"


@dataclass
class AuditRecord:
    event: AuditEvent
    wallet: Optional[str] = None
    action: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event"] = self.event.value
        return data


class AuditLog:
    """Base audit sink. Subclasses implement ``_write``."""

    async def _write(self, record: AuditRecord) -> None:
        raise NotImplementedError

    async def record(
        self,
        event: AuditEvent,
        wallet: Optional[str] = None,
        action: Optional[str] = None,
        **details
    ) -> AuditRecord:
        record = AuditRecord(
            event=event,
            wallet=wallet.lower() if wallet else None,
            action=action,
            details=details,
        )
        logger.info(json.dumps(record.to_dict(), default=str))
        try:
            await self._write(record)
        except Exception as e:
            message = e.message if isinstance(e, PersistenceError) else repr(e)
            logger.error(f"[Audit] Failed to persist {event.value}: {message}")
        return record


class InMemoryAuditLog(AuditLog):
    def __init__(self, max_entries: int = 5000):
        self.entries: List[AuditRecord] = []
        self.max_entries = max_entries

    async def _write(self, record: AuditRecord) -> None:
        self.entries.append(record)
        if len(self.entries) > self.max_entries:
            self.entries = self.entries[-self.max_entries:]

    def events(self, event: AuditEvent) -> List[AuditRecord]:
        return [r for r in self.entries if r.event == event]


class SupabaseAuditLog(AuditLog):
    """Writes to the ``audit_log`` table"""

    TABLE = "audit_log"

    def __init__(self, client):
        self.client = client

    async def _write(self, record: AuditRecord) -> None:
        await self.client.table(self.TABLE).insert({
            "event": record.event.value,
            "wallet_address": record.wallet,
            "action": record.action,
            "details": record.details,
            "created_at": record.timestamp,
        }).execute()
