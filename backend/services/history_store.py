"""
Transaction History Store

Stores executed transactions per wallet (user-submitted and agent-executed)
plus the rebalance log the position monitor writes after each wallet.
The monitor discovers its wallets here: every wallet that ever supplied or
borrowed is a candidate.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

logger = logging.getLogger("HistoryStore")

DISCOVERY_ACTIONS = ("supply", "borrow")


@dataclass
class TransactionRecord:
    wallet_address: str
    action: str
    tx_hash: str
    executed_by: str
    status: str = "success"
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        self.wallet_address = self.wallet_address.lower()

    def to_wire(self) -> Dict[str, Any]:
        return {
            **self.metadata,
            "id": self.tx_hash,
            "walletAddress": self.wallet_address,
            "action": self.action,
            "txHash": self.tx_hash,
            "executedBy": self.executed_by,
            "status": self.status,
            "timestamp": self.timestamp,
        }


@dataclass
class RebalanceLogEntry:
    wallet_address: str
    action: str
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def __post_init__(self):
        self.wallet_address = self.wallet_address.lower()


class InMemoryHistoryStore:
    def __init__(self):
        self.records: List[TransactionRecord] = []
        self.rebalance_log: List[RebalanceLogEntry] = []

    async def add(self, record: TransactionRecord) -> None:
        self.records.append(record)

    async def list_for_wallet(self, wallet: str, limit: int = 100) -> List[TransactionRecord]:
        wallet = wallet.lower()
        rows = [r for r in self.records if r.wallet_address == wallet]
        rows.sort(key=lambda r: r.timestamp, reverse=True)
        return rows[:limit]

    async def distinct_wallets(self, actions: Iterable[str] = DISCOVERY_ACTIONS) -> List[str]:
        actions = set(actions)
        seen: Dict[str, None] = {}
        for r in self.records:
            if r.action in actions:
                seen.setdefault(r.wallet_address, None)
        return list(seen)

    async def log_rebalance(self, entry: RebalanceLogEntry) -> None:
        self.rebalance_log.append(entry)


class SupabaseHistoryStore:
    """``transaction_history`` and ``rebalance_log`` tables over PostgREST"""

    HISTORY_TABLE = "transaction_history"
    REBALANCE_TABLE = "rebalance_log"

    def __init__(self, client):
        self.client = client

    async def add(self, record: TransactionRecord) -> None:
        await self.client.table(self.HISTORY_TABLE).insert({
            "wallet_address": record.wallet_address,
            "action": record.action,
            "tx_hash": record.tx_hash,
            "executed_by": record.executed_by,
            "status": record.status,
            "metadata": record.metadata,
            "created_at": record.timestamp,
        }).execute()

    async def list_for_wallet(self, wallet: str, limit: int = 100) -> List[TransactionRecord]:
        result = await (self.client.table(self.HISTORY_TABLE).select("*")
                        .eq("wallet_address", wallet.lower())
                        .order("created_at", desc=True)
                        .limit(limit)
                        .execute())
        return [
            TransactionRecord(
                wallet_address=row["wallet_address"],
                action=row["action"],
                tx_hash=row["tx_hash"],
                executed_by=row.get("executed_by", ""),
                status=row.get("status", "success"),
                metadata=row.get("metadata") or {},
                timestamp=row.get("created_at", ""),
            )
            for row in result.data
        ]

    async def distinct_wallets(self, actions: Iterable[str] = DISCOVERY_ACTIONS) -> List[str]:
        result = await (self.client.table(self.HISTORY_TABLE).select("wallet_address")
                        .in_("action", list(actions))
                        .execute())
        seen: Dict[str, None] = {}
        for row in result.data:
            seen.setdefault(row["wallet_address"].lower(), None)
        return list(seen)

    async def log_rebalance(self, entry: RebalanceLogEntry) -> None:
        await self.client.table(self.REBALANCE_TABLE).insert({
            "wallet_address": entry.wallet_address,
            "action": entry.action,
            "reason": entry.reason,
            "details": entry.details,
            "created_at": entry.timestamp,
        }).execute()
