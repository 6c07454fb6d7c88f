"""
History Router - per-wallet transaction history
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict

from api.dependencies import VaultXContainer, get_container
from infrastructure.errors import ValidationError
from services.history_store import TransactionRecord

router = APIRouter(prefix="/api/history", tags=["History"])


class HistoryEntry(BaseModel):
    # Anything beyond the known fields is kept as metadata
    model_config = ConfigDict(extra="allow")

    walletAddress: Optional[str] = None
    action: Optional[str] = None
    txHash: Optional[str] = None
    executedBy: Optional[str] = None
    status: Optional[str] = None


@router.get("")
async def get_history(
    walletAddress: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    container: VaultXContainer = Depends(get_container),
):
    """History for a wallet, newest first."""
    if not walletAddress:
        raise ValidationError("Missing walletAddress")
    records = await container.history.list_for_wallet(walletAddress, limit)
    return [r.to_wire() for r in records]


@router.post("")
async def save_history(entry: HistoryEntry, container: VaultXContainer = Depends(get_container)):
    if not (entry.walletAddress and entry.action and entry.txHash and entry.executedBy):
        raise ValidationError("Missing required fields: walletAddress, action, txHash, executedBy")

    await container.history.add(TransactionRecord(
        wallet_address=entry.walletAddress,
        action=entry.action,
        tx_hash=entry.txHash,
        executed_by=entry.executedBy,
        status=entry.status or "success",
        metadata=dict(entry.model_extra or {}),
    ))
    return {"success": True}
