"""
Migration API Router
Prepares Morpho -> Fluid migrations for user review and signature
"""

from typing import Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from api.dependencies import VaultXContainer, get_container
from infrastructure.errors import ValidationError
from services.migration_service import MigrationRequest

router = APIRouter(prefix="/api/migrate", tags=["Migration"])


class MigratePrepareRequest(BaseModel):
    userAddress: Optional[str] = None
    fluidNftId: Union[int, str, None] = 0
    borrowBufferBps: int = 0


@router.post("/prepare")
async def prepare_migration(request: MigratePrepareRequest, container: VaultXContainer = Depends(get_container)):
    """
    Build the three migration calls and the unsigned user operation.

    Migrations always go back to the wallet owner for a signature.
    """
    if not request.userAddress:
        raise ValidationError("userAddress is required")

    try:
        nft_id = int(request.fluidNftId or 0)
    except ValueError:
        raise ValidationError("Invalid fluidNftId")

    migration = MigrationRequest(
        user_address=request.userAddress,
        fluid_nft_id=nft_id,
        borrow_buffer_bps=request.borrowBufferBps,
    )
    snapshot = await container.reader.fetch_snapshot(request.userAddress)
    plan = container.migrator.build_migration_calls(migration, snapshot)

    # Raises PolicyViolationError (403) before anything is estimated
    prepared = await container.orchestrator.prepare_for_user(request.userAddress, plan.calls)

    return {
        "calls": [c.to_dict() for c in plan.calls],
        "calculation": plan.calculation.to_dict(),
        "unsignedUserOp": prepared.user_op.to_wire(),
        "userOpHash": prepared.user_op_hash,
        "requiresUserSignature": True,
    }
