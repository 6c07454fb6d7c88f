"""
Borrow API Router
Builds unsigned user operations for the borrow dashboard
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from account_abstraction.encoding import Call
from api.dependencies import VaultXContainer, get_container
from infrastructure.errors import ValidationError
from services.borrow_service import BorrowRequest

router = APIRouter(prefix="/api/borrow", tags=["Borrow"])


# ============================================
# MODELS
# ============================================

class BorrowParams(BaseModel):
    action: Optional[str] = None
    amount: Optional[str] = None
    max: bool = False
    # Combined actions
    supplyAmount: Optional[str] = None
    borrowAmount: Optional[str] = None
    repayAmount: Optional[str] = None
    withdrawAmount: Optional[str] = None
    repayMax: bool = False
    withdrawMax: bool = False

    def amounts(self) -> List[str]:
        return [a for a in (self.supplyAmount, self.borrowAmount, self.repayAmount,
                            self.withdrawAmount, self.amount) if a]


class BorrowPrepareRequest(BorrowParams):
    userAddress: Optional[str] = None


# ============================================
# CALL BUILDING
# ============================================

async def build_borrow_calls(container: VaultXContainer, user: str, params: BorrowParams) -> List[Call]:
    """Single action, supply+borrow, or repay+withdraw, depending on which fields are set."""
    builder = await container.morpho_calls()
    position = await container.reader.get_position(user)

    if params.supplyAmount or params.borrowAmount:
        calls = builder.build_supply_and_borrow_calls(
            params.supplyAmount or "0", params.borrowAmount or "0", user
        )
    elif params.repayAmount or params.withdrawAmount:
        calls = builder.build_repay_and_withdraw_calls(
            params.repayAmount or "0", params.withdrawAmount or "0", user,
            params.repayMax, params.withdrawMax, position,
        )
    elif params.action and params.amount:
        calls = builder.build_action_calls(BorrowRequest(
            action=params.action,
            amount=params.amount,
            user_address=user,
            max=params.max,
            position=position,
        )).calls
    else:
        raise ValidationError("Missing action and amount")

    if not calls:
        raise ValidationError("No actions to execute")
    return calls


# ============================================
# PREPARE
# ============================================

@router.post("/prepare")
async def prepare_borrow(request: BorrowPrepareRequest, container: VaultXContainer = Depends(get_container)):
    """
    Build the user operation for a borrow-dashboard action.

    The wallet owner signs the returned hash and submits via /api/aa/execute.
    """
    if not request.userAddress:
        raise ValidationError("Missing user address")

    calls = await build_borrow_calls(container, request.userAddress, request)
    prepared = await container.orchestrator.prepare_for_user(request.userAddress, calls)

    return {
        "unsignedUserOp": prepared.user_op.to_wire(),
        "userOpHash": prepared.user_op_hash,
        "calls": [c.to_dict() for c in calls],
    }
