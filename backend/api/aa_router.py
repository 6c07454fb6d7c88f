"""
Account Abstraction API Router
Relays user operations through the EntryPoint

- POST /api/aa/execute          user-signed operation from the browser
- POST /api/aa/execute-offline  custodial execution on the user's behalf
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError

from account_abstraction.encoding import Call
from account_abstraction.user_operation import Authorization, UserOperation
from api.borrow_router import BorrowParams, build_borrow_calls
from api.dependencies import VaultXContainer, get_container
from infrastructure.audit import AuditEvent
from infrastructure.errors import PolicyViolationError, RateLimitError, ValidationError, VaultXError
from services.swap_service import SwapParams

logger = logging.getLogger("AARouter")

router = APIRouter(prefix="/api/aa", tags=["Account Abstraction"])


# ============================================
# MODELS
# ============================================

class ExecuteRequest(BaseModel):
    userOp: Optional[Dict[str, Any]] = None
    authorization: Optional[Dict[str, Any]] = None


class OfflineExecuteRequest(BaseModel):
    type: Optional[str] = None
    userAddress: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)


# ============================================
# USER-SIGNED EXECUTION
# ============================================

@router.post("/execute")
async def execute_user_op(request: ExecuteRequest, container: VaultXContainer = Depends(get_container)):
    """Relay an operation the wallet owner already signed."""
    if not request.userOp:
        raise ValidationError("Missing userOp")

    user_op = UserOperation.from_wire(request.userOp)
    authorization = Authorization.from_wire(request.authorization) if request.authorization else None

    result = await container.orchestrator.submit_signed(user_op, authorization)
    return result.to_wire()


# ============================================
# OFFLINE (CUSTODIAL) EXECUTION
# ============================================

def enforce_spend_limit(amounts: List[Any], limit: float):
    for amount in amounts:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid amount: {amount}")
        if value > limit:
            raise ValidationError(f"Amount {amount} exceeds maximum of {limit:g} per transaction")


async def _build_swap_calls(container: VaultXContainer, user: str, params: Dict[str, Any]) -> List[Call]:
    enforce_spend_limit([params.get("amountIn", 0)], container.config.api.max_amount_per_tx)
    try:
        swap = SwapParams(
            token_in=params.get("tokenIn", ""),
            token_out=params.get("tokenOut", ""),
            amount_in=str(params.get("amountIn", "")),
            recipient=user,
            decimals_in=int(params.get("decimalsIn", 6)),
            decimals_out=int(params.get("decimalsOut", 6)),
            slippage=float(params.get("slippage", 0.5)),
            deadline_minutes=int(params.get("deadline", 30)),
            fee=int(params.get("fee", container.config.contracts.swap_fee_tier)),
        )
    except (TypeError, ValueError):
        raise ValidationError("Invalid swap params")
    result = await container.swaps.build_swap_calls_with_quote(swap)
    return result.calls


@router.post("/execute-offline")
async def execute_offline(request: OfflineExecuteRequest, container: VaultXContainer = Depends(get_container)):
    """
    Execute a borrow or swap for a user who is not present.

    Request body:
        {"type": "borrow" | "swap", "userAddress": "0x...", "params": {...}}
    """
    if not request.type or not request.userAddress:
        raise ValidationError("Missing type or userAddress")

    user = request.userAddress
    audit = container.audit

    try:
        await container.offline_limiter.check(user)
    except RateLimitError:
        await audit.record(AuditEvent.RATE_LIMITED, user, request.type)
        raise

    try:
        if request.type == "borrow":
            try:
                params = BorrowParams(**request.params)
            except SchemaError as e:
                raise ValidationError("Invalid borrow params", {"errors": e.errors()})
            enforce_spend_limit(params.amounts(), container.config.api.max_amount_per_tx)
            calls = await build_borrow_calls(container, user, params)
        elif request.type == "swap":
            calls = await _build_swap_calls(container, user, request.params)
        else:
            raise ValidationError("Invalid type")

        if not calls:
            raise ValidationError("No actions to execute")

        result = await container.orchestrator.execute_autonomous(user, calls)

    except PolicyViolationError as e:
        await audit.record(AuditEvent.POLICY_VIOLATION, user, request.type, error=e.reason)
        raise
    except VaultXError as e:
        await audit.record(AuditEvent.OFFLINE_EXECUTION_FAILED, user, request.type, error=e.message)
        raise

    await audit.record(
        AuditEvent.OFFLINE_EXECUTION, user, request.type,
        txHash=result.tx_hash, userOpHash=result.user_op_hash, calls=len(calls),
    )
    logger.info(f"[AARouter] Offline {request.type} for {user[:10]}...: {result.tx_hash}")
    return result.to_wire()
