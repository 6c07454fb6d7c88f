"""
Rebalance Service - deleverage an over-extended Morpho position

Calibrated to the XAUt0/USDT0 market on Arbitrum (LLTV 77%). When LTV
crosses the monitor threshold the agent:

1. Withdraws a fraction of the safely withdrawable collateral
2. Swaps it to the loan token on Uniswap V3 (2% slippage, 5 min deadline)
3. Repays debt with the swap's guaranteed minimum output

All three steps go out as one atomic user operation.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from account_abstraction.encoding import Call
from data_sources.morpho import PositionSnapshot
from infrastructure.config import RebalanceConfig
from infrastructure.errors import ValidationError
from services.borrow_service import MorphoCallBuilder
from services.position_math import from_units, to_units
from services.swap_service import SwapBuilder, SwapParams

logger = logging.getLogger("RebalanceService")


@dataclass(frozen=True)
class RebalanceAmount:
    withdraw_amount: float
    error: Optional[str] = None


def calculate_rebalance_amount(
    collateral: float,
    debt: float,
    oracle_price: float,
    lltv: float,
    max_withdrawable: float,
    fraction: float = 0.5,
    config: Optional[RebalanceConfig] = None,
) -> RebalanceAmount:
    """
    How much collateral to pull out for one rebalance.

    Half of the safe withdrawal room (after a 1% haircut), capped so the swap
    stays under the per-transaction value limit.
    """
    cfg = config or RebalanceConfig()

    if collateral < cfg.min_collateral:
        return RebalanceAmount(0.0, "Collateral too small to rebalance")
    if debt < cfg.min_borrow:
        return RebalanceAmount(0.0, "Borrow too small to rebalance")
    if max_withdrawable < cfg.min_withdraw:
        return RebalanceAmount(0.0, "No safe withdrawal room available")

    safe_max = max_withdrawable * cfg.safety_haircut
    withdraw_amount = safe_max * fraction

    if withdraw_amount < cfg.min_withdraw:
        return RebalanceAmount(0.0, "Calculated withdrawal too small")

    if oracle_price > 0 and withdraw_amount * oracle_price > cfg.max_rebalance_loan_units:
        withdraw_amount = cfg.max_rebalance_loan_units / oracle_price

    return RebalanceAmount(withdraw_amount)


@dataclass
class RebalanceCalculation:
    withdraw_amount: float
    estimated_loan_out: float
    repay_amount: float
    current_ltv: float
    estimated_new_ltv: float
    current_collateral: float
    current_debt: float
    oracle_price: float
    max_withdrawable: float

    def to_dict(self) -> dict:
        return {
            "withdrawAmountXAUT": self.withdraw_amount,
            "estimatedUSDTOut": self.estimated_loan_out,
            "repayAmountUSDT": self.repay_amount,
            "currentLTV": self.current_ltv,
            "estimatedNewLTV": self.estimated_new_ltv,
            "currentCollateral": self.current_collateral,
            "currentBorrow": self.current_debt,
            "oraclePrice": self.oracle_price,
            "maxWithdrawable": self.max_withdrawable,
        }


@dataclass
class RebalancePlan:
    calls: List[Call]
    calculation: RebalanceCalculation
    kind: str = field(default="rebalance", init=False)


class RebalancePlanner:
    """Turns a fresh snapshot into withdraw -> swap -> repay calls."""

    def __init__(
        self,
        morpho: str,
        swaps: SwapBuilder,
        swap_fee: int = 500,
        decimals: int = 6,
        config: Optional[RebalanceConfig] = None,
    ):
        self.morpho = morpho
        self.swaps = swaps
        self.swap_fee = swap_fee
        self.decimals = decimals
        self.config = config or RebalanceConfig()

    async def build_rebalance_calls(
        self,
        snapshot: PositionSnapshot,
        fraction: Optional[float] = None,
    ) -> RebalancePlan:
        fraction = self.config.fraction if fraction is None else fraction
        metrics = snapshot.metrics

        amount = calculate_rebalance_amount(
            snapshot.collateral,
            snapshot.debt,
            snapshot.oracle_price,
            snapshot.lltv,
            metrics.max_withdrawable,
            fraction,
            self.config,
        )
        if amount.error or amount.withdraw_amount <= 0:
            raise ValidationError(amount.error or "Cannot calculate rebalance amount")

        params = snapshot.market_params
        user = snapshot.wallet
        morpho_calls = MorphoCallBuilder(
            morpho=self.morpho,
            market_params=params,
            loan_token=params.loan_token,
            collateral_token=params.collateral_token,
            decimals=self.decimals,
        )

        withdraw_raw = from_units(amount.withdraw_amount, self.decimals)
        if withdraw_raw <= 0:
            raise ValidationError("Calculated withdrawal too small")
        withdraw_amount = to_units(withdraw_raw, self.decimals)

        # 1. Withdraw collateral
        calls: List[Call] = [morpho_calls.withdraw_collateral(withdraw_raw, user)]

        # 2. Swap collateral -> loan token
        swap = await self.swaps.build_swap_calls_with_quote(SwapParams(
            token_in=params.collateral_token,
            token_out=params.loan_token,
            amount_in=f"{withdraw_amount:.{self.decimals}f}",
            recipient=user,
            decimals_in=self.decimals,
            decimals_out=self.decimals,
            slippage=self.config.slippage_percent,
            deadline_minutes=self.config.deadline_minutes,
            fee=self.swap_fee,
        ))
        calls.extend(swap.calls)

        # 3. Repay with the guaranteed minimum
        calls.extend(morpho_calls.build_repay_raw(swap.amount_out_minimum, user))

        estimated_out = swap.quote.amount_out
        new_collateral = snapshot.collateral - withdraw_amount
        new_debt = snapshot.debt - estimated_out
        estimated_new_ltv = (
            new_debt / (new_collateral * snapshot.oracle_price) * 100
            if new_collateral > 0 and snapshot.oracle_price > 0 else 0.0
        )

        calculation = RebalanceCalculation(
            withdraw_amount=withdraw_amount,
            estimated_loan_out=estimated_out,
            repay_amount=to_units(swap.amount_out_minimum, self.decimals),
            current_ltv=metrics.current_ltv,
            estimated_new_ltv=estimated_new_ltv,
            current_collateral=snapshot.collateral,
            current_debt=snapshot.debt,
            oracle_price=snapshot.oracle_price,
            max_withdrawable=metrics.max_withdrawable,
        )

        logger.info(
            f"[RebalanceService] {user[:10]}... withdraw {withdraw_amount:.6f} "
            f"LTV {metrics.current_ltv:.2f}% -> ~{estimated_new_ltv:.2f}% ({len(calls)} calls)"
        )
        return RebalancePlan(calls=calls, calculation=calculation)
