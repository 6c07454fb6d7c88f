"""
Position math for Morpho Blue markets.

Amounts here are human units (floats); raw on-chain integers are converted
at the edges with to_units / from_units.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP


def to_units(raw: int, decimals: int) -> float:
    return raw / 10 ** decimals


def from_units(amount: float, decimals: int) -> int:
    """Human amount -> raw integer, truncating below the token's precision."""
    quantum = Decimal(1).scaleb(-decimals)
    return int((Decimal(str(amount)).quantize(quantum, rounding=ROUND_DOWN)).scaleb(decimals))


def round_units(amount: float, decimals: int) -> int:
    """Human amount -> raw integer, rounded half-up to the token's precision."""
    quantum = Decimal(1).scaleb(-decimals)
    return int((Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP)).scaleb(decimals))


def borrow_assets_from_shares(borrow_shares: int, total_borrow_assets: int,
                              total_borrow_shares: int, decimals: int = 6) -> float:
    if total_borrow_shares == 0 or borrow_shares == 0:
        return 0.0
    return borrow_shares * total_borrow_assets / total_borrow_shares / 10 ** decimals


def lltv_percent(lltv_raw: int) -> float:
    """LLTV is stored as a WAD fraction."""
    return lltv_raw / 1e18 * 100


def oracle_price_to_float(raw_price: int, scale: int = 36) -> float:
    return raw_price / 10 ** scale


@dataclass(frozen=True)
class PositionMetrics:
    current_ltv: float
    max_withdrawable: float
    liquidation_price: float
    percent_drop_to_liquidation: float


def compute_position_metrics(collateral: float, borrow: float,
                             oracle_price: float, lltv: float) -> PositionMetrics:
    """
    ``lltv`` is a percentage (e.g. 77.0), ``oracle_price`` is loan units per
    collateral unit.
    """
    current_ltv = (
        borrow / (collateral * oracle_price) * 100
        if collateral > 0 and oracle_price > 0 else 0.0
    )

    if borrow > 0 and oracle_price > 0 and lltv > 0:
        max_withdrawable = max(0.0, collateral - borrow / (oracle_price * (lltv / 100)))
    else:
        max_withdrawable = collateral

    liquidation_price = (
        borrow / (collateral * (lltv / 100))
        if collateral > 0 and lltv > 0 else 0.0
    )

    percent_drop = (
        (oracle_price - liquidation_price) / oracle_price * 100
        if oracle_price > 0 and liquidation_price > 0 else 0.0
    )

    return PositionMetrics(
        current_ltv=current_ltv,
        max_withdrawable=max_withdrawable,
        liquidation_price=liquidation_price,
        percent_drop_to_liquidation=percent_drop,
    )


def market_metrics(total_supply_assets: int, total_borrow_assets: int, decimals: int = 6) -> dict:
    borrowed = total_borrow_assets / 10 ** decimals
    liquidity = (total_supply_assets - total_borrow_assets) / 10 ** decimals
    utilization = (
        f"{total_borrow_assets / total_supply_assets * 100:.2f}%"
        if total_supply_assets > 0 else "0.00%"
    )
    return {
        "borrowedFunds": borrowed,
        "marketLiquidity": liquidity,
        "totalMarketSize": borrowed + liquidity,
        "utilization": utilization,
    }
