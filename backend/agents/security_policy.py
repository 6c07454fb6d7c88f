"""
Security Policy Module - call allowlist enforced before any signature

The policy engine is the only thing standing between an autonomous plan and
the custodial key, so it is deliberately small:

1. Call count limit - at least one call, at most MAX_CALLS_PER_OP
2. Native value limit - no ETH transfers
3. Contract allowlist - only known DeFi contracts
4. Function selector allowlist - only known functions per contract
5. Spender allowlist - approve / setAuthorization may only name known parties

The allowlist is built once at startup and never mutated.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from web3 import Web3

from account_abstraction.encoding import selector
from infrastructure.errors import PolicyViolationError

logger = logging.getLogger("SecurityPolicy")

MAX_CALLS_PER_OP = 10

SELECTORS = {
    # ERC20
    "approve": selector("approve(address,uint256)"),
    # Morpho Blue
    "supplyCollateral": selector("supplyCollateral((address,address,address,address,uint256),uint256,address,bytes)"),
    "borrow": selector("borrow((address,address,address,address,uint256),uint256,uint256,address,address)"),
    "repay": selector("repay((address,address,address,address,uint256),uint256,uint256,address,bytes)"),
    "withdrawCollateral": selector("withdrawCollateral((address,address,address,address,uint256),uint256,address,address)"),
    "setAuthorization": selector("setAuthorization(address,bool)"),
    # Uniswap V3 SwapRouter
    "exactInputSingle": selector("exactInputSingle((address,address,uint24,address,uint256,uint256,uint256,uint160))"),
    # Morpho -> Fluid migration helper
    "migrate": selector(
        "migrate((address,(address,address,address,address,uint256),uint256,uint256,uint256,uint256,uint256))"
    ),
}

# Selectors whose first argument names a party that gains rights over funds
SPENDER_SELECTORS = frozenset({SELECTORS["approve"], SELECTORS["setAuthorization"]})


@dataclass(frozen=True)
class AllowlistRule:
    """What may be called on one contract."""
    address: str
    name: str
    selectors: FrozenSet[str]
    allowed_spenders: Optional[FrozenSet[str]] = None

    def __post_init__(self):
        object.__setattr__(self, "address", Web3.to_checksum_address(self.address))
        object.__setattr__(self, "selectors", frozenset(s.lower() for s in self.selectors))
        if self.allowed_spenders is not None:
            object.__setattr__(
                self,
                "allowed_spenders",
                frozenset(Web3.to_checksum_address(s) for s in self.allowed_spenders),
            )


class PolicyAllowlist:
    """Immutable address -> rule mapping."""

    def __init__(self, rules: Iterable[AllowlistRule]):
        by_address: Dict[str, AllowlistRule] = {}
        for rule in rules:
            if rule.address in by_address:
                raise ValueError(f"Duplicate allowlist rule for {rule.address}")
            by_address[rule.address] = rule
        self._rules = MappingProxyType(by_address)

    @property
    def rules(self) -> Mapping[str, AllowlistRule]:
        return self._rules

    def get(self, address: str) -> Optional[AllowlistRule]:
        try:
            return self._rules.get(Web3.to_checksum_address(address))
        except (TypeError, ValueError):
            return None

    def __len__(self) -> int:
        return len(self._rules)

    def __contains__(self, address: str) -> bool:
        return self.get(address) is not None


@dataclass(frozen=True)
class PolicyResult:
    valid: bool
    error: Optional[str] = None


OK = PolicyResult(valid=True)


def _field(call: Any, name: str, default=None):
    if isinstance(call, Mapping):
        return call.get(name, default)
    return getattr(call, name, default)


class PolicyEngine:
    """
    Validates call batches against the allowlist.

    Pure and stateless: the same calls always produce the same result.
    """

    def __init__(self, allowlist: PolicyAllowlist, max_calls: int = MAX_CALLS_PER_OP):
        self.allowlist = allowlist
        self.max_calls = max_calls

    def validate(self, calls: Sequence[Any]) -> PolicyResult:
        if not calls:
            return PolicyResult(False, "Empty call array")

        if len(calls) > self.max_calls:
            return PolicyResult(False, f"Too many calls ({len(calls)}). Maximum is {self.max_calls}")

        for i, call in enumerate(calls):
            result = self._validate_single(call, i)
            if not result.valid:
                return result

        return OK

    def ensure_valid(self, calls: Sequence[Any]) -> None:
        """Raise PolicyViolationError when ``calls`` fail validation."""
        result = self.validate(calls)
        if not result.valid:
            logger.warning(f"[SecurityPolicy] Rejected {len(calls)} call(s): {result.error}")
            raise PolicyViolationError(result.error, {"calls": len(calls)})

    def _validate_single(self, call: Any, index: int) -> PolicyResult:
        prefix = f"Call[{index}]"

        # 1. Native value
        raw_value = _field(call, "value", 0) or 0
        try:
            value = int(raw_value)
        except (TypeError, ValueError):
            return PolicyResult(False, f"{prefix}: Invalid value {raw_value!r}")
        if value != 0:
            return PolicyResult(False, f"{prefix}: Native ETH transfers not allowed (value: {value})")

        # 2. Contract allowlist
        to = _field(call, "to")
        rule = self.allowlist.get(to) if to else None
        if rule is None:
            return PolicyResult(False, f"{prefix}: Contract {to} is not in the allowlist")

        # 3. Function selector
        data = _field(call, "data")
        if not isinstance(data, str) or not data.startswith("0x") or len(data) < 10:
            return PolicyResult(False, f"{prefix}: Missing or invalid calldata for {rule.name}")

        fn_selector = data[:10].lower()
        if fn_selector not in rule.selectors:
            return PolicyResult(False, f"{prefix}: Function selector {fn_selector} not allowed on {rule.name}")

        # 4. Spender-style first argument
        if fn_selector in SPENDER_SELECTORS and rule.allowed_spenders is not None:
            return self._validate_spender(data, rule, prefix)

        return OK

    @staticmethod
    def _validate_spender(data: str, rule: AllowlistRule, prefix: str) -> PolicyResult:
        # 0x + 8 selector chars + 64 chars for the first word
        if len(data) < 74:
            return PolicyResult(False, f"{prefix}: Invalid approve calldata on {rule.name}")

        word = data[10:74]
        if word[:24] != "0" * 24:
            return PolicyResult(False, f"{prefix}: Invalid spender address in approve call on {rule.name}")

        try:
            spender = Web3.to_checksum_address("0x" + word[24:])
        except ValueError:
            return PolicyResult(False, f"{prefix}: Invalid spender address in approve call on {rule.name}")

        if spender not in rule.allowed_spenders:
            return PolicyResult(False, f"{prefix}: Approve spender {spender} not allowed on {rule.name}")

        return OK


# ============================================
# DEFAULT ALLOWLIST
# ============================================

def build_default_allowlist(contracts) -> PolicyAllowlist:
    """Allowlist for the Morpho XAUt0/USDT0 market on Arbitrum."""
    morpho = contracts.morpho
    router = contracts.swap_router
    helper = contracts.migration_helper

    token_spenders = frozenset({morpho, router})

    rules: List[AllowlistRule] = [
        AllowlistRule(
            address=morpho,
            name="Morpho Blue",
            selectors=frozenset({
                SELECTORS["supplyCollateral"],
                SELECTORS["borrow"],
                SELECTORS["repay"],
                SELECTORS["withdrawCollateral"],
                SELECTORS["setAuthorization"],
            }),
            # setAuthorization may only name the migration helper
            allowed_spenders=frozenset({helper}),
        ),
        AllowlistRule(
            address=router,
            name="Uniswap V3 Router",
            selectors=frozenset({SELECTORS["exactInputSingle"]}),
        ),
        AllowlistRule(
            address=helper,
            name="Migration Helper",
            selectors=frozenset({SELECTORS["migrate"]}),
        ),
        AllowlistRule(
            address=contracts.loan_token,
            name="USDT",
            selectors=frozenset({SELECTORS["approve"]}),
            allowed_spenders=token_spenders,
        ),
        AllowlistRule(
            address=contracts.collateral_token,
            name="XAUt",
            selectors=frozenset({SELECTORS["approve"]}),
            allowed_spenders=token_spenders,
        ),
    ]
    return PolicyAllowlist(rules)

