"""
Configuration Management for VaultX
Environment-based configuration with secrets handling

Features:
- Environment-based config (dev/staging/prod)
- Chain, contract and relayer settings
- Monitor / rebalance tuning knobs
- Secrets management (never logged)
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("Config")


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).lower() in ("1", "true", "yes")


@dataclass
class ChainConfig:
    """Chain the agent operates on (Arbitrum One)"""
    chain_id: int = 42161
    rpc_url: str = "https://arb1.arbitrum.io/rpc"
    request_timeout: int = 30


@dataclass
class ContractsConfig:
    """Deployed contract addresses"""
    entry_point: str = "0x0000000071727De22E5E9d8BAf0edAc6f37da032"
    delegation_implementation: str = "0x00000000383e8cBe298514674Ea60Ee1d1de50ac"
    morpho: str = "0xBBBBBbbBBb9cC5e90e3b3Af64bdAF62C37EEFFCb"
    market_id: str = "0xb7843fe78e7e7fd3106a1b939645367967d1f986c2e45edb8932ad1896450877"
    migration_helper: str = "0x00A90cCAf7DACb39f29953691a0A8371038cF746"
    swap_router: str = "0xE592427A0AEce92De3Edee1F18E0157C05861564"
    quoter: str = "0xb27308f9F90D607463bb33eA1BeBb41C27CE5AB6"
    loan_token: str = "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9"        # USDT0
    collateral_token: str = "0x40461291347e1eCbb09499F3371D3f17f10d7159"  # XAUt0
    token_decimals: int = 6
    swap_fee_tier: int = 500


@dataclass
class RelayerConfig:
    """Account that pays for handleOps"""
    beneficiary: str = "0x3AC05161b76a35c1c28dC99Aa01BEd7B24cEA3bf"
    gas_buffer_percent: int = 20
    wait_for_receipt: bool = True
    receipt_timeout: int = 120


@dataclass
class RelayRetryPolicy:
    """
    Resubmission policy for handleOps.

    One attempt means no resubmission. Only transport failures are retried;
    reverts surface immediately.
    """
    max_attempts: int = 1
    delay_seconds: float = 2.0
    backoff: float = 2.0


@dataclass
class PrivyConfig:
    """Privy server wallet API"""
    api_url: str = "https://api.privy.io"
    app_id: str = ""
    wallet_id_ttl: int = 3600
    # Signer token bucket
    signs_per_second: float = 2.0
    burst: int = 5

    @property
    def enabled(self) -> bool:
        return bool(self.app_id)


@dataclass
class MonitorConfig:
    """Position monitor settings"""
    ltv_rebalance_threshold: float = 60.0
    migration_ltv_threshold: float = 70.0
    auto_migration_enabled: bool = False
    cooldown_seconds: int = 3600
    max_users_per_run: int = 10
    lease_ttl_seconds: int = 300
    interval_minutes: int = 5
    scheduler_enabled: bool = False
    executed_by: str = "vaultx-agent"


@dataclass
class RebalanceConfig:
    """Rebalance sizing"""
    fraction: float = 0.5
    slippage_percent: float = 2.0
    deadline_minutes: int = 5
    min_collateral: float = 0.00001
    min_borrow: float = 0.01
    min_withdraw: float = 0.000001
    max_rebalance_loan_units: float = 900.0
    safety_haircut: float = 0.99


@dataclass
class StorageConfig:
    """Audit / history / cooldown persistence"""
    backend: str = "memory"  # memory or supabase
    supabase_url: str = ""

    @property
    def use_supabase(self) -> bool:
        return self.backend == "supabase" and bool(self.supabase_url)


@dataclass
class ApiConfig:
    """HTTP surface limits"""
    max_amount_per_tx: float = 1000.0
    offline_requests_per_minute: int = 10
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@dataclass
class VaultXConfig:
    """Main application configuration"""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: str = "INFO"

    chain: ChainConfig = field(default_factory=ChainConfig)
    contracts: ContractsConfig = field(default_factory=ContractsConfig)
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    relay_retry: RelayRetryPolicy = field(default_factory=RelayRetryPolicy)
    privy: PrivyConfig = field(default_factory=PrivyConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    rebalance: RebalanceConfig = field(default_factory=RebalanceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    @classmethod
    def from_env(cls) -> "VaultXConfig":
        """Create configuration from environment variables"""
        env = os.environ.get("VAULTX_ENV", "development").lower()

        config = cls(
            environment=Environment(env) if env in [e.value for e in Environment] else Environment.DEVELOPMENT,
            debug=_env_bool("DEBUG", True),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

        config.chain = ChainConfig(
            chain_id=int(os.environ.get("CHAIN_ID", "42161")),
            rpc_url=os.environ.get("ARBITRUM_RPC_URL", ChainConfig.rpc_url),
        )

        contracts = ContractsConfig()
        overrides = {
            "entry_point": "ENTRY_POINT_ADDRESS",
            "delegation_implementation": "DELEGATION_IMPLEMENTATION",
            "migration_helper": "MIGRATION_HELPER_ADDRESS",
        }
        for attr, var in overrides.items():
            if os.environ.get(var):
                setattr(contracts, attr, os.environ[var])
        config.contracts = contracts

        config.relayer = RelayerConfig(
            beneficiary=os.environ.get("BENEFICIARY_ADDRESS", RelayerConfig.beneficiary),
            wait_for_receipt=_env_bool("RELAYER_WAIT_FOR_RECEIPT", True),
        )
        config.relay_retry = RelayRetryPolicy(
            max_attempts=max(1, int(os.environ.get("RELAY_MAX_ATTEMPTS", "1"))),
        )

        config.privy = PrivyConfig(
            app_id=os.environ.get("PRIVY_APP_ID", ""),
        )

        config.monitor = MonitorConfig(
            ltv_rebalance_threshold=float(os.environ.get("LTV_REBALANCE_THRESHOLD", "60")),
            migration_ltv_threshold=float(os.environ.get("MIGRATION_LTV_THRESHOLD", "70")),
            auto_migration_enabled=_env_bool("AUTO_MIGRATION_ENABLED", False),
            cooldown_seconds=int(os.environ.get("REBALANCE_COOLDOWN_SECONDS", "3600")),
            max_users_per_run=int(os.environ.get("MAX_USERS_PER_RUN", "10")),
            scheduler_enabled=_env_bool("MONITOR_SCHEDULER_ENABLED", False),
        )

        config.storage = StorageConfig(
            backend=os.environ.get("STORAGE_BACKEND", "memory"),
            supabase_url=os.environ.get("SUPABASE_URL", ""),
        )

        if config.environment == Environment.PRODUCTION:
            config.debug = False
            config.log_level = "WARNING" if config.log_level == "DEBUG" else config.log_level

        return config

    def to_dict(self) -> Dict:
        """Convert to dictionary (hiding secrets)"""
        def sanitize(obj):
            if isinstance(obj, dict):
                return {k: sanitize(v) for k, v in obj.items() if "secret" not in k.lower() and "key" not in k.lower()}
            elif hasattr(obj, '__dataclass_fields__'):
                return sanitize({k: getattr(obj, k) for k in obj.__dataclass_fields__})
            elif isinstance(obj, Enum):
                return obj.value
            else:
                return obj

        return sanitize(self)


# ============================================
# SECRETS MANAGEMENT
# ============================================

class SecretsManager:
    """
    Holds credentials read from the environment.
    Values are never logged or rendered by to_dict().
    """

    SECRET_KEYS = [
        "RELAYER_PRIVATE_KEY",      # NEVER log this!
        "PRIVY_APP_SECRET",
        "PRIVY_AUTHORIZATION_KEY",
        "SUPABASE_KEY",
        "CRON_SECRET",
    ]

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._secrets: Dict[str, str] = {}
        if values is None:
            self._load_from_env()
        else:
            self._secrets.update({k: v for k, v in values.items() if v})

    def _load_from_env(self):
        for key in self.SECRET_KEYS:
            value = os.environ.get(key)
            if value:
                self._secrets[key] = value

    def get(self, key: str, default: str = None) -> Optional[str]:
        return self._secrets.get(key, default)

    def set(self, key: str, value: str):
        """Set a secret value (runtime only)"""
        self._secrets[key] = value

    def has(self, key: str) -> bool:
        return key in self._secrets

    def __repr__(self) -> str:
        return f"SecretsManager(keys={sorted(self._secrets)})"


# ============================================
# GLOBAL INSTANCES
# ============================================

config = VaultXConfig.from_env()
secrets = SecretsManager()

logger.info(f"Configuration loaded for environment: {config.environment.value}")


def get_config() -> VaultXConfig:
    """Get the global configuration"""
    return config


def get_secrets() -> SecretsManager:
    """Get the secrets manager"""
    return secrets
