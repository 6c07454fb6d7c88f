"""
VaultX Infrastructure Module
Configuration, errors, persistence and rate limiting shared by every layer
"""

from .errors import (
    VaultXError,
    ValidationError,
    PolicyViolationError,
    SimulationError,
    SigningError,
    RelayError,
    PersistenceError,
    ExternalAPIError,
    UnauthorizedError,
    RateLimitError,
    InvalidTransitionError,
    ErrorCode,
    ErrorTracker,
    error_tracker,
    call_with_retry,
    register_exception_handlers,
)

from .config import (
    VaultXConfig,
    Environment,
    SecretsManager,
    config,
    secrets,
    get_config,
    get_secrets,
)

from .store import (
    KeyedStore,
    InMemoryKeyedStore,
    WalletLease,
    CooldownLedger,
)

__all__ = [
    # Errors
    "VaultXError",
    "ValidationError",
    "PolicyViolationError",
    "SimulationError",
    "SigningError",
    "RelayError",
    "PersistenceError",
    "ExternalAPIError",
    "UnauthorizedError",
    "RateLimitError",
    "InvalidTransitionError",
    "ErrorCode",
    "ErrorTracker",
    "error_tracker",
    "call_with_retry",
    "register_exception_handlers",

    # Config
    "VaultXConfig",
    "Environment",
    "SecretsManager",
    "config",
    "secrets",
    "get_config",
    "get_secrets",

    # Keyed store
    "KeyedStore",
    "InMemoryKeyedStore",
    "WalletLease",
    "CooldownLedger",
]
