"""
VaultX Agents

- security_policy.py: call allowlist checked before any signature
- execution_orchestrator.py: prepare -> sign -> submit state machine
- position_monitor.py: autonomous rebalancing of over-leveraged positions
"""

from .security_policy import PolicyEngine, PolicyAllowlist, AllowlistRule, build_default_allowlist
from .execution_orchestrator import ExecutionOrchestrator, Execution, ExecutionState, ExecutionResult
from .position_monitor import PositionMonitor, MonitorSummary, PositionStatus

__all__ = [
    # Policy
    "PolicyEngine",
    "PolicyAllowlist",
    "AllowlistRule",
    "build_default_allowlist",

    # Execution
    "ExecutionOrchestrator",
    "Execution",
    "ExecutionState",
    "ExecutionResult",

    # Monitor
    "PositionMonitor",
    "MonitorSummary",
    "PositionStatus",
]
