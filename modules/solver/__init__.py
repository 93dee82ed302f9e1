from .modes import MODE_BUILDERS, TakeOrderMode, build_take_orders, modes_for_retries
from .optimizer import DryrunContext, Optimizer, gas_cost_in_buy_token, minimum_sender_output
from .types import (
    HALT_SEVERITY,
    SEVERITY_LOG_LEVEL,
    DryrunFailure,
    DryrunHaltReason,
    ErrorSeverity,
    OppResult,
    ProcessPairHaltReason,
    ProcessPairResult,
    ProcessPairStatus,
    SolverConfig,
)

__all__ = [
    "DryrunContext",
    "DryrunFailure",
    "DryrunHaltReason",
    "ErrorSeverity",
    "HALT_SEVERITY",
    "MODE_BUILDERS",
    "OppResult",
    "Optimizer",
    "ProcessPairHaltReason",
    "ProcessPairResult",
    "ProcessPairStatus",
    "SEVERITY_LOG_LEVEL",
    "SolverConfig",
    "TakeOrderMode",
    "build_take_orders",
    "gas_cost_in_buy_token",
    "minimum_sender_output",
    "modes_for_retries",
]
