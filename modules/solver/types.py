from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class DryrunHaltReason(str, Enum):
    NO_OPPORTUNITY = "no_opportunity"
    NO_WALLET_FUND = "no_wallet_fund"
    NO_ROUTE = "no_route"


class ProcessPairStatus(str, Enum):
    ZERO_OUTPUT = "zero_output"
    NO_OPPORTUNITY = "no_opportunity"
    FOUND_OPPORTUNITY = "found_opportunity"


class ProcessPairHaltReason(str, Enum):
    FAILED_TO_QUOTE = "failed_to_quote"
    FAILED_TO_GET_GAS_PRICE = "failed_to_get_gas_price"
    FAILED_TO_GET_ETH_PRICE = "failed_to_get_eth_price"
    FAILED_TO_GET_POOLS = "failed_to_get_pools"
    NO_WALLET_FUND = "no_wallet_fund"
    TX_FAILED = "tx_failed"
    TX_MINE_FAILED = "tx_mine_failed"
    TX_REVERTED = "tx_reverted"
    UNEXPECTED_ERROR = "unexpected_error"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


HALT_SEVERITY: dict[ProcessPairHaltReason, ErrorSeverity] = {
    ProcessPairHaltReason.FAILED_TO_QUOTE: ErrorSeverity.LOW,
    ProcessPairHaltReason.FAILED_TO_GET_GAS_PRICE: ErrorSeverity.MEDIUM,
    ProcessPairHaltReason.FAILED_TO_GET_ETH_PRICE: ErrorSeverity.MEDIUM,
    ProcessPairHaltReason.FAILED_TO_GET_POOLS: ErrorSeverity.MEDIUM,
    ProcessPairHaltReason.NO_WALLET_FUND: ErrorSeverity.HIGH,
    ProcessPairHaltReason.TX_FAILED: ErrorSeverity.HIGH,
    ProcessPairHaltReason.TX_MINE_FAILED: ErrorSeverity.MEDIUM,
    ProcessPairHaltReason.TX_REVERTED: ErrorSeverity.HIGH,
    ProcessPairHaltReason.UNEXPECTED_ERROR: ErrorSeverity.HIGH,
}

SEVERITY_LOG_LEVEL = {
    ErrorSeverity.LOW: "info",
    ErrorSeverity.MEDIUM: "warning",
    ErrorSeverity.HIGH: "error",
}


class DryrunFailure(RuntimeError):
    def __init__(self, reason: DryrunHaltReason, attributes: dict[str, Any] | None = None) -> None:
        super().__init__(reason.value)
        self.reason = reason
        self.attributes = attributes or {}


@dataclass(frozen=True, slots=True)
class OppResult:
    raw_tx: dict[str, Any]
    maximum_input: int
    gas_cost_in_token: int
    estimated_profit: int
    block_number: int
    price: int
    mode: str
    gas_limit: int = 0
    route_visual: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("raw_tx")
        return payload


@dataclass(frozen=True, slots=True)
class ProcessPairResult:
    status: ProcessPairStatus
    report: dict[str, Any]
    reason: ProcessPairHaltReason | None = None
    error: str | None = None
    gas_cost: int | None = None
    cleared: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> ErrorSeverity | None:
        if self.reason is None:
            return None
        return HALT_SEVERITY.get(self.reason, ErrorSeverity.HIGH)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "gas_cost": self.gas_cost,
            "cleared": self.cleared,
            "report": self.report,
            "attributes": self.attributes,
        }


@dataclass(frozen=True, slots=True)
class SolverConfig:
    chain_id: int
    arb_address: str
    native_token: str
    hops: int = 7
    retries: int = 1
    gas_coverage_percentage: int = 100
    gas_limit_multiplier: int = 103
    gas_price_multiplier: int = 107
    max_ratio: bool = False
    dry_run: bool = False
