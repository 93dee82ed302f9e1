from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

from modules.chain.client import DEFAULT_MULTICALL_ADDRESS
from modules.solver import SolverConfig


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_list(value: Any) -> list[str]:
    if value is None:
        return []
    return [item.strip() for item in str(value).replace("\n", ",").split(",") if item.strip()]


def parse_owner_limits(value: Any) -> dict[str, int]:
    """``owner=limit`` pairs separated by commas; malformed entries are dropped."""
    limits: dict[str, int] = {}
    for item in to_list(value):
        owner, _, raw_limit = item.partition("=")
        limit = to_int(raw_limit, 0)
        if owner.strip() and limit > 0:
            limits[owner.strip().lower()] = limit
    return limits


def normalize_retries(value: Any) -> int:
    return min(3, max(1, to_int(value, 1)))


@dataclass(slots=True)
class AppSettings:
    rpc_urls: list[str]
    signer_private_keys: list[str] = field(repr=False)
    arb_address: str
    chain_id: int
    wrapped_native_token: str
    route_api_url: str
    orders_url: str
    multicall_address: str
    hops: int
    retries: int
    gas_coverage_percentage: int
    gas_limit_multiplier: int
    gas_price_multiplier: int
    max_ratio: bool
    shuffle: bool
    dry_run: bool
    round_interval_seconds: float
    round_timeout_seconds: float
    error_backoff_seconds: float
    order_sync_interval_seconds: float
    rpc_timeout_seconds: float
    route_requests_per_second: float
    receipt_timeout_seconds: float
    receipt_fallback_window_seconds: float
    receipt_poll_interval_seconds: float
    send_retry_backoff_seconds: float
    owner_limits: dict[str, int]
    log_level: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            rpc_urls=to_list(os.getenv("RPC_URLS")),
            signer_private_keys=to_list(os.getenv("SIGNER_PRIVATE_KEYS")),
            arb_address=os.getenv("ARB_ADDRESS", "").strip().lower(),
            chain_id=max(1, to_int(os.getenv("CHAIN_ID"), 1)),
            wrapped_native_token=os.getenv("WRAPPED_NATIVE_TOKEN", "").strip().lower(),
            route_api_url=os.getenv("ROUTE_API_URL", "").strip(),
            orders_url=os.getenv("ORDERS_URL", "").strip(),
            multicall_address=os.getenv("MULTICALL_ADDRESS", DEFAULT_MULTICALL_ADDRESS).strip().lower(),
            hops=max(1, to_int(os.getenv("HOPS"), 7)),
            retries=normalize_retries(os.getenv("RETRIES")),
            gas_coverage_percentage=max(0, to_int(os.getenv("GAS_COVERAGE_PERCENTAGE"), 100)),
            gas_limit_multiplier=max(1, to_int(os.getenv("GAS_LIMIT_MULTIPLIER"), 103)),
            gas_price_multiplier=max(1, to_int(os.getenv("GAS_PRICE_MULTIPLIER"), 107)),
            max_ratio=to_bool(os.getenv("MAX_RATIO"), False),
            shuffle=to_bool(os.getenv("SHUFFLE"), True),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            round_interval_seconds=max(0.0, to_float(os.getenv("ROUND_INTERVAL_SECONDS"), 10.0)),
            round_timeout_seconds=max(0.0, to_float(os.getenv("ROUND_TIMEOUT_SECONDS"), 0.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 5.0)),
            order_sync_interval_seconds=max(
                1.0,
                to_float(os.getenv("ORDER_SYNC_INTERVAL_SECONDS"), 60.0),
            ),
            rpc_timeout_seconds=max(0.5, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 10.0)),
            route_requests_per_second=max(
                0.1,
                to_float(os.getenv("ROUTE_REQUESTS_PER_SECOND"), 10.0),
            ),
            receipt_timeout_seconds=max(
                1.0,
                to_float(os.getenv("RECEIPT_TIMEOUT_SECONDS"), 120.0),
            ),
            receipt_fallback_window_seconds=max(
                0.0,
                to_float(os.getenv("RECEIPT_FALLBACK_WINDOW_SECONDS"), 90.0),
            ),
            receipt_poll_interval_seconds=max(
                0.1,
                to_float(os.getenv("RECEIPT_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            send_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("SEND_RETRY_BACKOFF_SECONDS"), 5.0),
            ),
            owner_limits=parse_owner_limits(os.getenv("OWNER_LIMITS")),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        )

    def validate(self) -> None:
        missing = [
            name
            for name, value in (
                ("RPC_URLS", self.rpc_urls),
                ("SIGNER_PRIVATE_KEYS", self.signer_private_keys),
                ("ARB_ADDRESS", self.arb_address),
                ("WRAPPED_NATIVE_TOKEN", self.wrapped_native_token),
                ("ROUTE_API_URL", self.route_api_url),
                ("ORDERS_URL", self.orders_url),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")

    def solver_config(self) -> SolverConfig:
        return SolverConfig(
            chain_id=self.chain_id,
            arb_address=self.arb_address,
            native_token=self.wrapped_native_token,
            hops=self.hops,
            retries=self.retries,
            gas_coverage_percentage=self.gas_coverage_percentage,
            gas_limit_multiplier=self.gas_limit_multiplier,
            gas_price_multiplier=self.gas_price_multiplier,
            max_ratio=self.max_ratio,
            dry_run=self.dry_run,
        )
