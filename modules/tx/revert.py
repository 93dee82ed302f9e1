from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from eth_abi.exceptions import DecodingError

from modules.chain import ChainClient, Receipt
from modules.chain.abi import (
    TAKE_ORDER_V2_TOPIC,
    DecodedError,
    decode_arb_take_orders,
    decode_revert_data,
    decode_take_order_event,
)
from modules.common import log_event, sleep_until
from modules.rpc import RpcError

OUT_OF_GAS_RATIO_PERCENT = 98
KNOWN_ERROR_MARKERS = (
    "unknown sender",
    "minimumsenderoutput",
    "minimum sender output",
    "minimaloutputbalanceviolation",
)


@dataclass(frozen=True, slots=True)
class RevertDiagnosis:
    reason: str
    infrastructure_error: bool
    decoded: DecodedError | None = None
    gas_issue: bool = False
    known_error: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "infrastructure_error": self.infrastructure_error,
            "decoded": self.decoded.describe() if self.decoded else None,
            "gas_issue": self.gas_issue,
            "known_error": self.known_error,
            **self.details,
        }


def is_known_error(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in KNOWN_ERROR_MARKERS)


def check_gas_issue(receipt: Receipt, *, tx_gas: int, signer_balance: int) -> str | None:
    if signer_balance < receipt.gas_cost:
        return "account ran out of gas for transaction gas cost"
    if tx_gas > 0 and receipt.gas_used * 100 >= tx_gas * OUT_OF_GAS_RATIO_PERCENT:
        return "transaction ran out of specified gas"
    return None


class RevertDiagnoser:
    """Replays a reverted transaction to recover why it failed."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: ChainClient,
        fallback_window_seconds: float = 90.0,
    ) -> None:
        self._logger = logger
        self._client = client
        self._fallback_window_seconds = max(0.0, fallback_window_seconds)

    async def diagnose(
        self,
        *,
        receipt: Receipt,
        tx: dict[str, Any],
        signer_balance: int,
        sent_at: float,
        orderbook: str | None = None,
    ) -> RevertDiagnosis:
        gas_issue = check_gas_issue(receipt, tx_gas=int(tx.get("gas") or 0), signer_balance=signer_balance)
        if gas_issue is not None:
            return RevertDiagnosis(gas_issue, infrastructure_error=False, gas_issue=True)

        diagnosis = await self._simulate(receipt, tx, orderbook)
        if diagnosis is not None:
            return diagnosis

        # nodes lagging behind the mined block can replay successfully; try once more later
        await sleep_until(sent_at + self._fallback_window_seconds)
        diagnosis = await self._simulate(receipt, tx, orderbook)
        if diagnosis is not None:
            return diagnosis

        log_event(
            self._logger,
            level="warning",
            event="revert_reason_not_found",
            message="Re-simulation of reverted transaction succeeded; no reason recovered",
            tx_hash=receipt.transaction_hash,
            block_number=receipt.block_number,
        )
        return RevertDiagnosis(
            "simulation failed to find the revert reason",
            infrastructure_error=True,
        )

    async def find_frontrun(self, receipt: Receipt, tx: dict[str, Any], orderbook: str) -> str | None:
        """Hash of an earlier transaction in the same block that took the same order config."""
        if not receipt.block_hash:
            return None
        try:
            take_orders = decode_arb_take_orders(tx.get("data") or b"")
        except DecodingError:
            return None
        if not take_orders:
            return None

        logs = await self._client.get_logs(
            address=orderbook,
            topics=[TAKE_ORDER_V2_TOPIC],
            block_hash=receipt.block_hash,
        )
        own_hash = receipt.transaction_hash.lower()
        for log in logs:
            if log.transaction_index >= receipt.transaction_index or log.transaction_hash == own_hash:
                continue
            try:
                _, config, _, _ = decode_take_order_event(log.data)
            except DecodingError:
                continue
            if config == take_orders[0]:
                return log.transaction_hash
        return None

    async def _frontrun_details(self, receipt: Receipt, tx: dict[str, Any], orderbook: str | None) -> dict[str, Any]:
        if not orderbook:
            return {}
        try:
            frontrun_hash = await self.find_frontrun(receipt, tx, orderbook)
        except RpcError as error:
            log_event(
                self._logger,
                level="debug",
                event="frontrun_check_failed",
                message="Could not read orderbook logs for the reverted block",
                tx_hash=receipt.transaction_hash,
                error=str(error),
            )
            return {}
        if frontrun_hash is None:
            return {}
        return {
            "frontrun_tx_hash": frontrun_hash,
            "frontrun": (
                f"current transaction with hash {receipt.transaction_hash} "
                f"has been actually frontrun by transaction with hash {frontrun_hash}"
            ),
        }

    async def _simulate(
        self,
        receipt: Receipt,
        tx: dict[str, Any],
        orderbook: str | None,
    ) -> RevertDiagnosis | None:
        call = {key: tx[key] for key in ("from", "to", "data", "gas", "gasPrice") if key in tx}
        try:
            await self._client.call(call, block=receipt.block_number)
        except RpcError as error:
            if not error.is_revert:
                return RevertDiagnosis(
                    str(error),
                    infrastructure_error=True,
                    details={"rpc_error": error.to_dict()},
                )
            decoded = decode_revert_data(error.data)
            reason = decoded.describe() if decoded else str(error)
            details = {"rpc_error": error.to_dict()}
            details.update(await self._frontrun_details(receipt, tx, orderbook))
            return RevertDiagnosis(
                reason,
                infrastructure_error=False,
                decoded=decoded,
                known_error=is_known_error(reason) or is_known_error(str(error)),
                details=details,
            )
        return None
