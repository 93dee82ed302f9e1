from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from modules.chain import ChainClient, Receipt, ReceiptTimeoutError
from modules.common import log_event, sleep_until
from modules.orders import BundledOrders
from modules.rpc import RpcError
from modules.signer import SignerAccount, SignerPool
from modules.solver.types import (
    OppResult,
    ProcessPairHaltReason,
    ProcessPairResult,
    ProcessPairStatus,
)

from .income import get_income, get_total_income
from .revert import RevertDiagnoser


class SubmitFailedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


@dataclass(frozen=True, slots=True)
class SettlementContext:
    bundle: BundledOrders
    buy_native_price: int
    sell_native_price: int
    report: dict[str, Any] = field(default_factory=dict)


class TxLifecycle:
    """Built -> Submitted -> Confirmed | Reverted | SubmitFailed | ReceiptTimeout.

    The signer is held only while its nonce is read and the transaction is
    sent. Receipt handling runs as a separate task so the signer can serve
    other pairs meanwhile.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: ChainClient,
        signer_pool: SignerPool,
        diagnoser: RevertDiagnoser,
        chain_id: int,
        send_retry_backoff_seconds: float = 5.0,
        receipt_timeout_seconds: float = 120.0,
        fallback_window_seconds: float = 90.0,
        confirmations: int = 1,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._logger = logger
        self._client = client
        self._signer_pool = signer_pool
        self._diagnoser = diagnoser
        self._chain_id = chain_id
        self._send_retry_backoff_seconds = max(0.0, send_retry_backoff_seconds)
        self._receipt_timeout_seconds = max(0.0, receipt_timeout_seconds)
        self._fallback_window_seconds = max(0.0, fallback_window_seconds)
        self._confirmations = max(1, confirmations)
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    async def _send_once(self, signer: SignerAccount, tx: dict[str, Any]) -> str:
        async with self._signer_pool.lease([signer]) as account:
            nonce = await self._client.get_transaction_count(account.address, "latest")
            payload = {key: value for key, value in tx.items() if key != "from"}
            payload.update({"nonce": nonce, "chainId": self._chain_id, "value": 0})
            return await self._client.send_raw_transaction(account.sign_transaction(payload))

    async def send(self, signer: SignerAccount, tx: dict[str, Any]) -> tuple[str, float]:
        """Send with one retry after a fixed backoff; returns the hash and send time."""
        try:
            tx_hash = await self._send_once(signer, tx)
        except RpcError as error:
            log_event(
                self._logger,
                level="warning",
                event="tx_send_retry",
                message="Transaction send failed; retrying once after backoff",
                signer=signer.address,
                kind=error.kind.value,
                error=str(error),
                backoff_seconds=self._send_retry_backoff_seconds,
            )
            await asyncio.sleep(self._send_retry_backoff_seconds)
            try:
                tx_hash = await self._send_once(signer, tx)
            except RpcError as retry_error:
                raise SubmitFailedError(str(retry_error), attempts=2) from retry_error
        return tx_hash, self._now()

    async def await_receipt(self, tx_hash: str, *, sent_at: float) -> Receipt:
        try:
            return await self._client.wait_for_receipt(
                tx_hash,
                confirmations=self._confirmations,
                timeout_seconds=self._receipt_timeout_seconds,
            )
        except (ReceiptTimeoutError, RpcError) as error:
            log_event(
                self._logger,
                level="warning",
                event="tx_receipt_wait_failed",
                message="Receipt wait failed; falling back to a direct lookup",
                tx_hash=tx_hash,
                error=str(error),
            )

        await sleep_until(sent_at + self._fallback_window_seconds)
        try:
            receipt = await self._client.get_transaction_receipt(tx_hash)
        except RpcError as error:
            raise ReceiptTimeoutError(f"Receipt lookup for {tx_hash} failed: {error}", tx_hash=tx_hash) from error
        if receipt is None:
            raise ReceiptTimeoutError(f"Transaction {tx_hash} has no receipt after fallback window", tx_hash=tx_hash)
        return receipt

    async def submit(
        self,
        *,
        opp: OppResult,
        signer: SignerAccount,
        context: SettlementContext,
    ) -> ProcessPairResult | asyncio.Task[ProcessPairResult]:
        """Send the opportunity; returns a final result or the pending settlement task."""
        report = {**context.report, "signer": signer.address, "opportunity": opp.to_dict()}
        try:
            tx_hash, sent_at = await self.send(signer, opp.raw_tx)
        except SubmitFailedError as error:
            return ProcessPairResult(
                status=ProcessPairStatus.FOUND_OPPORTUNITY,
                report=report,
                reason=ProcessPairHaltReason.TX_FAILED,
                error=str(error),
            )

        report["txHash"] = tx_hash
        log_event(
            self._logger,
            level="info",
            event="tx_submitted",
            message="Arb transaction submitted",
            tx_hash=tx_hash,
            signer=signer.address,
            pair=context.bundle.token_pair,
            maximum_input=opp.maximum_input,
        )
        return asyncio.create_task(
            self.settle(tx_hash=tx_hash, sent_at=sent_at, opp=opp, signer=signer, context=context, report=report),
            name=tx_hash,
        )

    async def settle(
        self,
        *,
        tx_hash: str,
        sent_at: float,
        opp: OppResult,
        signer: SignerAccount,
        context: SettlementContext,
        report: dict[str, Any],
    ) -> ProcessPairResult:
        try:
            receipt = await self.await_receipt(tx_hash, sent_at=sent_at)
        except ReceiptTimeoutError as error:
            return ProcessPairResult(
                status=ProcessPairStatus.FOUND_OPPORTUNITY,
                report=report,
                reason=ProcessPairHaltReason.TX_MINE_FAILED,
                error=str(error),
            )

        gas_cost = receipt.gas_cost
        balance_before = signer.balance
        signer.spend(gas_cost)
        report.update({"gasCost": gas_cost, "blockNumber": receipt.block_number, "gasUsed": receipt.gas_used})

        if receipt.succeeded:
            return self._confirmed(receipt, signer=signer, context=context, report=report)

        diagnosis = await self._diagnoser.diagnose(
            receipt=receipt,
            tx=opp.raw_tx,
            signer_balance=balance_before,
            sent_at=sent_at,
            orderbook=context.bundle.orderbook,
        )
        report["revert"] = diagnosis.to_dict()
        # contract-level reverts mean this exact input is not an opportunity
        return ProcessPairResult(
            status=(
                ProcessPairStatus.FOUND_OPPORTUNITY
                if diagnosis.infrastructure_error
                else ProcessPairStatus.NO_OPPORTUNITY
            ),
            report=report,
            reason=ProcessPairHaltReason.TX_REVERTED,
            error=diagnosis.reason,
            gas_cost=gas_cost,
            attributes={
                "retryable": diagnosis.infrastructure_error,
                "known_error": diagnosis.known_error,
            },
        )

    def _confirmed(
        self,
        receipt: Receipt,
        *,
        signer: SignerAccount,
        context: SettlementContext,
        report: dict[str, Any],
    ) -> ProcessPairResult:
        bundle = context.bundle
        input_income = get_income(receipt, token=bundle.buy_token, recipient=signer.address)
        output_income = get_income(receipt, token=bundle.sell_token, recipient=signer.address)
        total_income = get_total_income(
            input_income=input_income,
            output_income=output_income,
            input_native_price=context.buy_native_price,
            output_native_price=context.sell_native_price,
            input_decimals=bundle.buy_decimals,
            output_decimals=bundle.sell_decimals,
        )
        if input_income:
            signer.add_bounty(bundle.buy_token)
        if output_income:
            signer.add_bounty(bundle.sell_token)

        net_profit = total_income - receipt.gas_cost if total_income is not None else None
        report.update(
            {
                "inputTokenIncome": input_income,
                "outputTokenIncome": output_income,
                "income": total_income,
                "netProfit": net_profit,
            }
        )
        log_event(
            self._logger,
            level="info",
            event="tx_cleared",
            message="Arb transaction cleared",
            tx_hash=receipt.transaction_hash,
            pair=bundle.token_pair,
            gas_cost=receipt.gas_cost,
            income=total_income,
            net_profit=net_profit,
        )
        return ProcessPairResult(
            status=ProcessPairStatus.FOUND_OPPORTUNITY,
            report=report,
            gas_cost=receipt.gas_cost,
            cleared=True,
        )
