from __future__ import annotations

import asyncio
import logging
from typing import Any

from eth_abi.exceptions import DecodingError

from modules.chain import ChainClient
from modules.chain.abi import decode_quote, encode_quote_calldata
from modules.common import log_event
from modules.orders import BundledOrders
from modules.routing import LiquidityOracle, OracleError, RouteRateLimitError, get_native_price
from modules.rpc import RpcError
from modules.signer import SignerAccount, SignerPool
from modules.solver import (
    DryrunContext,
    DryrunFailure,
    DryrunHaltReason,
    Optimizer,
    ProcessPairHaltReason,
    ProcessPairResult,
    ProcessPairStatus,
    SolverConfig,
)
from modules.tx import SettlementContext, TxLifecycle

PairOutcome = ProcessPairResult | asyncio.Task[ProcessPairResult]


class PairProcessor:
    """Takes one single-order bundle from quote to submitted transaction."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: ChainClient,
        oracle: LiquidityOracle,
        optimizer: Optimizer,
        lifecycle: TxLifecycle,
        signer_pool: SignerPool,
        config: SolverConfig,
    ) -> None:
        self._logger = logger
        self._client = client
        self._oracle = oracle
        self._optimizer = optimizer
        self._lifecycle = lifecycle
        self._signer_pool = signer_pool
        self._config = config

    def _halt(
        self,
        status: ProcessPairStatus,
        report: dict[str, Any],
        reason: ProcessPairHaltReason | None = None,
        error: BaseException | str | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> ProcessPairResult:
        return ProcessPairResult(
            status=status,
            report=report,
            reason=reason,
            error=str(error) if error is not None else None,
            attributes=attributes or {},
        )

    async def quote(self, bundle: BundledOrders) -> tuple[int, int]:
        """Max output (18 fixed) and io ratio of the bundle's head order, from the orderbook."""
        take_order = bundle.take_orders[0].take_order
        data = await self._client.call(
            {"to": bundle.orderbook, "data": encode_quote_calldata(take_order.to_abi())},
        )
        exists, max_output, ratio = decode_quote(data)
        if not exists:
            return 0, ratio
        return max_output, ratio

    async def _native_price(self, token: str, decimals: int, gas_price: int) -> int:
        return await get_native_price(
            self._oracle,
            chain_id=self._config.chain_id,
            token=token,
            decimals=decimals,
            native_token=self._config.native_token,
            gas_price=gas_price,
        )

    async def process(self, bundle: BundledOrders, signer: SignerAccount) -> PairOutcome:
        pair = bundle.take_orders[0]
        report: dict[str, Any] = {
            "tokenPair": bundle.token_pair,
            "buyToken": bundle.buy_token,
            "sellToken": bundle.sell_token,
            "orderbook": bundle.orderbook,
            "orderHash": pair.order_hash,
            "owner": pair.owner,
        }

        try:
            max_output, ratio = await self.quote(bundle)
        except (RpcError, DecodingError) as error:
            return self._halt(
                ProcessPairStatus.NO_OPPORTUNITY, report, ProcessPairHaltReason.FAILED_TO_QUOTE, error
            )
        report.update({"maxOutput": max_output, "ratio": ratio})
        if max_output == 0:
            return self._halt(ProcessPairStatus.ZERO_OUTPUT, report)

        try:
            gas_price = await self._client.gas_price() * self._config.gas_price_multiplier // 100
        except RpcError as error:
            return self._halt(
                ProcessPairStatus.NO_OPPORTUNITY, report, ProcessPairHaltReason.FAILED_TO_GET_GAS_PRICE, error
            )
        report["gasPrice"] = gas_price

        try:
            await self._oracle.fetch_pools(bundle.sell_token, bundle.buy_token)
        except RouteRateLimitError:
            raise
        except OracleError as error:
            return self._halt(
                ProcessPairStatus.NO_OPPORTUNITY, report, ProcessPairHaltReason.FAILED_TO_GET_POOLS, error
            )

        try:
            buy_native_price = await self._native_price(bundle.buy_token, bundle.buy_decimals, gas_price)
            sell_native_price = await self._native_price(bundle.sell_token, bundle.sell_decimals, gas_price)
        except RouteRateLimitError:
            raise
        except OracleError as error:
            if self._config.gas_coverage_percentage > 0:
                return self._halt(
                    ProcessPairStatus.NO_OPPORTUNITY, report, ProcessPairHaltReason.FAILED_TO_GET_ETH_PRICE, error
                )
            buy_native_price = sell_native_price = 0
        if self._config.gas_coverage_percentage > 0 and buy_native_price == 0:
            return self._halt(
                ProcessPairStatus.NO_OPPORTUNITY,
                report,
                ProcessPairHaltReason.FAILED_TO_GET_ETH_PRICE,
                "no route from buy token to native token",
            )
        report.update({"buyNativePrice": buy_native_price, "sellNativePrice": sell_native_price})

        context = DryrunContext(
            bundle=bundle,
            signer=signer,
            gas_price=gas_price,
            vault_balance=max_output,
            buy_native_price=buy_native_price,
            quote_ratio=ratio,
        )
        try:
            opp = await self._optimizer.find_opp_with_retries(context)
        except DryrunFailure as failure:
            if failure.reason is DryrunHaltReason.NO_WALLET_FUND:
                self._signer_pool.mark_exhausted(signer)
                return self._halt(
                    ProcessPairStatus.NO_OPPORTUNITY,
                    report,
                    ProcessPairHaltReason.NO_WALLET_FUND,
                    f"signer {signer.address} has insufficient funds for gas",
                    failure.attributes,
                )
            attributes = {"dryrun_reason": failure.reason.value, **failure.attributes}
            return self._halt(ProcessPairStatus.NO_OPPORTUNITY, report, attributes=attributes)

        if self._config.dry_run:
            log_event(
                self._logger,
                level="info",
                event="opportunity_detected",
                message="Opportunity found while sending is disabled",
                pair=bundle.token_pair,
                order_hash=pair.order_hash,
                maximum_input=opp.maximum_input,
                estimated_profit=opp.estimated_profit,
            )
            return self._halt(
                ProcessPairStatus.FOUND_OPPORTUNITY,
                {**report, "opportunity": opp.to_dict()},
            )

        return await self._lifecycle.submit(
            opp=opp,
            signer=signer,
            context=SettlementContext(
                bundle=bundle,
                buy_native_price=buy_native_price,
                sell_native_price=sell_native_price,
                report=report,
            ),
        )
