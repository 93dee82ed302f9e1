from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from modules.chain import ChainClient
from modules.chain.abi import (
    MAX_UINT256,
    ONE18,
    encode_arb_calldata,
    encode_route_data,
    scale_from_18,
    scale_to_18,
)
from modules.common import log_event
from modules.orders import BundledOrders
from modules.routing import LiquidityOracle, RouteRateLimitError
from modules.rpc import RpcError, RpcErrorKind
from modules.signer import SignerAccount

from .modes import TakeOrderMode, build_take_orders, modes_for_retries
from .types import DryrunFailure, DryrunHaltReason, OppResult, SolverConfig


@dataclass(frozen=True, slots=True)
class DryrunContext:
    """Inputs shared by every hop and mode of one pair's search.

    ``vault_balance`` and amounts are 18-decimal fixed; ``buy_native_price``
    is the price of one buy token in native gas token, 18-decimal fixed.
    """

    bundle: BundledOrders
    signer: SignerAccount
    gas_price: int
    vault_balance: int
    buy_native_price: int
    quote_ratio: int = 0


def gas_cost_in_buy_token(gas_cost: int, *, buy_native_price: int, buy_decimals: int) -> int:
    if buy_native_price <= 0:
        return 0
    return scale_from_18(gas_cost * ONE18 // buy_native_price, buy_decimals)


def minimum_sender_output(gas_cost_in_token: int, gas_coverage_percentage: int) -> int:
    # coverage * 1.05 headroom, expressed in percent
    return gas_cost_in_token * gas_coverage_percentage * 105 // 10_000


class Optimizer:
    """Binary-searches the largest input an arb transaction can clear profitably."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        client: ChainClient,
        oracle: LiquidityOracle,
        config: SolverConfig,
    ) -> None:
        self._logger = logger
        self._client = client
        self._oracle = oracle
        self._config = config

    async def _estimate_gas_limit(self, tx: dict[str, Any]) -> int:
        estimate = await self._client.estimate_gas(tx)
        return estimate * self._config.gas_limit_multiplier // 100

    async def dryrun(self, context: DryrunContext, *, mode: TakeOrderMode, maximum_input: int) -> OppResult:
        bundle = context.bundle
        attributes: dict[str, Any] = {"mode": mode.name, "maxInput": str(maximum_input)}
        amount_in = scale_from_18(maximum_input, bundle.sell_decimals)
        if amount_in <= 0:
            attributes["error"] = "zero input amount"
            raise DryrunFailure(DryrunHaltReason.NO_OPPORTUNITY, attributes)

        route = await self._oracle.find_route(
            chain_id=self._config.chain_id,
            from_token=bundle.sell_token,
            amount_in=amount_in,
            to_token=bundle.buy_token,
            gas_price=context.gas_price,
        )
        if not route.found:
            attributes["route"] = "no-way"
            raise DryrunFailure(DryrunHaltReason.NO_ROUTE, attributes)

        price = scale_to_18(route.amount_out, bundle.buy_decimals) * ONE18 // maximum_input
        route_visual = tuple(route.visualize())
        attributes["marketPrice"] = str(price)
        attributes["route"] = list(route_visual)
        if price < context.quote_ratio:
            attributes["error"] = "Order's ratio greater than market price"
            raise DryrunFailure(DryrunHaltReason.NO_OPPORTUNITY, attributes)

        signer = context.signer
        route_code = await self._oracle.build_route_data(
            route,
            sender=signer.address,
            to=self._config.arb_address,
        )
        take_orders_config = (
            1,
            maximum_input,
            MAX_UINT256 if self._config.max_ratio else price,
            [take_order.to_abi() for take_order in build_take_orders(mode, bundle)],
            encode_route_data(route_code),
        )
        tx: dict[str, Any] = {
            "from": signer.address,
            "to": self._config.arb_address,
            "data": encode_arb_calldata(take_orders_config, 0),
            "gasPrice": context.gas_price,
        }

        try:
            block_number = await self._client.block_number()
            gas_limit = await self._estimate_gas_limit(tx)
            gas_cost = gas_limit * context.gas_price
            gas_cost_in_token = gas_cost_in_buy_token(
                gas_cost,
                buy_native_price=context.buy_native_price,
                buy_decimals=bundle.buy_decimals,
            )
            if self._config.gas_coverage_percentage > 0:
                tx["data"] = encode_arb_calldata(
                    take_orders_config,
                    minimum_sender_output(gas_cost_in_token, self._config.gas_coverage_percentage),
                )
                gas_limit = await self._estimate_gas_limit(tx)
                gas_cost = gas_limit * context.gas_price
                gas_cost_in_token = gas_cost_in_buy_token(
                    gas_cost,
                    buy_native_price=context.buy_native_price,
                    buy_decimals=bundle.buy_decimals,
                )
        except RpcError as error:
            attributes["error"] = error.to_dict()
            if error.kind is RpcErrorKind.INSUFFICIENT_FUNDS:
                raise DryrunFailure(DryrunHaltReason.NO_WALLET_FUND, attributes) from error
            raise DryrunFailure(DryrunHaltReason.NO_OPPORTUNITY, attributes) from error

        gross_profit = (price - context.quote_ratio) * maximum_input // ONE18
        estimated_profit = gross_profit * context.buy_native_price // ONE18 - gas_cost
        tx["gas"] = gas_limit
        return OppResult(
            raw_tx=tx,
            maximum_input=maximum_input,
            gas_cost_in_token=gas_cost_in_token,
            estimated_profit=estimated_profit,
            block_number=block_number,
            price=price,
            mode=mode.name,
            gas_limit=gas_limit,
            route_visual=route_visual,
        )

    async def find_opp(self, context: DryrunContext, mode: TakeOrderMode) -> OppResult:
        """Search ``hops`` input sizes for one bundling mode.

        Starts at the full vault balance. Each hop moves the size by
        ``vault_balance / 2**hop``: up after a success, down after a failure.
        The largest successful size wins. Running out of gas funds aborts
        at once since resizing cannot fix it.
        """
        vault_balance = context.vault_balance
        maximum_input = vault_balance
        best: OppResult | None = None
        route_found = False
        hops: list[dict[str, Any]] = []

        for hop in range(1, self._config.hops + 1):
            step = vault_balance // 2**hop
            try:
                result = await self.dryrun(context, mode=mode, maximum_input=maximum_input)
            except DryrunFailure as failure:
                hops.append(failure.attributes)
                if failure.reason is DryrunHaltReason.NO_WALLET_FUND:
                    raise DryrunFailure(
                        DryrunHaltReason.NO_WALLET_FUND,
                        {"mode": mode.name, "hops": hops},
                    ) from failure
                if failure.reason is not DryrunHaltReason.NO_ROUTE:
                    route_found = True
                maximum_input -= step
                continue

            if hop == 1:
                return result
            route_found = True
            hops.append({"mode": mode.name, "maxInput": str(maximum_input), "success": True})
            if best is None or result.maximum_input > best.maximum_input:
                best = result
            maximum_input += step

        if best is not None:
            return best
        reason = DryrunHaltReason.NO_OPPORTUNITY if route_found else DryrunHaltReason.NO_ROUTE
        raise DryrunFailure(reason, {"mode": mode.name, "hops": hops})

    async def find_opp_with_retries(self, context: DryrunContext) -> OppResult:
        modes = modes_for_retries(self._config.retries)
        outcomes = await asyncio.gather(
            *(self.find_opp(context, mode) for mode in modes),
            return_exceptions=True,
        )

        choice: OppResult | None = None
        failures: list[DryrunFailure] = []
        rate_limited: RouteRateLimitError | None = None
        for mode, outcome in zip(modes, outcomes):
            if isinstance(outcome, OppResult):
                if choice is None or choice.maximum_input < outcome.maximum_input:
                    choice = outcome
            elif isinstance(outcome, DryrunFailure):
                failures.append(outcome)
            elif isinstance(outcome, RouteRateLimitError):
                rate_limited = outcome
            elif isinstance(outcome, Exception):
                log_event(
                    self._logger,
                    level="error",
                    event="find_opp_unexpected_error",
                    message="Opportunity search failed unexpectedly",
                    mode=mode.name,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                failures.append(
                    DryrunFailure(
                        DryrunHaltReason.NO_OPPORTUNITY,
                        {"mode": mode.name, "error": str(outcome)},
                    )
                )
            else:
                raise outcome

        if choice is not None:
            return choice
        if rate_limited is not None:
            raise rate_limited
        for reason in (DryrunHaltReason.NO_WALLET_FUND, DryrunHaltReason.NO_ROUTE):
            matched = next((failure for failure in failures if failure.reason is reason), None)
            if matched is not None:
                raise DryrunFailure(reason, matched.attributes)
        raise DryrunFailure(DryrunHaltReason.NO_OPPORTUNITY, failures[0].attributes if failures else {})
