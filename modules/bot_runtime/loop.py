from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from modules.chain import ChainClient
from modules.common import guarded_call, log_event, wait_with_stop
from modules.orchestrator import PairProcessor, RoundOrchestrator
from modules.orders import ChainVaultBalanceReader, HttpOrderSource, OwnerScheduler, VaultBalanceReader
from modules.routing import HttpRouteOracle
from modules.rpc import RpcHealthTransport
from modules.signer import SignerPool
from modules.solver import Optimizer
from modules.tx import RevertDiagnoser, TxLifecycle

from .settings import AppSettings


@dataclass(slots=True)
class SolverRuntime:
    transport: RpcHealthTransport
    client: ChainClient
    oracle: HttpRouteOracle
    order_source: HttpOrderSource
    signer_pool: SignerPool
    scheduler: OwnerScheduler
    vault_reader: VaultBalanceReader
    orchestrator: RoundOrchestrator

    async def close(self, logger: logging.Logger) -> None:
        await guarded_call(
            self.order_source.close,
            logger=logger,
            event="order_source_close_failed",
            message="Failed to close order source",
        )
        await guarded_call(
            self.oracle.close,
            logger=logger,
            event="oracle_close_failed",
            message="Failed to close routing oracle",
        )
        await guarded_call(
            self.transport.close,
            logger=logger,
            event="transport_close_failed",
            message="Failed to close RPC transport",
        )


def build_runtime(app_settings: AppSettings, *, logger: logging.Logger) -> SolverRuntime:
    config = app_settings.solver_config()
    transport = RpcHealthTransport(
        logger=logger,
        urls=app_settings.rpc_urls,
        timeout_seconds=app_settings.rpc_timeout_seconds,
    )
    client = ChainClient(
        transport,
        logger=logger,
        multicall_address=app_settings.multicall_address,
        receipt_poll_interval_seconds=app_settings.receipt_poll_interval_seconds,
    )
    oracle = HttpRouteOracle(
        logger=logger,
        url=app_settings.route_api_url,
        recipient=app_settings.arb_address,
        requests_per_second=app_settings.route_requests_per_second,
    )
    signer_pool = SignerPool.from_private_keys(app_settings.signer_private_keys, logger=logger)
    scheduler = OwnerScheduler(logger=logger, owner_limits=app_settings.owner_limits)
    lifecycle = TxLifecycle(
        logger=logger,
        client=client,
        signer_pool=signer_pool,
        diagnoser=RevertDiagnoser(
            logger=logger,
            client=client,
            fallback_window_seconds=app_settings.receipt_fallback_window_seconds,
        ),
        chain_id=app_settings.chain_id,
        send_retry_backoff_seconds=app_settings.send_retry_backoff_seconds,
        receipt_timeout_seconds=app_settings.receipt_timeout_seconds,
        fallback_window_seconds=app_settings.receipt_fallback_window_seconds,
    )
    processor = PairProcessor(
        logger=logger,
        client=client,
        oracle=oracle,
        optimizer=Optimizer(logger=logger, client=client, oracle=oracle, config=config),
        lifecycle=lifecycle,
        signer_pool=signer_pool,
        config=config,
    )
    orchestrator = RoundOrchestrator(
        logger=logger,
        scheduler=scheduler,
        processor=processor,
        signer_pool=signer_pool,
        rpc_state=transport.state,
        round_timeout_seconds=app_settings.round_timeout_seconds,
        shuffle=app_settings.shuffle,
    )
    return SolverRuntime(
        transport=transport,
        client=client,
        oracle=oracle,
        order_source=HttpOrderSource(logger=logger, url=app_settings.orders_url),
        signer_pool=signer_pool,
        scheduler=scheduler,
        vault_reader=ChainVaultBalanceReader(client),
        orchestrator=orchestrator,
    )


async def sync_orders(runtime: SolverRuntime, *, logger: logging.Logger) -> bool:
    records = await runtime.order_source.fetch_orders()
    changed = await runtime.scheduler.sync(records, runtime.vault_reader)
    await runtime.signer_pool.refresh_balances(runtime.client)
    log_event(
        logger,
        level="debug",
        event="order_sync_completed",
        message="Order sync completed",
        records=len(records),
        changed=changed,
    )
    return changed


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    runtime: SolverRuntime,
) -> bool:
    while not stop_event.is_set():
        try:
            await runtime.transport.connect()
            await runtime.oracle.connect()
            await runtime.order_source.connect()
            chain_id = await runtime.client.chain_id()
            if chain_id != app_settings.chain_id:
                raise ValueError(f"RPC chain id {chain_id} does not match configured {app_settings.chain_id}")
            await sync_orders(runtime, logger=logger)
            log_event(
                logger,
                level="info",
                event="bootstrap_completed",
                message="Dependencies initialized",
                chain_id=chain_id,
                rpc_endpoints=len(runtime.transport.urls),
                signers=[account.address for account in runtime.signer_pool.accounts],
                dry_run=app_settings.dry_run,
            )
            return True
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await runtime.close(logger)
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)
    return False


async def run_solver_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    runtime: SolverRuntime,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    last_sync_at = loop.time()

    while not stop_event.is_set():
        backoff_seconds = 0.0
        try:
            if loop.time() - last_sync_at >= app_settings.order_sync_interval_seconds:
                await guarded_call(
                    lambda: sync_orders(runtime, logger=logger),
                    logger=logger,
                    event="order_sync_failed",
                    message="Order sync failed; keeping the previous order set",
                )
                last_sync_at = loop.time()

            report = await runtime.orchestrator.run_round()
            if report.rate_limited:
                backoff_seconds = max(app_settings.error_backoff_seconds, report.retry_after_seconds or 0.0)
                log_event(
                    logger,
                    level="warning",
                    event="route_rate_limited",
                    message="Routing API rate limited; backing off",
                    backoff_seconds=backoff_seconds,
                )
        except Exception as error:
            backoff_seconds = app_settings.error_backoff_seconds
            log_event(
                logger,
                level="exception",
                event="round_loop_error",
                message="Round failed",
                error=str(error),
            )
        finally:
            interval = max(0.05, app_settings.round_interval_seconds)
            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                missed_cycles = int((now - next_tick) / interval) + 1
                next_tick += missed_cycles * interval

            delay_seconds = max(0.0, next_tick - now, backoff_seconds)
            await wait_with_stop(stop_event, delay_seconds)
