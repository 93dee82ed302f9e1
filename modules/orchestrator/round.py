from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from modules.common import log_event
from modules.orders import BundledOrders, OwnerScheduler
from modules.routing import RouteRateLimitError
from modules.rpc import RpcHealthState
from modules.signer import SignerPool
from modules.solver import (
    SEVERITY_LOG_LEVEL,
    ProcessPairHaltReason,
    ProcessPairResult,
    ProcessPairStatus,
)

from .pair import PairProcessor


@dataclass(slots=True)
class RoundReport:
    results: list[ProcessPairResult] = field(default_factory=list)
    avg_gas_cost: int = 0
    rpc: dict[str, dict[str, Any]] = field(default_factory=dict)
    duration_seconds: float = 0.0
    timed_out: bool = False
    rate_limited: bool = False
    retry_after_seconds: float | None = None

    @property
    def cleared(self) -> int:
        return sum(1 for result in self.results if result.cleared)

    def status_counts(self) -> dict[str, int]:
        return dict(Counter(result.status.value for result in self.results))

    def reason_counts(self) -> dict[str, int]:
        return dict(Counter(result.reason.value for result in self.results if result.reason is not None))

    def to_dict(self) -> dict[str, Any]:
        return {
            "pairs": len(self.results),
            "cleared": self.cleared,
            "statuses": self.status_counts(),
            "reasons": self.reason_counts(),
            "avg_gas_cost": self.avg_gas_cost,
            "duration_seconds": round(self.duration_seconds, 3),
            "timed_out": self.timed_out,
            "rate_limited": self.rate_limited,
            "rpc": self.rpc,
        }


@dataclass(slots=True)
class _Settlement:
    task: asyncio.Task[ProcessPairResult]
    report: dict[str, Any]


@dataclass(slots=True)
class _RoundProgress:
    pending: list[_Settlement] = field(default_factory=list)
    # report context of the pair whose processing has not returned yet
    in_flight: dict[str, Any] | None = None


class RoundOrchestrator:
    """Runs one round: schedule, search, submit, settle, report.

    Pairs are processed one at a time so each gets the freshest signer;
    receipts settle in the background and are collected before the round
    ends. A round deadline cancels whatever is still in flight.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        scheduler: OwnerScheduler,
        processor: PairProcessor,
        signer_pool: SignerPool,
        rpc_state: RpcHealthState | None = None,
        round_timeout_seconds: float = 0.0,
        shuffle: bool = False,
    ) -> None:
        self._logger = logger
        self._scheduler = scheduler
        self._processor = processor
        self._signer_pool = signer_pool
        self._rpc_state = rpc_state
        self._round_timeout_seconds = max(0.0, round_timeout_seconds)
        self._shuffle = shuffle
        self.avg_gas_cost = 0

    def _record_gas_cost(self, gas_cost: int | None) -> None:
        if not gas_cost:
            return
        self.avg_gas_cost = gas_cost if self.avg_gas_cost == 0 else (self.avg_gas_cost + gas_cost) // 2

    def _log_result(self, result: ProcessPairResult) -> None:
        severity = result.severity
        log_event(
            self._logger,
            level=SEVERITY_LOG_LEVEL[severity] if severity is not None else "info",
            event="pair_processed",
            message="Pair processed",
            status=result.status.value,
            reason=result.reason.value if result.reason else None,
            error=result.error,
            cleared=result.cleared,
            pair=result.report.get("tokenPair"),
            order_hash=result.report.get("orderHash"),
            tx_hash=result.report.get("txHash"),
            attributes=result.attributes,
        )

    def _finish(self, result: ProcessPairResult, report: RoundReport) -> None:
        self._record_gas_cost(result.gas_cost)
        report.results.append(result)
        self._log_result(result)

    async def _process_bundles(
        self,
        bundles: list[BundledOrders],
        report: RoundReport,
        progress: _RoundProgress,
    ) -> None:
        pairs = [pair for bundle in bundles for pair in bundle.take_orders]
        for pair in pairs:
            single = BundledOrders.for_pair(pair)
            context = {"tokenPair": single.token_pair, "orderHash": pair.order_hash}
            signer = self._signer_pool.next_candidate()
            if signer is None:
                self._finish(
                    ProcessPairResult(
                        status=ProcessPairStatus.NO_OPPORTUNITY,
                        report=context,
                        reason=ProcessPairHaltReason.NO_WALLET_FUND,
                        error="all signers are out of gas funds",
                    ),
                    report,
                )
                continue

            progress.in_flight = context
            try:
                outcome = await self._processor.process(single, signer)
            except asyncio.CancelledError:
                raise
            except RouteRateLimitError as error:
                progress.in_flight = None
                # remaining pairs would hit the same limit; settle what is in flight
                report.rate_limited = True
                report.retry_after_seconds = error.retry_after_seconds
                log_event(
                    self._logger,
                    level="warning",
                    event="round_rate_limited",
                    message="Routing API rate limited; skipping the rest of the round",
                    pair=single.token_pair,
                    retry_after_seconds=error.retry_after_seconds,
                    skipped=len(pairs) - len(report.results) - len(progress.pending),
                )
                break
            except Exception as error:
                log_event(
                    self._logger,
                    level="exception",
                    event="pair_unexpected_error",
                    message="Unexpected error while processing pair",
                    pair=single.token_pair,
                    order_hash=pair.order_hash,
                    error=str(error),
                )
                outcome = ProcessPairResult(
                    status=ProcessPairStatus.NO_OPPORTUNITY,
                    report=context,
                    reason=ProcessPairHaltReason.UNEXPECTED_ERROR,
                    error=f"{type(error).__name__}: {error}",
                )
            finally:
                self._signer_pool.rotate(signer)
            progress.in_flight = None

            if isinstance(outcome, asyncio.Task):
                # settlement tasks are named after their transaction hash
                tx_hash = outcome.get_name()
                if tx_hash.startswith("0x"):
                    context = {**context, "txHash": tx_hash}
                progress.pending.append(_Settlement(outcome, context))
            else:
                self._finish(outcome, report)

        while progress.pending:
            entry = progress.pending[0]
            result = await self._settled(entry)
            progress.pending.pop(0)
            self._finish(result, report)

    def _settlement_failure(self, entry: _Settlement, error: BaseException) -> ProcessPairResult:
        log_event(
            self._logger,
            level="error",
            event="settlement_unexpected_error",
            message="Unexpected error while settling transaction",
            tx_hash=entry.report.get("txHash"),
            error=f"{type(error).__name__}: {error}",
        )
        return ProcessPairResult(
            status=ProcessPairStatus.FOUND_OPPORTUNITY,
            report=entry.report,
            reason=ProcessPairHaltReason.UNEXPECTED_ERROR,
            error=f"{type(error).__name__}: {error}",
        )

    async def _settled(self, entry: _Settlement) -> ProcessPairResult:
        try:
            return await entry.task
        except asyncio.CancelledError:
            raise
        except Exception as error:
            return self._settlement_failure(entry, error)

    async def _close_out(self, progress: _RoundProgress, report: RoundReport) -> None:
        """Report what the deadline interrupted; settlements that already finished keep their result."""
        if progress.in_flight is not None:
            self._finish(
                ProcessPairResult(
                    status=ProcessPairStatus.NO_OPPORTUNITY,
                    report=progress.in_flight,
                    reason=ProcessPairHaltReason.UNEXPECTED_ERROR,
                    error="round deadline reached while the pair was being processed",
                ),
                report,
            )
            progress.in_flight = None

        for entry in progress.pending:
            if not entry.task.done():
                entry.task.cancel()
        await asyncio.gather(*(entry.task for entry in progress.pending), return_exceptions=True)

        for entry in progress.pending:
            task = entry.task
            if task.cancelled():
                self._finish(
                    ProcessPairResult(
                        status=ProcessPairStatus.FOUND_OPPORTUNITY,
                        report=entry.report,
                        reason=ProcessPairHaltReason.TX_MINE_FAILED,
                        error="round deadline reached before the transaction settled",
                    ),
                    report,
                )
                continue
            error = task.exception()
            self._finish(task.result() if error is None else self._settlement_failure(entry, error), report)
        progress.pending.clear()

    async def run_round(self) -> RoundReport:
        started = time.monotonic()
        self._signer_pool.reset_round()
        bundles = self._scheduler.prepare_round(shuffle=self._shuffle)
        report = RoundReport()
        progress = _RoundProgress()

        try:
            if self._round_timeout_seconds > 0:
                await asyncio.wait_for(
                    self._process_bundles(bundles, report, progress),
                    timeout=self._round_timeout_seconds,
                )
            else:
                await self._process_bundles(bundles, report, progress)
        except asyncio.TimeoutError:
            report.timed_out = True
            await self._close_out(progress, report)
            log_event(
                self._logger,
                level="warning",
                event="round_timed_out",
                message="Round deadline reached; in-flight work cancelled",
                timeout_seconds=self._round_timeout_seconds,
                processed=len(report.results),
            )
        finally:
            for entry in progress.pending:
                if not entry.task.done():
                    entry.task.cancel()

        report.avg_gas_cost = self.avg_gas_cost
        report.duration_seconds = time.monotonic() - started
        if self._rpc_state is not None:
            report.rpc = self._rpc_state.snapshot_and_reset()
        log_event(
            self._logger,
            level="info",
            event="round_completed",
            message="Round completed",
            **report.to_dict(),
        )
        return report
