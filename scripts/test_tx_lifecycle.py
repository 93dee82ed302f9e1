from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock

from eth_abi import encode

from modules.chain import Log, Receipt, ReceiptTimeoutError
from modules.chain.abi import (
    ERROR_STRING_SELECTOR,
    TAKE_ORDER_CONFIG_TYPE,
    TAKE_ORDER_V2_TOPIC,
    TRANSFER_TOPIC,
    encode_arb_calldata,
    to_hex,
)
from modules.orders import IO, BundledOrders, Evaluable, Order, Pair, TakeOrder
from modules.rpc import RpcError, RpcErrorKind
from modules.signer import SignerPool
from modules.solver import OppResult, ProcessPairHaltReason, ProcessPairStatus
from modules.tx import (
    RevertDiagnoser,
    RevertDiagnosis,
    SettlementContext,
    TxLifecycle,
    check_gas_issue,
    get_income,
    get_total_income,
)

KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
SELL = "0x" + "b1" * 20
BUY = "0x" + "c1" * 20
ORDERBOOK = "0x" + "d1" * 20
ARB = "0x" + "e1" * 20
TX_HASH = "0x" + "ab" * 32
LOGGER = logging.getLogger("test.tx")


def _bundle() -> BundledOrders:
    order = Order(
        owner="0x" + "a1" * 20,
        evaluable=Evaluable("0x" + "01" * 20, "0x" + "02" * 20, b"\x00"),
        valid_inputs=(IO(BUY, 6, 1),),
        valid_outputs=(IO(SELL, 18, 1),),
        nonce=b"\x00" * 32,
    )
    return BundledOrders.for_pair(
        Pair(
            orderbook=ORDERBOOK,
            order_hash=order.hash,
            take_order=TakeOrder(order, 0, 0),
            sell_token=SELL,
            sell_decimals=18,
            sell_symbol="WETH",
            buy_token=BUY,
            buy_decimals=6,
            buy_symbol="USDC",
        )
    )


def _transfer(token: str, recipient: str, amount: int) -> Log:
    return Log(
        address=token,
        topics=(TRANSFER_TOPIC, "0x" + "00" * 12 + ARB[2:], "0x" + "00" * 12 + recipient[2:]),
        data=to_hex(amount.to_bytes(32, "big")),
    )


def _receipt(*, status: int = 1, gas_used: int = 100_000, logs: tuple[Log, ...] = ()) -> Receipt:
    return Receipt(
        transaction_hash=TX_HASH,
        status=status,
        block_number=10,
        gas_used=gas_used,
        effective_gas_price=10**9,
        logs=logs,
    )


def _opp(signer_address: str) -> OppResult:
    return OppResult(
        raw_tx={
            "from": signer_address,
            "to": ARB,
            "data": b"\x01\x02",
            "gasPrice": 10**9,
            "gas": 300_000,
        },
        maximum_input=10**18,
        gas_cost_in_token=1,
        estimated_profit=1,
        block_number=9,
        price=2 * 10**18,
        mode="SINGLE",
    )


class TxLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = AsyncMock()
        self.client.get_transaction_count.return_value = 3
        self.client.send_raw_transaction.return_value = TX_HASH
        self.pool = SignerPool.from_private_keys([KEY], logger=LOGGER)
        self.signer = self.pool.accounts[0]
        self.signer.balance = 10**18
        self.diagnoser = AsyncMock()
        self.lifecycle = TxLifecycle(
            logger=LOGGER,
            client=self.client,
            signer_pool=self.pool,
            diagnoser=self.diagnoser,
            chain_id=137,
            send_retry_backoff_seconds=0,
            receipt_timeout_seconds=0.01,
            fallback_window_seconds=0,
        )
        self.context = SettlementContext(
            bundle=_bundle(),
            buy_native_price=5 * 10**14,
            sell_native_price=10**18,
        )

    async def _submit(self) -> object:
        return await self.lifecycle.submit(opp=_opp(self.signer.address), signer=self.signer, context=self.context)

    async def test_receipt_timeout_falls_back_to_direct_lookup(self) -> None:
        self.client.wait_for_receipt.side_effect = ReceiptTimeoutError("slow", tx_hash=TX_HASH)
        self.client.get_transaction_receipt.return_value = _receipt(
            logs=(_transfer(BUY, self.signer.address, 5_000_000),)
        )

        outcome = await self._submit()
        self.assertIsInstance(outcome, asyncio.Task)
        result = await outcome  # type: ignore[misc]

        self.assertTrue(result.cleared)
        self.assertEqual(result.status, ProcessPairStatus.FOUND_OPPORTUNITY)
        self.assertIsNone(result.reason)
        self.assertEqual(result.gas_cost, 10**14)
        # 5 USDC at 0.0005 native each, minus gas
        self.assertEqual(result.report["income"], 25 * 10**14)
        self.assertEqual(result.report["netProfit"], 24 * 10**14)
        self.assertEqual(result.report["txHash"], TX_HASH)
        self.assertIn(BUY, self.signer.bounty)
        self.assertEqual(self.signer.balance, 10**18 - 10**14)
        self.client.get_transaction_receipt.assert_awaited_once_with(TX_HASH)

    async def test_reverted_receipt_from_direct_lookup_is_diagnosed(self) -> None:
        self.client.wait_for_receipt.side_effect = ReceiptTimeoutError("slow", tx_hash=TX_HASH)
        self.client.get_transaction_receipt.return_value = _receipt(status=0)
        self.diagnoser.diagnose.return_value = RevertDiagnosis(
            "Error: minimumSenderOutput",
            infrastructure_error=False,
            known_error=True,
        )

        result = await (await self._submit())  # type: ignore[misc]

        self.assertEqual(result.status, ProcessPairStatus.NO_OPPORTUNITY)
        self.assertEqual(result.reason, ProcessPairHaltReason.TX_REVERTED)
        self.assertFalse(result.cleared)
        self.assertEqual(result.gas_cost, 10**14)
        self.assertEqual(self.signer.balance, 10**18 - 10**14)
        self.assertEqual(self.diagnoser.diagnose.await_args.kwargs["orderbook"], ORDERBOOK)

    async def test_send_signs_with_latest_nonce_and_releases_signer(self) -> None:
        self.client.wait_for_receipt.return_value = _receipt()

        outcome = await self._submit()
        await outcome  # type: ignore[misc]

        self.client.get_transaction_count.assert_awaited_once_with(self.signer.address, "latest")
        raw = self.client.send_raw_transaction.await_args.args[0]
        self.assertIsInstance(raw, bytes)
        self.assertFalse(self.signer.busy)

    async def test_missing_receipt_after_fallback_is_mine_failure(self) -> None:
        self.client.wait_for_receipt.side_effect = ReceiptTimeoutError("slow", tx_hash=TX_HASH)
        self.client.get_transaction_receipt.return_value = None

        result = await (await self._submit())  # type: ignore[misc]

        self.assertEqual(result.reason, ProcessPairHaltReason.TX_MINE_FAILED)
        self.assertFalse(result.cleared)
        self.assertEqual(self.signer.balance, 10**18)

    async def test_send_retries_once_then_reports_tx_failed(self) -> None:
        self.client.send_raw_transaction.side_effect = RpcError("nonce too low", kind=RpcErrorKind.NONCE)

        result = await self._submit()

        self.assertNotIsInstance(result, asyncio.Task)
        self.assertEqual(result.reason, ProcessPairHaltReason.TX_FAILED)  # type: ignore[union-attr]
        self.assertEqual(self.client.send_raw_transaction.await_count, 2)
        self.assertFalse(self.signer.busy)

    async def test_send_retry_can_recover(self) -> None:
        self.client.send_raw_transaction.side_effect = [
            RpcError("timeout", kind=RpcErrorKind.TIMEOUT),
            TX_HASH,
        ]
        self.client.wait_for_receipt.return_value = _receipt()

        result = await (await self._submit())  # type: ignore[misc]

        self.assertTrue(result.cleared)
        self.assertEqual(self.client.send_raw_transaction.await_count, 2)

    async def test_application_revert_is_not_an_opportunity(self) -> None:
        self.client.wait_for_receipt.return_value = _receipt(status=0)
        self.diagnoser.diagnose.return_value = RevertDiagnosis(
            "Error: minimumSenderOutput",
            infrastructure_error=False,
            known_error=True,
        )

        result = await (await self._submit())  # type: ignore[misc]

        self.assertEqual(result.status, ProcessPairStatus.NO_OPPORTUNITY)
        self.assertEqual(result.reason, ProcessPairHaltReason.TX_REVERTED)
        self.assertEqual(result.attributes, {"retryable": False, "known_error": True})
        self.assertEqual(result.gas_cost, 10**14)
        self.assertEqual(self.diagnoser.diagnose.await_args.kwargs["signer_balance"], 10**18)

    async def test_infrastructure_revert_is_retryable(self) -> None:
        self.client.wait_for_receipt.return_value = _receipt(status=0)
        self.diagnoser.diagnose.return_value = RevertDiagnosis(
            "simulation failed to find the revert reason",
            infrastructure_error=True,
        )

        result = await (await self._submit())  # type: ignore[misc]

        self.assertEqual(result.status, ProcessPairStatus.FOUND_OPPORTUNITY)
        self.assertTrue(result.attributes["retryable"])


class RevertDiagnoserTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.client = AsyncMock()
        self.diagnoser = RevertDiagnoser(logger=LOGGER, client=self.client, fallback_window_seconds=0)
        self.tx = {"from": "0x" + "aa" * 20, "to": ARB, "data": b"\x01", "gas": 300_000, "gasPrice": 10**9}

    async def test_low_balance_is_a_gas_issue_without_simulation(self) -> None:
        diagnosis = await self.diagnoser.diagnose(receipt=_receipt(status=0), tx=self.tx, signer_balance=1, sent_at=0)

        self.assertTrue(diagnosis.gas_issue)
        self.assertFalse(diagnosis.infrastructure_error)
        self.client.call.assert_not_awaited()

    async def test_decoded_revert_reason(self) -> None:
        data = ERROR_STRING_SELECTOR + encode(["string"], ["minimumSenderOutput"])
        self.client.call.side_effect = RpcError(
            "execution reverted",
            kind=RpcErrorKind.EXECUTION_REVERTED,
            data=to_hex(data),
        )

        diagnosis = await self.diagnoser.diagnose(
            receipt=_receipt(status=0), tx=self.tx, signer_balance=10**18, sent_at=0
        )

        self.assertEqual(diagnosis.reason, "Error: minimumSenderOutput")
        self.assertTrue(diagnosis.known_error)
        self.assertFalse(diagnosis.infrastructure_error)
        self.assertEqual(self.client.call.await_args.kwargs["block"], 10)

    async def test_earlier_take_of_same_order_in_block_is_reported_as_frontrun(self) -> None:
        take_order = _bundle().take_orders[0].take_order.to_abi()
        self.tx["data"] = encode_arb_calldata((0, 2**256 - 1, 2**256 - 1, [take_order], b""), 0)
        receipt = Receipt(
            transaction_hash=TX_HASH,
            status=0,
            block_number=10,
            gas_used=100_000,
            effective_gas_price=10**9,
            block_hash="0x" + "0b" * 32,
            transaction_index=5,
        )
        frontrun_hash = "0x" + "cd" * 32
        event_data = to_hex(
            encode(
                ["address", TAKE_ORDER_CONFIG_TYPE, "uint256", "uint256"],
                ["0x" + "99" * 20, take_order, 1, 1],
            )
        )
        self.client.get_logs.return_value = [
            Log(ORDERBOOK, (TAKE_ORDER_V2_TOPIC,), event_data, transaction_hash=TX_HASH, transaction_index=5),
            Log(ORDERBOOK, (TAKE_ORDER_V2_TOPIC,), event_data, transaction_hash=frontrun_hash, transaction_index=2),
        ]
        self.client.call.side_effect = RpcError("execution reverted", kind=RpcErrorKind.EXECUTION_REVERTED)

        diagnosis = await self.diagnoser.diagnose(
            receipt=receipt, tx=self.tx, signer_balance=10**18, sent_at=0, orderbook=ORDERBOOK
        )

        self.assertFalse(diagnosis.infrastructure_error)
        self.assertEqual(diagnosis.details["frontrun_tx_hash"], frontrun_hash)
        self.assertIn(frontrun_hash, diagnosis.to_dict()["frontrun"])
        self.assertEqual(self.client.get_logs.await_args.kwargs["block_hash"], receipt.block_hash)

    async def test_no_frontrun_check_without_orderbook(self) -> None:
        self.client.call.side_effect = RpcError("execution reverted", kind=RpcErrorKind.EXECUTION_REVERTED)

        diagnosis = await self.diagnoser.diagnose(
            receipt=_receipt(status=0), tx=self.tx, signer_balance=10**18, sent_at=0
        )

        self.assertNotIn("frontrun_tx_hash", diagnosis.details)
        self.client.get_logs.assert_not_awaited()

    async def test_rpc_failure_during_replay_is_infrastructure(self) -> None:
        self.client.call.side_effect = RpcError("timed out", kind=RpcErrorKind.TIMEOUT)

        diagnosis = await self.diagnoser.diagnose(
            receipt=_receipt(status=0), tx=self.tx, signer_balance=10**18, sent_at=0
        )

        self.assertTrue(diagnosis.infrastructure_error)

    async def test_replay_success_twice_yields_unknown_infrastructure_reason(self) -> None:
        self.client.call.return_value = b""

        diagnosis = await self.diagnoser.diagnose(
            receipt=_receipt(status=0), tx=self.tx, signer_balance=10**18, sent_at=0
        )

        self.assertTrue(diagnosis.infrastructure_error)
        self.assertEqual(self.client.call.await_count, 2)


class IncomeTests(unittest.TestCase):
    def test_out_of_gas_detection(self) -> None:
        receipt = _receipt(status=0, gas_used=99_000)

        self.assertEqual(
            check_gas_issue(receipt, tx_gas=100_000, signer_balance=10**18),
            "transaction ran out of specified gas",
        )
        self.assertIsNone(check_gas_issue(receipt, tx_gas=200_000, signer_balance=10**18))

    def test_income_only_counts_transfers_to_recipient(self) -> None:
        recipient = "0x" + "aa" * 20
        receipt = _receipt(
            logs=(
                _transfer(BUY, "0x" + "bb" * 20, 7),
                _transfer(BUY, recipient, 9),
            )
        )

        self.assertEqual(get_income(receipt, token=BUY, recipient=recipient), 9)
        self.assertIsNone(get_income(receipt, token=SELL, recipient=recipient))

    def test_total_income_is_none_without_any_leg(self) -> None:
        self.assertIsNone(
            get_total_income(
                input_income=None,
                output_income=None,
                input_native_price=1,
                output_native_price=1,
                input_decimals=6,
                output_decimals=18,
            )
        )

    def test_total_income_sums_both_legs_in_native(self) -> None:
        total = get_total_income(
            input_income=2_000_000,
            output_income=10**17,
            input_native_price=5 * 10**14,
            output_native_price=10**18,
            input_decimals=6,
            output_decimals=18,
        )

        self.assertEqual(total, 10**15 + 10**17)


if __name__ == "__main__":
    unittest.main()
