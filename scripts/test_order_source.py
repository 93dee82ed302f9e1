from __future__ import annotations

import logging
import unittest
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from modules.bot_runtime import sync_orders
from modules.chain.abi import encode_order, to_hex
from modules.orders import IO, Evaluable, HttpOrderSource, Order, OwnerScheduler

URL = "https://orders.example/active"
ORDERBOOK = "0x" + "d1" * 20
OWNER = "0x" + "a1" * 20
SELL = "0x" + "b1" * 20
BUY = "0x" + "c1" * 20
LOGGER = logging.getLogger("test.orders")


class _FakeResponse:
    def __init__(self, *, status: int = 200, body: Any = None) -> None:
        self.status = status
        self._body = body

    async def json(self, content_type: str | None = None) -> Any:
        return self._body


class _FakeRequest:
    def __init__(self, response: _FakeResponse) -> None:
        self._response = response

    async def __aenter__(self) -> _FakeResponse:
        return self._response

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class _FakeSession:
    closed = False

    def __init__(self, response: _FakeResponse) -> None:
        self._response = response
        self.urls: list[str] = []

    def get(self, url: str) -> _FakeRequest:
        self.urls.append(url)
        return _FakeRequest(self._response)


def _item(order_hash: str, **overrides: Any) -> dict[str, Any]:
    order = Order(
        owner=OWNER,
        evaluable=Evaluable("0x" + "01" * 20, "0x" + "02" * 20, b"\x00"),
        valid_inputs=(IO(BUY, 6, 1),),
        valid_outputs=(IO(SELL, 18, 1),),
        nonce=int(order_hash, 16).to_bytes(32, "big"),
    )
    item: dict[str, Any] = {
        "orderHash": order_hash,
        "owner": OWNER,
        "orderbook": {"id": ORDERBOOK},
        "orderBytes": to_hex(encode_order(order.to_abi())),
        "outputs": [{"token": {"address": SELL, "symbol": "WETH", "decimals": "18"}}],
        "inputs": [{"token": {"address": BUY, "symbol": "USDC", "decimals": "6"}}],
    }
    item.update(overrides)
    return item


def _hash(index: int) -> str:
    return "0x" + f"{index:064x}"


def _source(response: _FakeResponse) -> tuple[HttpOrderSource, _FakeSession]:
    session = _FakeSession(response)
    source = HttpOrderSource(logger=LOGGER, url=URL, session=session)  # type: ignore[arg-type]
    return source, session


class HttpOrderSourceTests(unittest.IsolatedAsyncioTestCase):
    async def test_plain_list_payload(self) -> None:
        source, session = _source(_FakeResponse(body=[_item(_hash(1)), _item(_hash(2))]))

        records = await source.fetch_orders()

        self.assertEqual(session.urls, [URL])
        self.assertEqual([record.order_hash for record in records], [_hash(1), _hash(2)])
        self.assertEqual(records[0].orderbook, ORDERBOOK)
        self.assertEqual(records[0].token_info(BUY).symbol, "USDC")  # type: ignore[union-attr]

    async def test_wrapped_payload(self) -> None:
        source, _ = _source(_FakeResponse(body={"orders": [_item(_hash(1))]}))

        records = await source.fetch_orders()

        self.assertEqual([record.order_hash for record in records], [_hash(1)])

    async def test_inactive_and_incomplete_records_are_dropped(self) -> None:
        source, _ = _source(
            _FakeResponse(
                body=[
                    _item(_hash(1), active=False),
                    _item(_hash(2), orderHash=""),
                    _item(_hash(3), orderbook=None),
                    "not-a-record",
                    _item(_hash(4), active=True),
                ]
            )
        )

        records = await source.fetch_orders()

        self.assertEqual([record.order_hash for record in records], [_hash(4)])

    async def test_http_error_raises(self) -> None:
        source, _ = _source(_FakeResponse(status=502, body={"error": "bad gateway"}))

        with self.assertRaises(RuntimeError) as ctx:
            await source.fetch_orders()

        self.assertIn("status=502", str(ctx.exception))

    async def test_unexpected_payload_raises(self) -> None:
        source, _ = _source(_FakeResponse(body={"data": {}}))

        with self.assertRaises(RuntimeError):
            await source.fetch_orders()

    async def test_injected_session_is_left_open(self) -> None:
        session = MagicMock()
        session.closed = False
        session.close = AsyncMock()
        source = HttpOrderSource(logger=LOGGER, url=URL, session=session)

        await source.close()

        session.close.assert_not_awaited()


class SyncOrdersTests(unittest.IsolatedAsyncioTestCase):
    async def test_sync_loads_snapshot_and_refreshes_signers(self) -> None:
        source, _ = _source(_FakeResponse(body={"orders": [_item(_hash(1)), _item(_hash(2))]}))
        signer_pool = MagicMock()
        signer_pool.refresh_balances = AsyncMock()
        runtime = SimpleNamespace(
            order_source=source,
            scheduler=OwnerScheduler(logger=LOGGER),
            vault_reader=None,
            signer_pool=signer_pool,
            client=object(),
        )

        changed = await sync_orders(runtime, logger=LOGGER)  # type: ignore[arg-type]

        self.assertTrue(changed)
        self.assertEqual(runtime.scheduler.known_order_hashes(), {_hash(1), _hash(2)})
        signer_pool.refresh_balances.assert_awaited_once_with(runtime.client)

        self.assertFalse(await sync_orders(runtime, logger=LOGGER))  # type: ignore[arg-type]


if __name__ == "__main__":
    unittest.main()
