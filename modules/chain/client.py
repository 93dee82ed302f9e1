from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from modules.common import log_event
from modules.rpc import RpcError

from .abi import decode_aggregate3, encode_aggregate3, to_bytes, to_hex

DEFAULT_MULTICALL_ADDRESS = "0xca11bde05977b3631167028862be2a173976ca11"


class RpcRequester(Protocol):
    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        ...


class ReceiptTimeoutError(RuntimeError):
    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


def _to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return default
    return int(text, 16) if text.startswith(("0x", "0X")) else int(text)


@dataclass(frozen=True, slots=True)
class Log:
    address: str
    topics: tuple[str, ...]
    data: str
    transaction_hash: str = ""
    transaction_index: int = 0

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "Log":
        return cls(
            address=str(payload.get("address") or "").lower(),
            topics=tuple(str(topic).lower() for topic in payload.get("topics") or ()),
            data=str(payload.get("data") or "0x"),
            transaction_hash=str(payload.get("transactionHash") or "").lower(),
            transaction_index=_to_int(payload.get("transactionIndex")),
        )


@dataclass(frozen=True, slots=True)
class Receipt:
    transaction_hash: str
    status: int
    block_number: int
    gas_used: int
    effective_gas_price: int
    sender: str = ""
    to: str = ""
    l1_fee: int = 0
    logs: tuple[Log, ...] = field(default_factory=tuple)
    block_hash: str = ""
    transaction_index: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1

    @property
    def gas_cost(self) -> int:
        return self.effective_gas_price * self.gas_used + self.l1_fee

    @classmethod
    def from_rpc(cls, payload: dict[str, Any]) -> "Receipt":
        return cls(
            transaction_hash=str(payload.get("transactionHash") or ""),
            status=_to_int(payload.get("status")),
            block_number=_to_int(payload.get("blockNumber")),
            gas_used=_to_int(payload.get("gasUsed")),
            effective_gas_price=_to_int(payload.get("effectiveGasPrice")),
            sender=str(payload.get("from") or "").lower(),
            to=str(payload.get("to") or "").lower(),
            l1_fee=_to_int(payload.get("l1Fee")),
            logs=tuple(Log.from_rpc(item) for item in payload.get("logs") or ()),
            block_hash=str(payload.get("blockHash") or ""),
            transaction_index=_to_int(payload.get("transactionIndex")),
        )


def to_rpc_tx(tx: dict[str, Any]) -> dict[str, Any]:
    """Hex-encode a call/estimate request the way nodes expect it."""
    result: dict[str, Any] = {}
    for key, value in tx.items():
        if value is None:
            continue
        if isinstance(value, bytes):
            result[key] = to_hex(value)
        elif isinstance(value, int) and not isinstance(value, bool):
            result[key] = hex(value)
        else:
            result[key] = value
    return result


class ChainClient:
    """Typed on-chain reads and writes on top of an RPC transport."""

    def __init__(
        self,
        transport: RpcRequester,
        *,
        logger: logging.Logger,
        multicall_address: str = DEFAULT_MULTICALL_ADDRESS,
        receipt_poll_interval_seconds: float = 1.0,
    ) -> None:
        self._transport = transport
        self._logger = logger
        self.multicall_address = multicall_address
        self._receipt_poll_interval_seconds = max(0.05, receipt_poll_interval_seconds)

    async def chain_id(self) -> int:
        return _to_int(await self._transport.request("eth_chainId"))

    async def gas_price(self) -> int:
        return _to_int(await self._transport.request("eth_gasPrice"))

    async def block_number(self) -> int:
        return _to_int(await self._transport.request("eth_blockNumber"))

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return _to_int(await self._transport.request("eth_getBalance", [address, block]))

    async def get_transaction_count(self, address: str, block: str = "latest") -> int:
        return _to_int(await self._transport.request("eth_getTransactionCount", [address, block]))

    async def estimate_gas(self, tx: dict[str, Any]) -> int:
        return _to_int(await self._transport.request("eth_estimateGas", [to_rpc_tx(tx)]))

    async def call(self, tx: dict[str, Any], block: int | str = "latest") -> bytes:
        tag = hex(block) if isinstance(block, int) else block
        result = await self._transport.request("eth_call", [to_rpc_tx(tx), tag])
        return to_bytes(result or "0x")

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        return str(await self._transport.request("eth_sendRawTransaction", [to_hex(raw_tx)]))

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt | None:
        result = await self._transport.request("eth_getTransactionReceipt", [tx_hash])
        if not isinstance(result, dict):
            return None
        return Receipt.from_rpc(result)

    async def get_logs(self, *, address: str, topics: Sequence[str | None], block_hash: str) -> list[Log]:
        result = await self._transport.request(
            "eth_getLogs",
            [{"address": address, "topics": list(topics), "blockHash": block_hash}],
        )
        return [Log.from_rpc(item) for item in result or () if isinstance(item, dict)]

    async def wait_for_receipt(
        self,
        tx_hash: str,
        *,
        confirmations: int = 1,
        timeout_seconds: float,
    ) -> Receipt:
        try:
            return await asyncio.wait_for(
                self._poll_receipt(tx_hash, confirmations=max(1, confirmations)),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError as error:
            raise ReceiptTimeoutError(
                f"Receipt for {tx_hash} not available after {timeout_seconds}s",
                tx_hash=tx_hash,
            ) from error

    async def _poll_receipt(self, tx_hash: str, *, confirmations: int) -> Receipt:
        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
                if receipt is not None:
                    if confirmations <= 1:
                        return receipt
                    head = await self.block_number()
                    if head - receipt.block_number + 1 >= confirmations:
                        return receipt
            except RpcError as error:
                if not error.retryable:
                    raise
                log_event(
                    self._logger,
                    level="debug",
                    event="receipt_poll_failed",
                    message="Receipt poll failed; polling again",
                    tx_hash=tx_hash,
                    error=str(error),
                )
            await asyncio.sleep(self._receipt_poll_interval_seconds)

    async def multicall(self, calls: Sequence[tuple[str, bytes]]) -> list[tuple[bool, bytes]]:
        if not calls:
            return []
        data = await self.call(
            {"to": self.multicall_address, "data": encode_aggregate3(calls)},
        )
        return decode_aggregate3(data)
