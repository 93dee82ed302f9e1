from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from modules.chain.abi import decode_order, normalize_address, order_hash, to_bytes, to_hex

DEFAULT_OWNER_LIMIT = 25


def to_int(value: Any, default: int = 0) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        text = str(value).strip()
        return int(text, 16) if text.startswith(("0x", "0X")) else int(text)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True, slots=True)
class TokenInfo:
    address: str
    symbol: str
    decimals: int

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TokenInfo":
        token = payload.get("token") if isinstance(payload.get("token"), dict) else payload
        return cls(
            address=normalize_address(token.get("address") or token.get("id") or ""),
            symbol=str(token.get("symbol") or "UnknownSymbol"),
            decimals=to_int(token.get("decimals"), 18),
        )


@dataclass(frozen=True, slots=True)
class IO:
    token: str
    decimals: int
    vault_id: int

    def to_abi(self) -> tuple[str, int, int]:
        return (self.token, self.decimals, self.vault_id)


@dataclass(frozen=True, slots=True)
class Evaluable:
    interpreter: str
    store: str
    bytecode: bytes

    def to_abi(self) -> tuple[str, str, bytes]:
        return (self.interpreter, self.store, self.bytecode)


@dataclass(frozen=True, slots=True)
class Order:
    owner: str
    evaluable: Evaluable
    valid_inputs: tuple[IO, ...]
    valid_outputs: tuple[IO, ...]
    nonce: bytes

    @classmethod
    def from_abi(cls, raw: tuple[Any, ...]) -> "Order":
        owner, evaluable, inputs, outputs, nonce = raw
        return cls(
            owner=normalize_address(owner),
            evaluable=Evaluable(
                interpreter=normalize_address(evaluable[0]),
                store=normalize_address(evaluable[1]),
                bytecode=bytes(evaluable[2]),
            ),
            valid_inputs=tuple(IO(normalize_address(t), int(d), int(v)) for t, d, v in inputs),
            valid_outputs=tuple(IO(normalize_address(t), int(d), int(v)) for t, d, v in outputs),
            nonce=bytes(nonce),
        )

    @classmethod
    def from_bytes(cls, order_bytes: str | bytes) -> "Order":
        return cls.from_abi(decode_order(order_bytes))

    def to_abi(self) -> tuple[Any, ...]:
        return (
            self.owner,
            self.evaluable.to_abi(),
            [io.to_abi() for io in self.valid_inputs],
            [io.to_abi() for io in self.valid_outputs],
            self.nonce,
        )

    @property
    def hash(self) -> str:
        return order_hash(self.to_abi())


@dataclass(frozen=True, slots=True)
class TakeOrder:
    order: Order
    input_io_index: int
    output_io_index: int
    signed_context: tuple[Any, ...] = ()

    def to_abi(self) -> tuple[Any, ...]:
        return (
            self.order.to_abi(),
            self.input_io_index,
            self.output_io_index,
            list(self.signed_context),
        )


@dataclass(frozen=True, slots=True)
class Pair:
    """One (sell, buy) projection of an order; sell is what the order gives."""

    orderbook: str
    order_hash: str
    take_order: TakeOrder
    sell_token: str
    sell_decimals: int
    sell_symbol: str
    buy_token: str
    buy_decimals: int
    buy_symbol: str

    @property
    def owner(self) -> str:
        return self.take_order.order.owner

    @property
    def output_vault_id(self) -> int:
        return self.take_order.order.valid_outputs[self.take_order.output_io_index].vault_id

    @property
    def token_pair(self) -> str:
        return f"{self.buy_symbol}/{self.sell_symbol}"


@dataclass(slots=True)
class BundledOrders:
    orderbook: str
    sell_token: str
    sell_decimals: int
    sell_symbol: str
    buy_token: str
    buy_decimals: int
    buy_symbol: str
    take_orders: list[Pair] = field(default_factory=list)

    @classmethod
    def for_pair(cls, pair: Pair, take_orders: list[Pair] | None = None) -> "BundledOrders":
        return cls(
            orderbook=pair.orderbook,
            sell_token=pair.sell_token,
            sell_decimals=pair.sell_decimals,
            sell_symbol=pair.sell_symbol,
            buy_token=pair.buy_token,
            buy_decimals=pair.buy_decimals,
            buy_symbol=pair.buy_symbol,
            take_orders=list(take_orders) if take_orders is not None else [pair],
        )

    @property
    def token_pair(self) -> str:
        return f"{self.buy_symbol}/{self.sell_symbol}"


@dataclass(slots=True)
class OrderProfile:
    order: Order
    take_orders: list[Pair]
    active: bool = True


@dataclass(slots=True)
class OwnerProfile:
    limit: int
    orders: dict[str, OrderProfile] = field(default_factory=dict)
    last_index: int = 0

    def active_pairs(self) -> list[Pair]:
        return [
            pair
            for profile in self.orders.values()
            if profile.active
            for pair in profile.take_orders
        ]


OrderbooksOwnersProfileMap = dict[str, dict[str, OwnerProfile]]


@dataclass(frozen=True, slots=True)
class OrderRecord:
    order_hash: str
    owner: str
    orderbook: str
    order_bytes: bytes
    tokens: tuple[TokenInfo, ...] = ()

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "OrderRecord":
        orderbook = payload.get("orderbook")
        if isinstance(orderbook, dict):
            orderbook = orderbook.get("id")
        tokens = [
            TokenInfo.from_dict(item)
            for key in ("inputs", "outputs", "validInputs", "validOutputs")
            for item in payload.get(key) or ()
            if isinstance(item, dict)
        ]
        return cls(
            order_hash=str(payload.get("orderHash") or "").lower(),
            owner=normalize_address(payload.get("owner") or ""),
            orderbook=normalize_address(orderbook or ""),
            order_bytes=to_bytes(str(payload.get("orderBytes") or "0x")),
            tokens=tuple({token.address: token for token in tokens}.values()),
        )

    def token_info(self, address: str) -> TokenInfo | None:
        for token in self.tokens:
            if token.address == address:
                return token
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderHash": self.order_hash,
            "owner": self.owner,
            "orderbook": self.orderbook,
            "orderBytes": to_hex(self.order_bytes),
        }


def build_pairs(record: OrderRecord, order: Order) -> list[Pair]:
    """Every output x input combination of an order, skipping same-token legs."""
    pairs: list[Pair] = []
    for output_index, output in enumerate(order.valid_outputs):
        for input_index, input_io in enumerate(order.valid_inputs):
            if output.token == input_io.token:
                continue
            sell_info = record.token_info(output.token)
            buy_info = record.token_info(input_io.token)
            pairs.append(
                Pair(
                    orderbook=record.orderbook,
                    order_hash=record.order_hash,
                    take_order=TakeOrder(order, input_index, output_index),
                    sell_token=output.token,
                    sell_decimals=output.decimals,
                    sell_symbol=sell_info.symbol if sell_info else "UnknownSymbol",
                    buy_token=input_io.token,
                    buy_decimals=input_io.decimals,
                    buy_symbol=buy_info.symbol if buy_info else "UnknownSymbol",
                )
            )
    return pairs
