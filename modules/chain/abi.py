from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

MAX_UINT256 = 2**256 - 1
ONE18 = 10**18

IO_TYPE = "(address,uint8,uint256)"
EVALUABLE_TYPE = "(address,address,bytes)"
ORDER_TYPE = f"(address,{EVALUABLE_TYPE},{IO_TYPE}[],{IO_TYPE}[],bytes32)"
SIGNED_CONTEXT_TYPE = "(address,uint256[],bytes)"
TAKE_ORDER_CONFIG_TYPE = f"({ORDER_TYPE},uint256,uint256,{SIGNED_CONTEXT_TYPE}[])"
TAKE_ORDERS_CONFIG_TYPE = f"(uint256,uint256,uint256,{TAKE_ORDER_CONFIG_TYPE}[],bytes)"
MULTICALL_CALL_TYPE = "(address,bool,bytes)"

ARB_SELECTOR = function_signature_to_4byte_selector(f"arb({TAKE_ORDERS_CONFIG_TYPE},uint256)")
QUOTE_SELECTOR = function_signature_to_4byte_selector(f"quote({TAKE_ORDER_CONFIG_TYPE})")
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")
VAULT_BALANCE_SELECTOR = function_signature_to_4byte_selector("vaultBalance(address,address,uint256)")
AGGREGATE3_SELECTOR = function_signature_to_4byte_selector(f"aggregate3({MULTICALL_CALL_TYPE}[])")

TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()
TAKE_ORDER_V2_TOPIC = "0x" + keccak(text=f"TakeOrderV2(address,{TAKE_ORDER_CONFIG_TYPE},uint256,uint256)").hex()

ERROR_STRING_SELECTOR = function_signature_to_4byte_selector("Error(string)")
PANIC_SELECTOR = function_signature_to_4byte_selector("Panic(uint256)")
KNOWN_ERROR_SIGNATURES = (
    "MinimalOutputBalanceViolation(uint256)",
    "MinimumInput(uint256,uint256)",
    "ZeroMaximumInput()",
    "NoOrders()",
    "SameOwner()",
    "TokenMismatch()",
    "TokenDecimalsMismatch()",
    "WrongTask()",
    "NonZeroBeforeArbStack()",
    "BadLender(address)",
    "BadInitiator(address)",
)
KNOWN_ERRORS = {
    function_signature_to_4byte_selector(signature): signature for signature in KNOWN_ERROR_SIGNATURES
}
PANIC_REASONS = {
    0x01: "assertion failed",
    0x11: "arithmetic underflow or overflow",
    0x12: "division or modulo by zero",
    0x21: "invalid enum value",
    0x22: "invalid storage byte array",
    0x31: "pop on empty array",
    0x32: "array index out of bounds",
    0x41: "out of memory",
    0x51: "call to zero-initialized function",
}


def to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    text = value[2:] if value.startswith(("0x", "0X")) else value
    return bytes.fromhex(text)


def to_hex(value: bytes) -> str:
    return "0x" + value.hex()


def normalize_address(value: str) -> str:
    return str(value).strip().lower()


def scale_to_18(value: int, decimals: int) -> int:
    if decimals <= 18:
        return value * 10 ** (18 - decimals)
    return value // 10 ** (decimals - 18)


def scale_from_18(value: int, decimals: int) -> int:
    if decimals <= 18:
        return value // 10 ** (18 - decimals)
    return value * 10 ** (decimals - 18)


def decode_order(order_bytes: str | bytes) -> tuple[Any, ...]:
    """Decode ABI-encoded ``OrderV3`` bytes into the raw ABI tuple."""
    (order,) = decode([ORDER_TYPE], to_bytes(order_bytes))
    return order


def encode_order(order_tuple: tuple[Any, ...]) -> bytes:
    return encode([ORDER_TYPE], [order_tuple])


def order_hash(order_tuple: tuple[Any, ...]) -> str:
    return "0x" + keccak(encode_order(order_tuple)).hex()


def encode_arb_calldata(take_orders_config: tuple[Any, ...], minimum_sender_output: int) -> bytes:
    return ARB_SELECTOR + encode(
        [TAKE_ORDERS_CONFIG_TYPE, "uint256"],
        [take_orders_config, minimum_sender_output],
    )


def decode_arb_take_orders(data: str | bytes) -> list[tuple[Any, ...]]:
    """Take-order configs of ``arb`` calldata; empty for any other call."""
    raw = to_bytes(data)
    if raw[:4] != ARB_SELECTOR:
        return []
    take_orders_config, _ = decode([TAKE_ORDERS_CONFIG_TYPE, "uint256"], raw[4:])
    return list(take_orders_config[3])


def decode_take_order_event(data: str | bytes) -> tuple[str, tuple[Any, ...], int, int]:
    sender, config, input_amount, output_amount = decode(
        ["address", TAKE_ORDER_CONFIG_TYPE, "uint256", "uint256"],
        to_bytes(data),
    )
    return str(sender), config, int(input_amount), int(output_amount)


def encode_route_data(route_code: bytes) -> bytes:
    return encode(["bytes"], [route_code])


def encode_quote_calldata(take_order_config: tuple[Any, ...]) -> bytes:
    return QUOTE_SELECTOR + encode([TAKE_ORDER_CONFIG_TYPE], [take_order_config])


def decode_quote(data: bytes) -> tuple[bool, int, int]:
    exists, max_output, ratio = decode(["bool", "uint256", "uint256"], data)
    return bool(exists), int(max_output), int(ratio)


def encode_balance_of(owner: str) -> bytes:
    return BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(owner)])


def encode_vault_balance(owner: str, token: str, vault_id: int) -> bytes:
    return VAULT_BALANCE_SELECTOR + encode(
        ["address", "address", "uint256"],
        [to_checksum_address(owner), to_checksum_address(token), vault_id],
    )


def decode_uint256(data: bytes) -> int:
    (value,) = decode(["uint256"], data)
    return int(value)


def encode_aggregate3(calls: Sequence[tuple[str, bytes]], *, allow_failure: bool = False) -> bytes:
    payload = [(to_checksum_address(target), allow_failure, calldata) for target, calldata in calls]
    return AGGREGATE3_SELECTOR + encode([f"{MULTICALL_CALL_TYPE}[]"], [payload])


def decode_aggregate3(data: bytes) -> list[tuple[bool, bytes]]:
    (results,) = decode(["(bool,bytes)[]"], data)
    return [(bool(success), bytes(return_data)) for success, return_data in results]


def topic_to_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


@dataclass(frozen=True, slots=True)
class DecodedError:
    name: str
    args: tuple[Any, ...] = ()
    selector: str = ""

    def describe(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}: {', '.join(str(arg) for arg in self.args)}"


def decode_revert_data(data: str | bytes | None) -> DecodedError | None:
    if not data:
        return None
    raw = to_bytes(data)
    if len(raw) < 4:
        return None
    selector, body = raw[:4], raw[4:]
    try:
        if selector == ERROR_STRING_SELECTOR:
            (reason,) = decode(["string"], body)
            return DecodedError("Error", (reason,), to_hex(selector))
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], body)
            return DecodedError("Panic", (PANIC_REASONS.get(int(code), hex(int(code))),), to_hex(selector))
        signature = KNOWN_ERRORS.get(selector)
        if signature is not None:
            name, _, arg_list = signature.partition("(")
            arg_types = [item for item in arg_list.rstrip(")").split(",") if item]
            values = decode(arg_types, body) if arg_types else ()
            return DecodedError(name, tuple(values), to_hex(selector))
    except DecodingError:
        # malformed payload for a known selector; report the selector only
        return DecodedError("UnknownError", (), to_hex(selector))
    return DecodedError("UnknownError", (), to_hex(selector))
