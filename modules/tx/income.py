from __future__ import annotations

from modules.chain import Receipt
from modules.chain.abi import ONE18, TRANSFER_TOPIC, normalize_address, scale_to_18, to_bytes, topic_to_address


def get_income(receipt: Receipt, *, token: str, recipient: str) -> int | None:
    """Value of the first ERC-20 Transfer of ``token`` to ``recipient`` in the receipt."""
    token_address = normalize_address(token)
    recipient_address = normalize_address(recipient)
    for log in receipt.logs:
        if log.address != token_address or len(log.topics) < 3:
            continue
        if log.topics[0] != TRANSFER_TOPIC:
            continue
        if topic_to_address(log.topics[2]) != recipient_address:
            continue
        return int.from_bytes(to_bytes(log.data), "big") if log.data not in ("", "0x") else 0
    return None


def get_total_income(
    *,
    input_income: int | None,
    output_income: int | None,
    input_native_price: int,
    output_native_price: int,
    input_decimals: int,
    output_decimals: int,
) -> int | None:
    """Both legs converted to native gas token, 18 decimals; None when neither leg paid out."""
    if input_income is None and output_income is None:
        return None
    total = 0
    if input_income is not None:
        total += scale_to_18(input_income, input_decimals) * input_native_price // ONE18
    if output_income is not None:
        total += scale_to_18(output_income, output_decimals) * output_native_price // ONE18
    return total
