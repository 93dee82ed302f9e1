from __future__ import annotations

from modules.chain.abi import ONE18, normalize_address

from .oracle import LiquidityOracle


async def get_native_price(
    oracle: LiquidityOracle,
    *,
    chain_id: int,
    token: str,
    decimals: int,
    native_token: str,
    gas_price: int,
) -> int:
    """Price of one whole ``token`` in the chain's native gas token, 18-decimal fixed.

    Returns 0 when no route exists, so callers decide whether that is fatal.
    """
    if normalize_address(token) == normalize_address(native_token):
        return ONE18
    await oracle.fetch_pools(token, native_token)
    route = await oracle.find_route(
        chain_id=chain_id,
        from_token=token,
        amount_in=10**decimals,
        to_token=native_token,
        gas_price=gas_price,
    )
    if not route.found:
        return 0
    # wrapped native tokens carry 18 decimals
    return route.amount_out
