from __future__ import annotations

import logging
from typing import Mapping, Protocol, Sequence

from modules.chain import ChainClient
from modules.chain.abi import decode_uint256, encode_balance_of, encode_vault_balance
from modules.common import log_event

from .types import OrderbooksOwnersProfileMap

# orderbook -> token -> owner -> vault ids
OrderbookTokenOwnerVaultsMap = dict[str, dict[str, dict[str, list[int]]]]


class VaultBalanceReader(Protocol):
    async def token_balance(self, token: str, holder: str) -> int:
        ...

    async def vault_balances(
        self,
        orderbook: str,
        owner: str,
        token: str,
        vault_ids: Sequence[int],
    ) -> list[int]:
        ...


class ChainVaultBalanceReader:
    """Reads ERC-20 and orderbook vault balances, vaults batched through multicall."""

    def __init__(self, client: ChainClient) -> None:
        self._client = client

    async def token_balance(self, token: str, holder: str) -> int:
        data = await self._client.call({"to": token, "data": encode_balance_of(holder)})
        return decode_uint256(data)

    async def vault_balances(
        self,
        orderbook: str,
        owner: str,
        token: str,
        vault_ids: Sequence[int],
    ) -> list[int]:
        results = await self._client.multicall(
            [(orderbook, encode_vault_balance(owner, token, vault_id)) for vault_id in vault_ids]
        )
        balances: list[int] = []
        for vault_id, (success, data) in zip(vault_ids, results):
            if not success:
                raise RuntimeError(f"vaultBalance call failed for vault {vault_id} of {owner}")
            balances.append(decode_uint256(data))
        return balances


def build_orderbook_token_owner_vaults(
    profiles: OrderbooksOwnersProfileMap,
) -> OrderbookTokenOwnerVaultsMap:
    result: OrderbookTokenOwnerVaultsMap = {}
    for orderbook, owners in profiles.items():
        tokens = result.setdefault(orderbook, {})
        for owner, owner_profile in owners.items():
            for pair in owner_profile.active_pairs():
                vaults = tokens.setdefault(pair.sell_token, {}).setdefault(owner, [])
                if pair.output_vault_id not in vaults:
                    vaults.append(pair.output_vault_id)
    return result


def protection_divisor(balance_ratio_percent: int) -> int:
    if balance_ratio_percent >= 75:
        return 1
    if balance_ratio_percent >= 50:
        return 2
    if balance_ratio_percent >= 25:
        return 3
    if balance_ratio_percent > 0:
        return 4
    return 1


def balance_ratio_percent(*, vault_balances: Sequence[int], orderbook_balance: int) -> int:
    owner_total = sum(vault_balances)
    average = owner_total // len(vault_balances) if vault_balances else 0
    others = orderbook_balance - owner_total
    if others == 0:
        return 100
    return (average * 100) // others


def round_half_up(value: float) -> int:
    return int(value + 0.5)


async def downscale_protection(
    profiles: OrderbooksOwnersProfileMap,
    reader: VaultBalanceReader,
    *,
    admin_limits: Mapping[str, int] | None = None,
    logger: logging.Logger | None = None,
) -> dict[str, dict[str, int]]:
    """Divide each owner's limit by how thinly they spread liquidity across vaults.

    An owner whose average vault balance is small compared to everyone
    else's balance of the same token gets a larger divisor. Divisors are
    averaged over every token the owner sells on an orderbook. Owners with
    an admin limit are left alone. Limits must be reset beforehand or the
    cut compounds. Returns the new limits per orderbook and owner.
    """
    pinned = {owner.lower() for owner in (admin_limits or {})}
    applied: dict[str, dict[str, int]] = {}
    for orderbook, tokens in build_orderbook_token_owner_vaults(profiles).items():
        owners = profiles.get(orderbook)
        if not owners:
            continue
        owner_cuts: dict[str, list[int]] = {}
        for token, owner_vaults in tokens.items():
            orderbook_balance = await reader.token_balance(token, orderbook)
            for owner, vault_ids in owner_vaults.items():
                if owner in pinned or owner not in owners:
                    continue
                balances = await reader.vault_balances(orderbook, owner, token, vault_ids)
                percent = balance_ratio_percent(
                    vault_balances=balances,
                    orderbook_balance=orderbook_balance,
                )
                owner_cuts.setdefault(owner, []).append(protection_divisor(percent))

        for owner, cuts in owner_cuts.items():
            profile = owners[owner]
            average_cut = sum(cuts) / len(cuts)
            profile.limit = max(1, round_half_up(profile.limit / average_cut))
            applied.setdefault(orderbook, {})[owner] = profile.limit

    if logger is not None and applied:
        log_event(
            logger,
            level="info",
            event="owner_limits_downscaled",
            message="Owner limits evaluated",
            limits=applied,
        )
    return applied
