from .protection import (
    ChainVaultBalanceReader,
    VaultBalanceReader,
    balance_ratio_percent,
    build_orderbook_token_owner_vaults,
    downscale_protection,
    protection_divisor,
)
from .scheduler import OwnerScheduler, take_round_robin
from .source import HttpOrderSource
from .types import (
    DEFAULT_OWNER_LIMIT,
    IO,
    BundledOrders,
    Evaluable,
    Order,
    OrderbooksOwnersProfileMap,
    OrderProfile,
    OrderRecord,
    OwnerProfile,
    Pair,
    TakeOrder,
    TokenInfo,
    build_pairs,
)

__all__ = [
    "BundledOrders",
    "ChainVaultBalanceReader",
    "DEFAULT_OWNER_LIMIT",
    "Evaluable",
    "HttpOrderSource",
    "IO",
    "Order",
    "OrderProfile",
    "OrderRecord",
    "OrderbooksOwnersProfileMap",
    "OwnerProfile",
    "OwnerScheduler",
    "Pair",
    "TakeOrder",
    "TokenInfo",
    "VaultBalanceReader",
    "balance_ratio_percent",
    "build_orderbook_token_owner_vaults",
    "build_pairs",
    "downscale_protection",
    "protection_divisor",
    "take_round_robin",
]
