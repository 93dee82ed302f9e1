from __future__ import annotations

import logging
import random
from typing import Iterable, Mapping

from eth_abi.exceptions import DecodingError

from modules.common import log_event

from .protection import VaultBalanceReader, downscale_protection
from .types import (
    DEFAULT_OWNER_LIMIT,
    BundledOrders,
    Order,
    OrderbooksOwnersProfileMap,
    OrderProfile,
    OrderRecord,
    OwnerProfile,
    Pair,
    build_pairs,
)


def take_round_robin(pairs: list[Pair], last_index: int, limit: int) -> tuple[list[Pair], int]:
    """Slice up to ``limit`` pairs from ``last_index``, wrapping to the front.

    Returns the slice and the new cursor. Wrapped elements are taken only
    from the part not already sliced, so one slice never repeats a pair.
    """
    if limit <= 0 or not pairs:
        return [], last_index
    tail = pairs[last_index:last_index + limit]
    if len(tail) >= limit:
        return tail, last_index + len(tail)
    head = pairs[:min(last_index, len(pairs))][: limit - len(tail)]
    return tail + head, len(head)


class OwnerScheduler:
    """Owns the orderbook -> owner -> profile map and hands out per-round batches."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        owner_limits: Mapping[str, int] | None = None,
        default_limit: int = DEFAULT_OWNER_LIMIT,
        profiles: OrderbooksOwnersProfileMap | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._logger = logger
        self.owner_limits = {owner.lower(): max(1, int(limit)) for owner, limit in (owner_limits or {}).items()}
        self.default_limit = max(1, default_limit)
        self.profiles: OrderbooksOwnersProfileMap = profiles if profiles is not None else {}
        self._rng = rng or random.Random()
        # set when the order set changed and limits have not been recomputed yet
        self._downscale_pending = False

    def _limit_for(self, owner: str) -> int:
        return self.owner_limits.get(owner, self.default_limit)

    def known_order_hashes(self, *, active_only: bool = True) -> set[str]:
        return {
            order_hash
            for owners in self.profiles.values()
            for owner_profile in owners.values()
            for order_hash, profile in owner_profile.orders.items()
            if profile.active or not active_only
        }

    def add_orders(self, records: Iterable[OrderRecord]) -> int:
        added = 0
        for record in records:
            try:
                order = Order.from_bytes(record.order_bytes)
            except (DecodingError, ValueError) as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="order_decode_failed",
                    message="Skipping order that failed to decode",
                    order_hash=record.order_hash,
                    error=str(error),
                )
                continue

            owner = record.owner or order.owner
            owners = self.profiles.setdefault(record.orderbook, {})
            owner_profile = owners.get(owner)
            if owner_profile is None:
                owner_profile = OwnerProfile(limit=self._limit_for(owner))
                owners[owner] = owner_profile

            existing = owner_profile.orders.get(record.order_hash)
            if existing is not None and existing.active:
                continue
            owner_profile.orders[record.order_hash] = OrderProfile(
                order=order,
                take_orders=build_pairs(record, order),
                active=True,
            )
            added += 1
        return added

    def remove_orders(self, order_hashes: Iterable[str]) -> int:
        """Mark orders inactive; profiles stay so in-flight references remain valid."""
        targets = {order_hash.lower() for order_hash in order_hashes}
        removed = 0
        for owners in self.profiles.values():
            for owner_profile in owners.values():
                for order_hash, profile in owner_profile.orders.items():
                    if order_hash in targets and profile.active:
                        profile.active = False
                        removed += 1
        return removed

    def reset_limits(self) -> None:
        for owners in self.profiles.values():
            for owner, owner_profile in owners.items():
                owner_profile.limit = self._limit_for(owner)

    async def downscale_protection(self, reader: VaultBalanceReader, *, reset: bool = True) -> dict[str, dict[str, int]]:
        if reset:
            self.reset_limits()
        return await downscale_protection(
            self.profiles,
            reader,
            admin_limits=self.owner_limits,
            logger=self._logger,
        )

    async def sync(self, records: Iterable[OrderRecord], reader: VaultBalanceReader | None = None) -> bool:
        """Reconcile with a full snapshot of active orders from the order source."""
        snapshot = {record.order_hash: record for record in records}
        known = self.known_order_hashes()
        added = self.add_orders(record for order_hash, record in snapshot.items() if order_hash not in known)
        removed = self.remove_orders(order_hash for order_hash in known if order_hash not in snapshot)
        changed = bool(added or removed)
        if changed:
            log_event(
                self._logger,
                level="info",
                event="orders_synced",
                message="Order set changed",
                added=added,
                removed=removed,
                active=len(self.known_order_hashes()),
            )
            self._downscale_pending = True
        if reader is not None and self._downscale_pending:
            await self.downscale_protection(reader)
            self._downscale_pending = False
        return changed

    def prepare_round(self, *, shuffle: bool = False) -> list[BundledOrders]:
        result: list[list[BundledOrders]] = []
        for orderbook, owners in self.profiles.items():
            bundles: dict[tuple[str, str], BundledOrders] = {}
            for owner_profile in owners.values():
                selected, owner_profile.last_index = take_round_robin(
                    owner_profile.active_pairs(),
                    owner_profile.last_index,
                    owner_profile.limit,
                )
                for pair in selected:
                    key = (pair.sell_token, pair.buy_token)
                    bundle = bundles.get(key)
                    if bundle is None:
                        bundles[key] = BundledOrders.for_pair(pair)
                    elif all(existing.order_hash != pair.order_hash for existing in bundle.take_orders):
                        bundle.take_orders.append(pair)
            if not bundles:
                continue
            orderbook_bundles = list(bundles.values())
            if shuffle:
                for bundle in orderbook_bundles:
                    self._rng.shuffle(bundle.take_orders)
                self._rng.shuffle(orderbook_bundles)
            result.append(orderbook_bundles)

        if shuffle:
            self._rng.shuffle(result)
        return [bundle for orderbook_bundles in result for bundle in orderbook_bundles]
