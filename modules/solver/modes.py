from __future__ import annotations

from enum import Enum
from typing import Callable

from modules.orders import BundledOrders, TakeOrder


class TakeOrderMode(Enum):
    """How many copies of the head take order go into one arb transaction."""

    SINGLE = 1
    DOUBLE = 2
    TRIPLE = 3


def _single(bundle: BundledOrders) -> list[TakeOrder]:
    return [bundle.take_orders[0].take_order]


def _double(bundle: BundledOrders) -> list[TakeOrder]:
    head = bundle.take_orders[0].take_order
    return [head, head]


def _triple(bundle: BundledOrders) -> list[TakeOrder]:
    head = bundle.take_orders[0].take_order
    return [head, head, head]


MODE_BUILDERS: dict[TakeOrderMode, Callable[[BundledOrders], list[TakeOrder]]] = {
    TakeOrderMode.SINGLE: _single,
    TakeOrderMode.DOUBLE: _double,
    TakeOrderMode.TRIPLE: _triple,
}


def build_take_orders(mode: TakeOrderMode, bundle: BundledOrders) -> list[TakeOrder]:
    if not bundle.take_orders:
        raise ValueError("Cannot build take orders for an empty bundle.")
    return MODE_BUILDERS[mode](bundle)


def modes_for_retries(retries: int) -> list[TakeOrderMode]:
    modes = list(TakeOrderMode)
    return modes[: max(1, min(len(modes), retries))]
