from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Protocol

import aiohttp

from modules.chain.abi import to_bytes
from modules.common import log_event

RouteStatus = Literal["Success", "NoWay"]


class OracleError(RuntimeError):
    def __init__(self, message: str, *, kind: str = "failed_to_get_route") -> None:
        super().__init__(message)
        self.kind = kind


class RouteRateLimitError(OracleError):
    def __init__(self, message: str, *, retry_after_seconds: float | None = None) -> None:
        super().__init__(message, kind="rate_limited")
        self.retry_after_seconds = retry_after_seconds


@dataclass(frozen=True, slots=True)
class Route:
    status: RouteStatus
    amount_out: int = 0
    legs: tuple[dict[str, Any], ...] = ()
    route_code: bytes = b""

    @property
    def found(self) -> bool:
        return self.status == "Success" and self.amount_out > 0

    def visualize(self) -> list[str]:
        lines: list[str] = []
        for leg in self.legs:
            token_from = leg.get("tokenFrom") or leg.get("from") or "?"
            token_to = leg.get("tokenTo") or leg.get("to") or "?"
            pool = leg.get("poolName") or leg.get("poolAddress") or "?"
            share = leg.get("absolutePortion") or leg.get("portion")
            prefix = f"{float(share) * 100:.2f}% --> " if share is not None else ""
            lines.append(f"{prefix}{token_from}/{token_to} ({pool})")
        return lines


class LiquidityOracle(Protocol):
    async def fetch_pools(self, from_token: str, to_token: str) -> None:
        ...

    async def find_route(
        self,
        *,
        chain_id: int,
        from_token: str,
        amount_in: int,
        to_token: str,
        gas_price: int,
    ) -> Route:
        ...

    async def build_route_data(self, route: Route, *, sender: str, to: str) -> bytes:
        ...


def _parse_retry_after_seconds(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class _TokenBucket:
    def __init__(self, *, rate_per_second: float, capacity: float) -> None:
        self._rate_per_second = max(0.01, float(rate_per_second))
        self._capacity = max(1.0, float(capacity))
        self._tokens = self._capacity
        self._updated_at = 0.0

    def _refill(self, *, now: float) -> None:
        if self._updated_at <= 0:
            self._updated_at = now
            return
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate_per_second)
        self._updated_at = now

    def wait_time(self, *, now: float) -> float:
        self._refill(now=now)
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self._rate_per_second

    def consume(self, *, now: float) -> None:
        self._refill(now=now)
        self._tokens = max(0.0, self._tokens - 1.0)


@dataclass(slots=True)
class _PoolCacheEntry:
    fetched_at: float
    pairs: set[tuple[str, str]] = field(default_factory=set)


class HttpRouteOracle:
    """Route lookups against an HTTP routing API.

    The API is expected to answer ``GET <url>?tokenIn&tokenOut&amount&gasPrice&chainId&to``
    with ``{"status": "Success"|"NoWay", "amountOut", "legs", "routeCode"}``.
    Requests share a token bucket; HTTP 429 raises ``RouteRateLimitError``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        url: str,
        recipient: str,
        timeout_seconds: float = 8.0,
        requests_per_second: float = 10.0,
        pool_ttl_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._logger = logger
        self._url = url
        self._recipient = recipient
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._bucket = _TokenBucket(rate_per_second=requests_per_second, capacity=max(1.0, requests_per_second))
        self._pool_ttl_seconds = max(0.0, pool_ttl_seconds)
        self._clock = clock
        self._pools = _PoolCacheEntry(fetched_at=0.0)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_pools(self, from_token: str, to_token: str) -> None:
        """Warm the API for a token pair; a failure here means pools are unavailable."""
        now = self._clock()
        key = (from_token.lower(), to_token.lower())
        if key in self._pools.pairs and now - self._pools.fetched_at < self._pool_ttl_seconds:
            return
        try:
            await self._get({"tokenIn": from_token, "tokenOut": to_token, "preview": "true"})
        except OracleError as error:
            raise OracleError(f"Failed to fetch pools: {error}", kind="failed_to_get_pools") from error
        if now - self._pools.fetched_at >= self._pool_ttl_seconds:
            self._pools = _PoolCacheEntry(fetched_at=now)
        self._pools.pairs.add(key)

    async def find_route(
        self,
        *,
        chain_id: int,
        from_token: str,
        amount_in: int,
        to_token: str,
        gas_price: int,
    ) -> Route:
        data = await self._get(
            {
                "chainId": str(chain_id),
                "tokenIn": from_token,
                "tokenOut": to_token,
                "amount": str(amount_in),
                "gasPrice": str(gas_price),
                "to": self._recipient,
            }
        )
        status = str(data.get("status") or "NoWay")
        if status != "Success":
            return Route(status="NoWay")
        route_code = data.get("routeCode") or "0x"
        return Route(
            status="Success",
            amount_out=int(data.get("amountOut") or 0),
            legs=tuple(leg for leg in data.get("legs") or () if isinstance(leg, dict)),
            route_code=to_bytes(str(route_code)),
        )

    async def build_route_data(self, route: Route, *, sender: str, to: str) -> bytes:
        if not route.found:
            raise OracleError("Cannot build route data for a route that was not found")
        if not route.route_code:
            raise OracleError("Routing API did not return route code")
        return route.route_code

    async def _get(self, params: dict[str, str]) -> dict[str, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Routing HTTP session is not initialized.")

        wait_seconds = self._bucket.wait_time(now=self._clock())
        if wait_seconds > 0:
            await asyncio.sleep(wait_seconds)
        self._bucket.consume(now=self._clock())

        try:
            async with self._session.get(self._url, params=params) as response:
                status = response.status
                retry_after_seconds = _parse_retry_after_seconds(response.headers.get("Retry-After"))
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise OracleError(f"Route request failed: {error or type(error).__name__}") from error

        if status == 429:
            log_event(
                self._logger,
                level="warning",
                event="route_api_rate_limited",
                message="Routing API rate limited the request",
                retry_after_seconds=retry_after_seconds,
            )
            raise RouteRateLimitError(
                f"Route request rate limited: status={status}",
                retry_after_seconds=retry_after_seconds,
            )
        if status >= 400:
            raise OracleError(f"Route request failed: status={status} body={body[:200]}")

        try:
            data = json.loads(body)
        except json.JSONDecodeError as error:
            raise OracleError(f"Route response is not JSON: {body[:200]}") from error
        if not isinstance(data, dict):
            raise OracleError(f"Unexpected route response: {body[:200]}")
        return data
