from __future__ import annotations

import asyncio
import itertools
import json
import logging
import time
from typing import Any, Callable, Sequence

import aiohttp

from modules.common import log_event

from .errors import RpcError, RpcErrorKind, rpc_error_from_payload
from .records import RpcHealthState, normalize_url

# results that can never change for the lifetime of an endpoint set
CACHEABLE_METHODS = frozenset({"eth_chainId"})


class RpcHealthTransport:
    """JSON-RPC over a set of endpoints with per-endpoint health counters.

    Each request starts on the next endpoint in round-robin order. A
    retryable failure is re-issued on a different endpoint exactly once;
    non-retryable errors (reverts, insufficient funds, nonce and rejection
    errors) propagate from the first endpoint untouched.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        urls: Sequence[str],
        timeout_seconds: float = 10.0,
        state: RpcHealthState | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not urls:
            raise ValueError("At least one RPC url is required.")
        self._logger = logger
        self._urls = [normalize_url(url) for url in urls]
        self._timeout_seconds = max(0.5, timeout_seconds)
        self.state = state or RpcHealthState(self._urls)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._cursor = 0
        self._ids = itertools.count(1)
        self._cache: dict[str, Any] = {}

    @property
    def urls(self) -> list[str]:
        return list(self._urls)

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def endpoints_for_request(self) -> list[str]:
        start = self._cursor % len(self._urls)
        self._cursor += 1
        if len(self._urls) == 1:
            return [self._urls[start]]
        return [self._urls[start], self._urls[(start + 1) % len(self._urls)]]

    async def request(self, method: str, params: list[Any] | None = None) -> Any:
        if method in self._cache:
            self.state.record_cache(self._urls[self._cursor % len(self._urls)])
            return self._cache[method]

        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        endpoints = self.endpoints_for_request()
        last_error: RpcError | None = None
        for attempt, url in enumerate(endpoints, start=1):
            try:
                result = await self._attempt(url, method, payload)
            except RpcError as error:
                if not error.retryable:
                    raise
                last_error = error
                log_event(
                    self._logger,
                    level="debug",
                    event="rpc_attempt_failed",
                    message="RPC attempt failed",
                    method=method,
                    url=url,
                    attempt=attempt,
                    kind=error.kind.value,
                    error=str(error),
                )
                continue

            if method in CACHEABLE_METHODS:
                self._cache[method] = result
            return result

        assert last_error is not None
        raise last_error

    async def _attempt(self, url: str, method: str, payload: dict[str, Any]) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self.state.record_request(url, self._clock())
        try:
            body = await self._post(url, method, payload)
        except RpcError:
            self.state.record_failure(url)
            raise
        except asyncio.TimeoutError as error:
            self.state.record_failure(url)
            raise RpcError(
                f"RPC call timed out: method={method}",
                kind=RpcErrorKind.TIMEOUT,
                url=url,
            ) from error
        except aiohttp.ClientError as error:
            self.state.record_failure(url)
            raise RpcError(
                f"RPC transport error: method={method} error={error or type(error).__name__}",
                kind=RpcErrorKind.TRANSPORT,
                url=url,
            ) from error

        if not isinstance(body, dict) or ("result" not in body and "error" not in body):
            self.state.record_failure(url)
            raise RpcError(
                f"Invalid RPC response for {method}: {str(body)[:200]}",
                kind=RpcErrorKind.MALFORMED,
                url=url,
            )

        if body.get("error") is not None:
            error = rpc_error_from_payload(body["error"], url=url)
            # a revert means the endpoint did its job; the call itself failed
            if error.retryable:
                self.state.record_failure(url)
            else:
                self.state.record_success(url)
            raise error

        self.state.record_success(url)
        return body.get("result")

    async def _post(self, url: str, method: str, payload: dict[str, Any]) -> Any:
        assert self._session is not None
        async with self._session.post(url, json=payload) as response:
            if response.status >= 400:
                text = await response.text()
                raise RpcError(
                    f"RPC call failed: method={method} status={response.status} body={text[:200]}",
                    kind=RpcErrorKind.HTTP_ERROR,
                    url=url,
                    code=response.status,
                )
            try:
                return await response.json(content_type=None)
            except (json.JSONDecodeError, ValueError) as error:
                raise RpcError(
                    f"RPC response for {method} is not JSON",
                    kind=RpcErrorKind.MALFORMED,
                    url=url,
                ) from error
