from __future__ import annotations

import logging
from typing import Any

import aiohttp

from modules.common import log_event

from .types import OrderRecord


class HttpOrderSource:
    """Pulls the current set of active orders as JSON records from an indexer endpoint."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        url: str,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._url = url
        self._timeout_seconds = max(1.0, timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_orders(self) -> list[OrderRecord]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Order source HTTP session is not initialized.")

        async with self._session.get(self._url) as response:
            body: Any = await response.json(content_type=None)
            if response.status >= 400:
                raise RuntimeError(f"Order source request failed: status={response.status} body={body}")

        items = body.get("orders") if isinstance(body, dict) else body
        if not isinstance(items, list):
            raise RuntimeError(f"Unexpected order source payload: {str(body)[:200]}")

        records: list[OrderRecord] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            if item.get("active") is False:
                continue
            record = OrderRecord.from_dict(item)
            if not record.order_hash or not record.orderbook:
                log_event(
                    self._logger,
                    level="debug",
                    event="order_record_skipped",
                    message="Skipping order record without hash or orderbook",
                    record=item.get("orderHash"),
                )
                continue
            records.append(record)
        return records
