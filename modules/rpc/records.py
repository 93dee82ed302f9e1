from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable


def normalize_url(url: str) -> str:
    cleaned = url.strip()
    return cleaned if cleaned.endswith("/") else f"{cleaned}/"


@dataclass(slots=True)
class RpcRecord:
    req: int = 0
    success: int = 0
    failure: int = 0
    cache: int = 0
    request_timestamps: list[float] = field(default_factory=list)

    @property
    def timeout(self) -> int:
        """Requests that never produced a classified response."""
        return max(0, self.req - (self.success + self.failure))

    @property
    def avg_request_interval(self) -> float:
        if len(self.request_timestamps) < 2:
            return 0.0
        spans = [
            later - earlier
            for earlier, later in zip(self.request_timestamps, self.request_timestamps[1:])
        ]
        return sum(spans) / len(spans)

    def reset(self) -> None:
        self.req = 0
        self.success = 0
        self.failure = 0
        self.cache = 0
        self.request_timestamps.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "req": self.req,
            "success": self.success,
            "failure": self.failure,
            "cache": self.cache,
            "timeout": self.timeout,
            "avg_request_interval": round(self.avg_request_interval, 6),
        }


class RpcHealthState:
    """Per-endpoint counters; the only write path for RPC health telemetry."""

    def __init__(self, urls: Iterable[str]) -> None:
        self._records: dict[str, RpcRecord] = {normalize_url(url): RpcRecord() for url in urls}

    def record(self, url: str) -> RpcRecord:
        key = normalize_url(url)
        record = self._records.get(key)
        if record is None:
            record = RpcRecord()
            self._records[key] = record
        return record

    def record_request(self, url: str, now: float) -> None:
        record = self.record(url)
        record.req += 1
        record.request_timestamps.append(now)

    def record_success(self, url: str) -> None:
        self.record(url).success += 1

    def record_failure(self, url: str) -> None:
        self.record(url).failure += 1

    def record_cache(self, url: str) -> None:
        self.record(url).cache += 1

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {url: record.to_dict() for url, record in self._records.items()}

    def snapshot_and_reset(self) -> dict[str, dict[str, Any]]:
        report = self.snapshot()
        for record in self._records.values():
            record.reset()
        return report
