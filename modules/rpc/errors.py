from __future__ import annotations

from enum import Enum
from typing import Any


class RpcErrorKind(str, Enum):
    EXECUTION_REVERTED = "execution_reverted"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    NONCE = "nonce"
    REJECTED = "rejected"
    RPC_ERROR = "rpc_error"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    MALFORMED = "malformed"


NON_RETRYABLE_KINDS = frozenset(
    {
        RpcErrorKind.EXECUTION_REVERTED,
        RpcErrorKind.INSUFFICIENT_FUNDS,
        RpcErrorKind.NONCE,
        RpcErrorKind.REJECTED,
    }
)

# eip-1193 / eip-1474 codes for requests the user or node refused outright
REJECTED_CODES = frozenset({4001, 4100, 5000, -32003})
REVERTED_CODES = frozenset({3})


class RpcError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        kind: RpcErrorKind,
        retryable: bool | None = None,
        url: str | None = None,
        code: int | None = None,
        data: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = kind not in NON_RETRYABLE_KINDS if retryable is None else retryable
        self.url = url
        self.code = code
        self.data = data

    @property
    def is_revert(self) -> bool:
        return self.kind is RpcErrorKind.EXECUTION_REVERTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": str(self),
            "kind": self.kind.value,
            "retryable": self.retryable,
            "code": self.code,
            "data": self.data,
        }


def _extract_revert_data(raw: Any) -> str | None:
    if isinstance(raw, str) and raw.startswith("0x"):
        return raw
    if isinstance(raw, dict):
        for key in ("data", "result"):
            nested = _extract_revert_data(raw.get(key))
            if nested:
                return nested
    return None


def classify_error_payload(code: int | None, message: str, data: Any) -> RpcErrorKind:
    text = message.lower()
    if "insufficient funds" in text or "gas required exceeds allowance" in text:
        return RpcErrorKind.INSUFFICIENT_FUNDS
    if code in REVERTED_CODES or "execution reverted" in text or "unknown reason" in text:
        return RpcErrorKind.EXECUTION_REVERTED
    if _extract_revert_data(data) is not None:
        return RpcErrorKind.EXECUTION_REVERTED
    if "nonce too low" in text or "nonce too high" in text or "already known" in text:
        return RpcErrorKind.NONCE
    if code in REJECTED_CODES:
        return RpcErrorKind.REJECTED
    return RpcErrorKind.RPC_ERROR


def rpc_error_from_payload(payload: Any, *, url: str | None = None) -> RpcError:
    """Build a typed error from a JSON-RPC ``error`` member."""
    if not isinstance(payload, dict):
        return RpcError(
            f"Malformed JSON-RPC error member: {payload!r}",
            kind=RpcErrorKind.MALFORMED,
            url=url,
        )

    raw_code = payload.get("code")
    code = raw_code if isinstance(raw_code, int) else None
    message = str(payload.get("message") or "JSON-RPC error")
    data = payload.get("data")
    kind = classify_error_payload(code, message, data)
    return RpcError(message, kind=kind, url=url, code=code, data=_extract_revert_data(data))
