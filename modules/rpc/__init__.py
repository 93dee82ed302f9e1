from .errors import RpcError, RpcErrorKind, classify_error_payload, rpc_error_from_payload
from .records import RpcHealthState, RpcRecord, normalize_url
from .transport import RpcHealthTransport

__all__ = [
    "RpcError",
    "RpcErrorKind",
    "RpcHealthState",
    "RpcHealthTransport",
    "RpcRecord",
    "classify_error_payload",
    "normalize_url",
    "rpc_error_from_payload",
]
