from .client import ChainClient, Log, Receipt, ReceiptTimeoutError, to_rpc_tx

__all__ = [
    "ChainClient",
    "Log",
    "Receipt",
    "ReceiptTimeoutError",
    "to_rpc_tx",
]
