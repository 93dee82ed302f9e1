from .oracle import HttpRouteOracle, LiquidityOracle, OracleError, Route, RouteRateLimitError
from .prices import get_native_price

__all__ = [
    "HttpRouteOracle",
    "LiquidityOracle",
    "OracleError",
    "Route",
    "RouteRateLimitError",
    "get_native_price",
]
