from .logging import setup_logger
from .loop import SolverRuntime, bootstrap_dependencies, build_runtime, run_solver_loop, sync_orders
from .settings import AppSettings

__all__ = [
    "AppSettings",
    "SolverRuntime",
    "bootstrap_dependencies",
    "build_runtime",
    "run_solver_loop",
    "setup_logger",
    "sync_orders",
]
