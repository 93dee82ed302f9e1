from .pair import PairOutcome, PairProcessor
from .round import RoundOrchestrator, RoundReport

__all__ = [
    "PairOutcome",
    "PairProcessor",
    "RoundOrchestrator",
    "RoundReport",
]
