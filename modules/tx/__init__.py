from .income import get_income, get_total_income
from .lifecycle import SettlementContext, SubmitFailedError, TxLifecycle
from .revert import RevertDiagnoser, RevertDiagnosis, check_gas_issue

__all__ = [
    "RevertDiagnoser",
    "RevertDiagnosis",
    "SettlementContext",
    "SubmitFailedError",
    "TxLifecycle",
    "check_gas_issue",
    "get_income",
    "get_total_income",
]
