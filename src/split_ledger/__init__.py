"""split-ledger - Shared-expense ledger with balances, settlements and budgets."""

__version__ = "0.1.0"

from .budgets import BudgetTracker, calculate_period_dates, update_period_if_needed
from .config import Settings, load_settings
from .db import Database
from .ledger import BalanceLedger, compute_transaction_effect
from .models import (
    Budget,
    BudgetPeriod,
    BudgetSnapshot,
    Category,
    Group,
    MemberBalance,
    SettlementResult,
    Transaction,
)
from .service import LedgerService
from .settlement import SettlementEngine

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Budget",
    "BudgetPeriod",
    "BudgetSnapshot",
    "Category",
    "Group",
    "MemberBalance",
    "SettlementResult",
    "Transaction",
    "BalanceLedger",
    "compute_transaction_effect",
    "BudgetTracker",
    "calculate_period_dates",
    "update_period_if_needed",
    "SettlementEngine",
    "LedgerService",
]
