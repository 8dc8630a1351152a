"""Travel Settle - Multi-currency shared expenses, settled in few transfers."""

__version__ = "0.1.0"

from .config import Settings, load_settings
from .db import Database
from .models import (
    Balance,
    ExchangeRatePolicy,
    Expense,
    Member,
    ParticipantShare,
    Settlement,
    SettlementResult,
)
from .settle.ledger import aggregate
from .settle.planner import GreedyMaxMatch, plan_settlements
from .settle.rates import ExchangeRateResolver
from .settle.rounding import round_money
from .settle.service import SettlementService, compute_settlement_from_ledger

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Balance",
    "ExchangeRatePolicy",
    "Expense",
    "Member",
    "ParticipantShare",
    "Settlement",
    "SettlementResult",
    "aggregate",
    "GreedyMaxMatch",
    "plan_settlements",
    "ExchangeRateResolver",
    "round_money",
    "SettlementService",
    "compute_settlement_from_ledger",
]
