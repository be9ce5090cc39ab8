"""
Statement-type processors.

One processor per statement code; each categorizes the line processor's
output, derives the statement totals and runs its identity and business
rules.  Use ``get_processor`` to pick one by code.
"""

from statement_engines.processors.balance_sheet import BalanceSheetProcessor
from statement_engines.processors.base import (
    ComputedLineSpec,
    KeywordRule,
    ProcessorInput,
    ProcessorResult,
    StatementProcessor,
)
from statement_engines.processors.budget_vs_actual import BudgetVsActualProcessor
from statement_engines.processors.cash_flow import CashFlowProcessor
from statement_engines.processors.net_assets import (
    NetAssetsProcessor,
    calculate_three_column_totals,
    get_column_type,
)
from statement_engines.processors.registry import PROCESSORS, get_processor
from statement_engines.processors.revenue_expenditure import RevenueExpenditureProcessor

__all__ = [
    "BalanceSheetProcessor",
    "BudgetVsActualProcessor",
    "CashFlowProcessor",
    "ComputedLineSpec",
    "KeywordRule",
    "NetAssetsProcessor",
    "PROCESSORS",
    "ProcessorInput",
    "ProcessorResult",
    "RevenueExpenditureProcessor",
    "StatementProcessor",
    "calculate_three_column_totals",
    "get_column_type",
    "get_processor",
]
