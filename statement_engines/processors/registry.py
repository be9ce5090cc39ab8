"""
statement_engines.processors.registry -- Statement code to processor lookup.
"""

from __future__ import annotations

from decimal import Decimal

from statement_kernel.domain.amounts import BALANCE_TOLERANCE
from statement_kernel.domain.statement import StatementCode
from statement_kernel.exceptions import UnsupportedStatementError
from statement_engines.formula import DEFAULT_SIGNIFICANT_IMBALANCE
from statement_engines.processors.balance_sheet import BalanceSheetProcessor
from statement_engines.processors.base import StatementProcessor
from statement_engines.processors.budget_vs_actual import BudgetVsActualProcessor
from statement_engines.processors.cash_flow import CashFlowProcessor
from statement_engines.processors.net_assets import NetAssetsProcessor
from statement_engines.processors.revenue_expenditure import RevenueExpenditureProcessor

PROCESSORS: dict[StatementCode, type[StatementProcessor]] = {
    StatementCode.REV_EXP: RevenueExpenditureProcessor,
    StatementCode.BAL_SHEET: BalanceSheetProcessor,
    StatementCode.CASH_FLOW: CashFlowProcessor,
    StatementCode.NET_ASSETS: NetAssetsProcessor,
    StatementCode.BUDGET_VS_ACTUAL: BudgetVsActualProcessor,
}


def get_processor(
    statement_code: StatementCode | str,
    tolerance: Decimal = BALANCE_TOLERANCE,
    significant_imbalance: Decimal = DEFAULT_SIGNIFICANT_IMBALANCE,
) -> StatementProcessor:
    """Instantiate the processor for ``statement_code``.

    Raises:
        UnsupportedStatementError: No processor handles the code.
    """
    try:
        code = StatementCode(statement_code)
    except ValueError:
        raise UnsupportedStatementError(str(statement_code)) from None
    return PROCESSORS[code](tolerance=tolerance, significant_imbalance=significant_imbalance)
