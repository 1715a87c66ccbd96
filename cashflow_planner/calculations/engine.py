"""
Engine State and Recomputation

The whole model is rebuilt from scratch whenever the user changes the column
mapping, the opening balance, a repayment or a plan setting. `recompute` is a
pure function of an immutable `EngineState`; nothing is updated in place.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from cashflow_planner.calculations.cashflow import (
    CashFlowRow,
    aggregate_cash_flows,
    get_negative_balance_weeks,
    monthly_totals,
    top_impact_rows,
)
from cashflow_planner.calculations.irr import (
    ValuationSummary,
    build_cashflow_series,
    summarize_valuation,
)
from cashflow_planner.calculations.plan import (
    PlanContext,
    PlanRequest,
    SuggestedPlan,
    synthesize_plan,
)
from cashflow_planner.calculations.repayments import (
    NormalizedRepayment,
    Repayment,
    normalize_repayments,
)
from cashflow_planner.calculations.weeks import WeekSlot, resolve_week_slots

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnMapping:
    """Where the weeks and the data live in the grid (all bounds inclusive)."""

    label_row: int
    first_column: int
    last_column: int
    first_data_row: int
    last_data_row: int
    excluded_columns: Tuple[int, ...] = ()
    label_column: int = 0

    def week_columns(self) -> List[int]:
        """Grid columns that become weeks, in spreadsheet order."""
        excluded = set(self.excluded_columns)
        return [
            column
            for column in range(self.first_column, self.last_column + 1)
            if column not in excluded
        ]


@dataclass(frozen=True)
class EngineState:
    """Everything the engine needs for one recomputation."""

    grid: Sequence[Sequence[Any]]
    mapping: ColumnMapping
    base_year: int
    opening_balance: float = 0.0
    discount_rate: float = 0.0
    repayments: Tuple[Repayment, ...] = ()
    investment: float = 0.0
    investment_week_index: int = 0
    plan_request: Optional[PlanRequest] = None


@dataclass
class EngineResult:
    """Week table, cash-flow rows, valuation and suggested plan."""

    weeks: List[WeekSlot]
    rows: List[CashFlowRow]
    negative_weeks: List[int]
    repayments: List[NormalizedRepayment]
    valuation: Optional[ValuationSummary] = None
    plan: Optional[SuggestedPlan] = None
    monthly: List[Dict] = field(default_factory=list)
    top_rows: List[Dict] = field(default_factory=list)
    calendar_warnings: List[str] = field(default_factory=list)
    repayment_warnings: List[str] = field(default_factory=list)
    valuation_warnings: List[str] = field(default_factory=list)

    @property
    def warnings(self) -> List[str]:
        plan_warnings = self.plan.warnings if self.plan else []
        return (
            self.calendar_warnings
            + self.repayment_warnings
            + self.valuation_warnings
            + plan_warnings
        )


def _header_cells(state: EngineState, columns: List[int]) -> List[Any]:
    grid, row_index = state.grid, state.mapping.label_row
    row = grid[row_index] if 0 <= row_index < len(grid) else []
    return [row[column] if column < len(row) else None for column in columns]


def _valuation(
    state: EngineState,
    slots: List[WeekSlot],
    repayments: List[NormalizedRepayment],
    warnings: List[str],
) -> Optional[ValuationSummary]:
    """Valuation of the entered repayments against the investment."""
    if state.investment <= 0 or not slots:
        return None
    if not 0 <= state.investment_week_index < len(slots):
        warnings.append(
            f"Investment week {state.investment_week_index} is outside the week table"
        )
        return None

    investment_date = slots[state.investment_week_index].date
    inflows = []
    for repayment in repayments:
        if repayment.week_index < state.investment_week_index:
            warnings.append(
                f"Repayment of {repayment.amount:,.2f} in week {repayment.week_index} "
                "precedes the investment and is left out of the valuation"
            )
            continue
        inflows.append((slots[repayment.week_index].date, repayment.amount))

    series = build_cashflow_series(state.investment, investment_date, inflows)
    return summarize_valuation(series, state.discount_rate)


def recompute(state: EngineState) -> EngineResult:
    """
    Rebuild the week table, cash-flow rows, valuation and plan.

    The plan is fitted against the balances before any entered repayment,
    because it is a proposal to replace them.
    """
    mapping = state.mapping
    columns = mapping.week_columns()
    calendar = resolve_week_slots(_header_cells(state, columns), state.base_year, columns)
    slots = calendar.slots

    normalization = normalize_repayments(state.repayments, slots)
    column_range = (mapping.first_column, mapping.last_column)
    data_rows = (mapping.first_data_row, mapping.last_data_row)
    rows = aggregate_cash_flows(
        state.grid, column_range, data_rows, slots, normalization.repayments,
        state.opening_balance,
    )

    valuation_warnings: List[str] = []
    valuation = _valuation(state, slots, normalization.repayments, valuation_warnings)

    plan = None
    if state.plan_request is not None:
        projected = aggregate_cash_flows(
            state.grid, column_range, data_rows, slots, [], state.opening_balance
        )
        plan = synthesize_plan(
            state.plan_request, PlanContext(slots, projected, state.base_year)
        )

    result = EngineResult(
        weeks=slots,
        rows=rows,
        negative_weeks=get_negative_balance_weeks(rows),
        repayments=normalization.repayments,
        valuation=valuation,
        plan=plan,
        monthly=monthly_totals(rows, slots),
        top_rows=top_impact_rows(state.grid, data_rows, slots, mapping.label_column),
        calendar_warnings=calendar.warnings,
        repayment_warnings=normalization.warnings,
        valuation_warnings=valuation_warnings,
    )
    logger.debug(
        f"Recomputed {len(slots)} weeks, {len(result.negative_weeks)} negative, "
        f"{len(result.warnings)} warnings"
    )
    return result
