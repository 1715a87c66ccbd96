"""
Cash Flow Calculations

Aggregates the raw spreadsheet grid into weekly income, expenditure and
repayment totals and the running bank balance.

The bank balance is a single left-to-right scan:
    closing = opening + income - expenditure - repayment
and each week opens on the previous week's closing balance.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from cashflow_planner.calculations.invariants import report_invariant_violation
from cashflow_planner.calculations.repayments import NormalizedRepayment
from cashflow_planner.calculations.weeks import WeekSlot, label_text

logger = logging.getLogger(__name__)

CURRENCY_SYMBOLS = re.compile(r"[€$£¥,'\s ]")
CURRENCY_CODES = re.compile(r"\b(?:EUR|USD|GBP)\b", re.IGNORECASE)

# Balances above this (e.g. -1e-9 left over from float subtraction) are not
# reported as negative.
NEGATIVE_BALANCE_TOLERANCE = 1e-6

TOP_IMPACT_LIMIT = 15


@dataclass
class CashFlowRow:
    """One week of the cash-flow model."""

    week_index: int
    income: float
    expenditure: float
    repayment: float
    opening_balance: float
    closing_balance: float

    @property
    def net(self) -> float:
        return self.income - self.expenditure - self.repayment


def normalize_cell(value: Any) -> float:
    """
    Read a spreadsheet cell as a number.

    Strips thousands separators, currency symbols/codes and whitespace, and
    reads "(1,200)" as -1200. Blank or unreadable cells count as zero.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0

    text = str(value).strip()
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    text = CURRENCY_SYMBOLS.sub("", CURRENCY_CODES.sub("", text))

    try:
        number = float(text)
    except ValueError:
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return -number if negative else number


def _column_totals(
    grid: Sequence[Sequence[Any]], column: int, first_row: int, last_row: int
) -> Tuple[float, float]:
    """Sum of positive cells and of absolute negative cells in one column."""
    income = 0.0
    expenditure = 0.0
    for row_index in range(first_row, min(last_row, len(grid) - 1) + 1):
        row = grid[row_index]
        value = normalize_cell(row[column] if column < len(row) else None)
        if value > 0:
            income += value
        elif value < 0:
            expenditure += -value
    return income, expenditure


def repayment_totals_by_week(
    repayments: Sequence[NormalizedRepayment], week_count: int
) -> List[float]:
    """Total normalized repayment per week index."""
    totals = [0.0] * week_count
    for repayment in repayments:
        if not 0 <= repayment.week_index < week_count:
            report_invariant_violation(
                f"Repayment week index {repayment.week_index} outside 0..{week_count - 1}"
            )
            continue
        totals[repayment.week_index] += repayment.amount
    return totals


def aggregate_cash_flows(
    grid: Sequence[Sequence[Any]],
    column_range: Tuple[int, int],
    data_row_range: Tuple[int, int],
    slots: Sequence[WeekSlot],
    repayments: Sequence[NormalizedRepayment],
    opening_balance: float,
) -> List[CashFlowRow]:
    """
    Build the weekly cash-flow rows.

    Args:
        grid: Raw spreadsheet cells (rows of values)
        column_range: First and last week column, inclusive
        data_row_range: First and last data row, inclusive
        slots: Resolved week slots; each reads its `source_column`
        repayments: Normalized repayments
        opening_balance: Bank balance before the first week

    Returns:
        One CashFlowRow per slot, in slot order
    """
    first_column, last_column = column_range
    first_row, last_row = data_row_range
    if first_row < 0 or first_column < 0:
        report_invariant_violation(
            f"Negative grid range: rows {data_row_range}, columns {column_range}"
        )
        first_row, first_column = max(first_row, 0), max(first_column, 0)

    totals = repayment_totals_by_week(repayments, len(slots))
    rows: List[CashFlowRow] = []
    balance = float(opening_balance)

    for position, slot in enumerate(slots):
        if slot.index != position:
            report_invariant_violation(f"Week slot {slot.index} found at position {position}")

        income = expenditure = 0.0
        if first_column <= slot.source_column <= last_column:
            income, expenditure = _column_totals(
                grid, slot.source_column, first_row, last_row
            )
        else:
            report_invariant_violation(
                f"Week {slot.index} reads column {slot.source_column}, "
                f"outside {first_column}..{last_column}"
            )

        repayment = totals[position]
        closing = balance + income - expenditure - repayment
        rows.append(
            CashFlowRow(
                week_index=position,
                income=income,
                expenditure=expenditure,
                repayment=repayment,
                opening_balance=balance,
                closing_balance=closing,
            )
        )
        balance = closing

    return rows


def is_negative_balance(balance: float) -> bool:
    """Whether a balance counts as overdrawn."""
    return balance < -NEGATIVE_BALANCE_TOLERANCE


def get_negative_balance_weeks(rows: Sequence[CashFlowRow]) -> List[int]:
    """Week indices whose closing balance is negative."""
    return [row.week_index for row in rows if is_negative_balance(row.closing_balance)]


def cash_flow_table(rows: Sequence[CashFlowRow], slots: Sequence[WeekSlot]) -> List[Dict]:
    """Rows as display dictionaries, with week label and date."""
    table = []
    for row in rows:
        slot = slots[row.week_index]
        table.append(
            {
                "week_index": row.week_index,
                "label": slot.label,
                "date": slot.date.isoformat(),
                "income": round(row.income, 2),
                "expenditure": round(row.expenditure, 2),
                "repayment": round(row.repayment, 2),
                "net": round(row.net, 2),
                "opening_balance": round(row.opening_balance, 2),
                "closing_balance": round(row.closing_balance, 2),
            }
        )
    return table


def monthly_totals(rows: Sequence[CashFlowRow], slots: Sequence[WeekSlot]) -> List[Dict]:
    """
    Roll weekly rows up into calendar months.

    A week belongs to the month its slot date falls in. The month's closing
    balance is that of its last week.
    """
    months: List[Dict] = []
    fields = ["income", "expenditure", "repayment", "net"]

    for row in rows:
        month = slots[row.week_index].date.strftime("%Y-%m")
        if not months or months[-1]["month"] != month:
            months.append({"month": month, **{f: 0.0 for f in fields}, "weeks": 0})
        current = months[-1]
        current["income"] += row.income
        current["expenditure"] += row.expenditure
        current["repayment"] += row.repayment
        current["net"] += row.net
        current["weeks"] += 1
        current["closing_balance"] = row.closing_balance

    for month in months:
        for key in fields + ["closing_balance"]:
            month[key] = round(month[key], 2)

    return months


def top_impact_rows(
    grid: Sequence[Sequence[Any]],
    data_row_range: Tuple[int, int],
    slots: Sequence[WeekSlot],
    label_column: int = 0,
    limit: int = TOP_IMPACT_LIMIT,
) -> List[Dict]:
    """
    Spreadsheet rows with the largest absolute weekly amounts.

    Returns:
        Up to `limit` rows, largest impact first, each with its label, net
        total and absolute total across the week columns
    """
    first_row, last_row = data_row_range
    ranked = []

    for row_index in range(max(first_row, 0), min(last_row, len(grid) - 1) + 1):
        row = grid[row_index]
        values = [
            normalize_cell(row[slot.source_column] if slot.source_column < len(row) else None)
            for slot in slots
        ]
        impact = sum(abs(v) for v in values)
        if impact == 0:
            continue
        label = label_text(row[label_column]) if label_column < len(row) else ""
        ranked.append(
            {
                "row": row_index,
                "label": label or f"Row {row_index + 1}",
                "total": round(sum(values), 2),
                "impact": round(impact, 2),
            }
        )

    ranked.sort(key=lambda item: item["impact"], reverse=True)
    return ranked[:limit]
