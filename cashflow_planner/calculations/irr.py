"""
IRR and NPV Calculations

Date-accurate NPV (XNPV) and IRR (XIRR) for irregular cash flows. Every cash
flow is discounted by the actual days elapsed since the investment date, over
365.25-day years, because repayments are not evenly spaced.

IRR is solved with Newton-Raphson on a numerical derivative. A series with no
real solution (all inflows, all outflows, a flat derivative or no convergence)
yields NaN, which callers must show as "n/a" and never as 0%.
"""

import math
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence, Tuple

import numpy as np

MAX_ITERATIONS = 100
TOLERANCE = 1e-7
DERIVATIVE_STEP = 1e-6
MIN_DERIVATIVE = 1e-10
DEFAULT_GUESS = 0.1
DAYS_PER_YEAR = 365.25

# Slack when comparing cumulative discounted repayments to the investment
PAYBACK_TOLERANCE = 1e-9


@dataclass
class CashflowPoint:
    """A dated, signed cash flow (negative = outflow)."""

    date: date
    amount: float


@dataclass
class ValuationSummary:
    """Headline valuation figures for a cash-flow series."""

    npv: float
    irr: float
    payback_period: Optional[int]  # Undiscounted; None = not achieved
    discounted_payback_period: Optional[int]  # None = not achieved
    total_invested: float
    total_returned: float
    multiple: float
    profit: float
    remaining: float  # Invested minus returned so far


def build_cashflow_series(
    investment: float,
    investment_date: date,
    repayments: Sequence[Tuple[date, float]],
) -> List[CashflowPoint]:
    """
    Build a valuation series: the investment outflow first, then inflows.

    Args:
        investment: Amount invested (sign is ignored, stored as negative)
        investment_date: Date of the investment
        repayments: (date, amount) inflows in any order

    Returns:
        Series sorted by date with the investment at index 0

    Raises:
        ValueError: If a repayment is dated before the investment
    """
    inflows = sorted(repayments, key=lambda item: item[0])
    if inflows and inflows[0][0] < investment_date:
        raise ValueError("Repayments cannot be dated before the investment")

    series = [CashflowPoint(investment_date, -abs(float(investment)))]
    series.extend(CashflowPoint(when, float(amount)) for when, amount in inflows)
    return series


def _arrays(series: Sequence[CashflowPoint]) -> Tuple[np.ndarray, np.ndarray]:
    """Amounts and year fractions since the first cash flow."""
    base_date = series[0].date
    amounts = np.array([point.amount for point in series], dtype=float)
    years = np.array([(point.date - base_date).days for point in series], dtype=float)
    return amounts, years / DAYS_PER_YEAR


def is_valid_rate(rate: float) -> bool:
    """Discounting is only defined for finite rates above -100%."""
    return math.isfinite(rate) and rate > -1


def _xnpv(amounts: np.ndarray, years: np.ndarray, rate: float) -> float:
    with np.errstate(all="ignore"):
        return float(np.sum(amounts / np.power(1.0 + rate, years)))


def calculate_xnpv(series: Sequence[CashflowPoint], rate: float) -> float:
    """
    Calculate NPV with actual dates.

    NPV = sum(amount_i / (1 + rate) ** (days_i / 365.25)), where days_i is
    counted from the first cash flow (the investment).

    Args:
        series: Dated cash flows, investment first
        rate: Annual discount rate as decimal (e.g., 0.05 for 5%)

    Returns:
        NPV value (NaN if rate <= -100%)
    """
    if not series:
        return 0.0
    if not is_valid_rate(rate):
        return math.nan
    amounts, years = _arrays(series)
    return _xnpv(amounts, years, rate)


def calculate_xirr(series: Sequence[CashflowPoint], guess: float = DEFAULT_GUESS) -> float:
    """
    Calculate XIRR (IRR with specific dates) using Newton-Raphson.

    The derivative is the forward difference
    (npv(rate + 1e-6) - npv(rate)) / 1e-6. Iteration stops when the update is
    below 1e-7 (converged), the derivative is below 1e-10 (degenerate) or
    after 100 iterations.

    Args:
        series: Dated cash flows
        guess: Initial guess for rate (default 0.1 = 10%)

    Returns:
        Annual IRR as decimal, or NaN if it cannot be determined
    """
    if len(series) < 2:
        return math.nan

    amounts, years = _arrays(series)
    if not (np.any(amounts > 0) and np.any(amounts < 0)):
        return math.nan

    rate = guess
    for _ in range(MAX_ITERATIONS):
        npv = _xnpv(amounts, years, rate)
        bumped = _xnpv(amounts, years, rate + DERIVATIVE_STEP)
        if not (math.isfinite(npv) and math.isfinite(bumped)):
            return math.nan

        derivative = (bumped - npv) / DERIVATIVE_STEP
        if abs(derivative) < MIN_DERIVATIVE:
            return math.nan

        new_rate = rate - npv / derivative
        if new_rate <= -1:
            # Rates at or below -100% are undefined; step halfway there instead
            new_rate = (rate - 1) / 2

        if abs(new_rate - rate) < TOLERANCE:
            return new_rate

        rate = new_rate

    return math.nan


def calculate_discounted_payback(
    series: Sequence[CashflowPoint], rate: float
) -> Optional[int]:
    """
    Position in the series where discounted repayments cover the investment.

    Returns:
        Index of the first cash flow at which the cumulative discounted inflow
        reaches the investment, or None if it never does
    """
    if len(series) < 2 or not is_valid_rate(rate):
        return None

    amounts, years = _arrays(series)
    target = abs(amounts[0])
    with np.errstate(all="ignore"):
        discounted = amounts[1:] / np.power(1.0 + rate, years[1:])

    cumulative = 0.0
    for offset, value in enumerate(discounted, start=1):
        cumulative += float(value)
        if cumulative >= target - PAYBACK_TOLERANCE:
            return offset
    return None


def calculate_multiple(series: Sequence[CashflowPoint]) -> float:
    """
    Calculate the repayment multiple (total inflows / total outflows).

    Returns:
        Multiple (e.g., 1.2 = 1.2x), NaN when nothing was invested
    """
    total_inflows = sum(p.amount for p in series if p.amount > 0)
    total_outflows = abs(sum(p.amount for p in series if p.amount < 0))
    if total_outflows == 0:
        return math.nan
    return total_inflows / total_outflows


def calculate_profit(series: Sequence[CashflowPoint]) -> float:
    """Calculate profit (total inflows minus total outflows)."""
    return sum(p.amount for p in series)


def summarize_valuation(series: Sequence[CashflowPoint], rate: float) -> ValuationSummary:
    """Compute NPV, IRR, both paybacks and totals for a series."""
    total_invested = abs(sum(p.amount for p in series if p.amount < 0))
    total_returned = sum(p.amount for p in series if p.amount > 0)
    return ValuationSummary(
        npv=calculate_xnpv(series, rate),
        irr=calculate_xirr(series),
        payback_period=calculate_discounted_payback(series, 0.0),
        discounted_payback_period=calculate_discounted_payback(series, rate),
        total_invested=total_invested,
        total_returned=total_returned,
        multiple=calculate_multiple(series),
        profit=calculate_profit(series),
        remaining=total_invested - total_returned,
    )


def nan_to_none(value: Optional[float]) -> Optional[float]:
    """NaN/inf become None so they serialize as JSON null."""
    if value is None or not math.isfinite(value):
        return None
    return value


def format_rate(value: Optional[float]) -> str:
    """Render a rate as a percentage, or "n/a" when undefined."""
    if nan_to_none(value) is None:
        return "n/a"
    return f"{value * 100:.2f}%"
