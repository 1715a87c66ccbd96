"""
Repayment Plan Synthesis

Suggests a week-by-week repayment schedule that returns
investment * (1 + target_irr) in equal installments, while keeping a minimum
gap between repayments (the buffer) and never pushing the projected bank
balance below zero.

This is a greedy, deterministic walk over the week table, not an optimizer:
1. installment = investment * (1 + target_irr) / installment_count
2. The walk starts at the first week after the investment whose equal
   installment schedule would discount back to the investment at the target
   rate (or at the user's chosen first repayment week).
3. Weeks closer than `buffer_weeks` to the previous repayment are skipped.
4. Each eligible week pays min(installment, outstanding). If that would drive
   any later balance negative, 90%, 80%, ... 10% of it is tried; if even 10%
   does not fit the week is skipped and the amount stays outstanding.
5. Past the end of the spreadsheet, synthetic weeks are added in 7-day steps.
6. The walk stops once the outstanding amount is within 0.01, or after
   MAX_PLAN_ITERATIONS weeks.
7. The IRR actually achieved by the schedule is recomputed and compared with
   the target.
"""

import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from cashflow_planner.calculations.cashflow import CashFlowRow, get_negative_balance_weeks
from cashflow_planner.calculations.invariants import report_invariant_violation
from cashflow_planner.calculations.irr import (
    DAYS_PER_YEAR,
    build_cashflow_series,
    calculate_xirr,
    calculate_xnpv,
    format_rate,
    is_valid_rate,
)
from cashflow_planner.calculations.weeks import WEEK_DAYS, WeekSlot, synthetic_week_date

logger = logging.getLogger(__name__)

# Upper bound on weeks visited by the walk (and on start-week candidates).
# Adversarial buffer/installment combinations would otherwise never finish.
MAX_PLAN_ITERATIONS = 500

OUTSTANDING_TOLERANCE = 0.01

# Achieved IRR further than this from the target triggers a warning
IRR_WARNING_GAP = 0.01

PAYMENT_FRACTIONS = tuple(step / 10 for step in range(9, 0, -1))

BUFFER_POLICIES: Dict[str, int] = {
    "none": 0,
    "2weeks": 2,
    "1month": 4,
    "2months": 8,
    "quarter": 13,
}
CUSTOM_BUFFER = re.compile(r"custom\s*:\s*(\d+)\s*(?:weeks?)?", re.IGNORECASE)


@dataclass
class PlanRequest:
    """What the user asks the synthesizer for."""

    investment: float
    target_irr: float
    installment_count: int
    buffer_weeks: int = 0
    investment_week_index: int = 0
    first_repayment_week_index: Optional[int] = None


@dataclass
class PlanContext:
    """Projected weeks and balances the plan has to fit into."""

    slots: Sequence[WeekSlot]
    rows: Sequence[CashFlowRow]
    base_year: int


@dataclass
class SuggestedPlan:
    """A repayment schedule indexed by week, with the IRR it achieves."""

    schedule: List[float] = field(default_factory=list)
    achieved_irr: float = math.nan
    warnings: List[str] = field(default_factory=list)
    weeks: List[WeekSlot] = field(default_factory=list)  # Includes synthetic extensions

    @property
    def payments(self) -> List[Tuple[int, float]]:
        """(week index, amount) for every week with a repayment."""
        return [(week, amount) for week, amount in enumerate(self.schedule) if amount > 0]

    @property
    def total_scheduled(self) -> float:
        return sum(self.schedule)


def parse_buffer_policy(policy: str) -> int:
    """
    Convert a buffer policy into a minimum number of weeks between repayments.

    Accepts none, 2weeks, 1month (4 weeks), 2months (8 weeks), quarter
    (13 weeks) and custom:N weeks.

    Raises:
        ValueError: If the policy is not recognised
    """
    key = (policy or "none").strip().lower()
    if key in BUFFER_POLICIES:
        return BUFFER_POLICIES[key]
    match = CUSTOM_BUFFER.fullmatch(key)
    if match:
        return int(match.group(1))
    raise ValueError(f"Unknown buffer policy: {policy!r}")


def _extend_weeks(weeks: List[WeekSlot], balances: List[float], schedule: List[float]) -> None:
    """Append one synthetic week 7 days after the last one."""
    index = len(weeks)
    when = weeks[-1].date + timedelta(days=WEEK_DAYS)
    weeks.append(
        WeekSlot(
            index=index,
            label=f"Week {index + 1} (extension)",
            date=when,
            source_column=-1,
            synthetic=True,
        )
    )
    balances.append(balances[-1])
    schedule.append(0.0)


def _affordable_payment(payment: float, headroom: float) -> float:
    """Largest of payment, 90%, 80%, ... 10% of it that fits in the headroom."""
    if payment <= headroom:
        return payment
    for fraction in PAYMENT_FRACTIONS:
        amount = payment * fraction
        if amount <= headroom:
            return amount
    return 0.0


def _irr_aligned_start(
    request: PlanRequest,
    context: PlanContext,
    earliest: int,
    installment: float,
    gap: int,
) -> int:
    """
    First week from which equal installments would earn the target IRR.

    Moving the start later lowers the schedule's NPV at the target rate, so
    the walk stops at the first start where NPV drops to zero or below and
    keeps whichever of it and its predecessor is closer to zero.
    """
    def week_date(index: int):
        return synthetic_week_date(context.slots, index, context.base_year)

    investment_date = week_date(request.investment_week_index)
    step = max(gap, 1)
    previous_npv = None

    for candidate in range(earliest, earliest + MAX_PLAN_ITERATIONS):
        repayments = [
            (week_date(candidate + k * step), installment)
            for k in range(request.installment_count)
        ]
        series = build_cashflow_series(request.investment, investment_date, repayments)
        npv = calculate_xnpv(series, request.target_irr)
        if npv <= 0:
            if previous_npv is not None and abs(previous_npv) < abs(npv):
                return candidate - 1
            return candidate
        previous_npv = npv

    return earliest


def _empty_plan(warning: Optional[str] = None) -> SuggestedPlan:
    return SuggestedPlan(warnings=[warning] if warning else [])


def synthesize_plan(request: PlanRequest, context: PlanContext) -> SuggestedPlan:
    """
    Build a suggested repayment schedule.

    Args:
        request: Investment, target IRR, installment count and buffer
        context: Week table and the projected cash-flow rows before any
            repayment

    Returns:
        SuggestedPlan. Non-positive investment, target IRR or installment
        count gives an empty plan. Infeasible requests still return the
        best-effort schedule, with warnings.
    """
    if request.investment <= 0 or request.target_irr <= 0 or request.installment_count <= 0:
        return _empty_plan()

    slots = list(context.slots)
    if not 0 <= request.investment_week_index < len(slots):
        return _empty_plan(
            f"Investment week {request.investment_week_index} is outside the week table"
        )

    balances = [row.closing_balance for row in context.rows]
    if len(balances) != len(slots):
        report_invariant_violation(
            f"Plan context has {len(balances)} rows for {len(slots)} weeks"
        )
        balances = (balances + [balances[-1] if balances else 0.0] * len(slots))[: len(slots)]

    warnings: List[str] = []
    negative_weeks = get_negative_balance_weeks(context.rows)
    if negative_weeks:
        warnings.append(
            "Projected balance is negative before any repayment in weeks "
            f"{', '.join(str(w) for w in negative_weeks)}; no repayment is "
            "scheduled while a later week is still overdrawn"
        )

    target_return = request.investment * (1 + request.target_irr)
    installment = target_return / request.installment_count
    gap = max(request.buffer_weeks, 0)

    earliest = request.investment_week_index + 1
    if request.first_repayment_week_index is not None:
        start = max(earliest, request.first_repayment_week_index)
    else:
        start = _irr_aligned_start(request, context, earliest, installment, gap)

    weeks = [replace(slot) for slot in slots]
    schedule = [0.0] * len(weeks)
    outstanding = target_return
    last_payment_week: Optional[int] = None
    week = start
    iterations = 0

    while outstanding > OUTSTANDING_TOLERANCE and iterations < MAX_PLAN_ITERATIONS:
        iterations += 1
        while week >= len(weeks):
            _extend_weeks(weeks, balances, schedule)

        if last_payment_week is not None and week - last_payment_week < gap:
            week += 1
            continue

        payment = _affordable_payment(min(installment, outstanding), min(balances[week:]))
        if payment > 0:
            schedule[week] += payment
            for later in range(week, len(balances)):
                balances[later] -= payment
            outstanding -= payment
            last_payment_week = week
        week += 1

    if outstanding > OUTSTANDING_TOLERANCE:
        message = (
            f"Stopped after {MAX_PLAN_ITERATIONS} weeks with {outstanding:,.2f} of "
            f"{target_return:,.2f} unscheduled; try a shorter buffer, a different "
            "installment count or a longer time horizon"
        )
        logger.warning(message)
        warnings.append(message)

    keep = len(slots)
    if last_payment_week is not None:
        keep = max(keep, last_payment_week + 1)
    weeks, schedule = weeks[:keep], schedule[:keep]

    investment_date = weeks[request.investment_week_index].date
    series = build_cashflow_series(
        request.investment,
        investment_date,
        [(weeks[w].date, amount) for w, amount in enumerate(schedule) if amount > 0],
    )
    achieved = calculate_xirr(series)

    if math.isnan(achieved):
        warnings.append("Achieved IRR could not be computed for this schedule")
    elif abs(achieved - request.target_irr) > IRR_WARNING_GAP:
        warnings.append(
            f"Achieved IRR {format_rate(achieved)} differs from the "
            f"{format_rate(request.target_irr)} target by more than 1 percentage "
            "point; buffer or balance constraints moved repayments"
        )

    return SuggestedPlan(schedule=schedule, achieved_irr=achieved, warnings=warnings, weeks=weeks)


def plan_export_rows(
    plan: SuggestedPlan, investment_week_index: int, discount_rate: float
) -> List[Dict]:
    """
    Rows for exporting a plan: week label, date, amount, cumulative and
    discounted cumulative (discounted back to the investment date).
    The discounted cumulative is None when the discount rate is at or below
    -100%.
    """
    if not plan.payments:
        return []

    investment_date = plan.weeks[investment_week_index].date
    discounting = is_valid_rate(discount_rate)
    cumulative = 0.0
    discounted = 0.0
    rows = []

    for week, amount in plan.payments:
        slot = plan.weeks[week]
        years = (slot.date - investment_date).days / DAYS_PER_YEAR
        cumulative += amount
        if discounting:
            discounted += amount / (1 + discount_rate) ** years
        rows.append(
            {
                "week_index": week,
                "week_label": slot.label,
                "date": slot.date.isoformat(),
                "amount": round(amount, 2),
                "cumulative": round(cumulative, 2),
                "discounted_cumulative": round(discounted, 2) if discounting else None,
            }
        )

    return rows
